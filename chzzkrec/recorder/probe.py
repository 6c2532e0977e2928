"""Media duration probe backed by ffprobe."""

from __future__ import annotations

import asyncio
from pathlib import Path


class ProbeError(RuntimeError):
    """ffprobe could not report a duration for the file."""


async def get_media_duration(filepath: Path) -> float:
    """Return the container duration of ``filepath`` in seconds.

    Raises:
        ProbeError: if ffprobe fails or prints no usable number.
    """
    cmd = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(filepath),
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ProbeError("ffprobe is not installed") from e
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise ProbeError(f"ffprobe exited with {proc.returncode}: {stderr.decode(errors='ignore').strip()}")
    try:
        return float(stdout.decode().strip())
    except ValueError as e:
        raise ProbeError(f"no duration reported for {filepath}") from e
