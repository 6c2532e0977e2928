"""Shell command builders for captures and VOD downloads.

Live captures come in two flavours: streamlink writing the transport
stream directly, or streamlink piping into ffmpeg for a stream copy remux.
Which one is used is decided once from settings by
:func:`make_capture_command`.
"""

from __future__ import annotations

import datetime as dt
import shlex
from pathlib import Path
from typing import Optional, Protocol

from ..api.client import LiveInfo
from ..state.models import RosterEntry, VodDownloadEntry
from ..utils.helpers import format_date, format_duration


def cookie_option(cookie_header: str) -> str:
    return f"--http-header {shlex.quote('Cookie=' + cookie_header)}"


def live_file_path(settings, entry: RosterEntry, live_id: int, when: Optional[dt.datetime] = None) -> Path:
    filename = (
        format_date(settings.filename_template, when)
        .replace("{username}", entry.username)
        .replace("{id}", entry.channel_id)
        .replace("{liveNum}", str(live_id))
    )
    return Path(settings.save_directory) / f"{filename}.ts"


def _publish_time(publish_date: str) -> dt.datetime:
    try:
        return dt.datetime.fromisoformat(publish_date)
    except ValueError:
        return dt.datetime.now()


def vod_file_path(settings, item: VodDownloadEntry) -> Path:
    filename = (
        format_date(settings.filename_vod_template, _publish_time(item.publish_date))
        .replace("{duration}", format_duration(item.duration))
        .replace("{vodNum}", str(item.vod_num))
        .replace("{username}", item.username)
        .replace("{id}", item.channel_id)
    )
    return Path(settings.save_directory) / f"{filename}.ts"


def vod_download_command(settings, item: VodDownloadEntry, cookie_header: Optional[str] = None) -> str:
    cmd = f"streamlink {shlex.quote(item.vod_url)} best -f -o {shlex.quote(str(vod_file_path(settings, item)))}"
    if item.adult and cookie_header:
        cmd += f" {cookie_option(cookie_header)}"
    return cmd


class CaptureCommand(Protocol):
    def build(self, source_url: str, live: LiveInfo, output: Path, cookie_header: Optional[str]) -> str:
        ...


class DirectCapture:
    """streamlink writes the stream straight to the output file."""

    def build(self, source_url: str, live: LiveInfo, output: Path, cookie_header: Optional[str]) -> str:
        cmd = f"streamlink {shlex.quote(source_url)} best "
        if live.adult and cookie_header:
            cmd += f"{cookie_option(cookie_header)} "
        return cmd + f"-o {shlex.quote(str(output))}"


class RemuxPipeCapture:
    """streamlink pipes into ffmpeg, which stream-copies into the output file."""

    def build(self, source_url: str, live: LiveInfo, output: Path, cookie_header: Optional[str]) -> str:
        cmd = f"streamlink {shlex.quote(source_url)} best "
        if live.adult and cookie_header:
            cmd += f"{cookie_option(cookie_header)} "
        return cmd + f"-O | ffmpeg -i pipe:0 -y -c copy {shlex.quote(str(output))}"


def make_capture_command(settings) -> CaptureCommand:
    if settings.use_live_ffmpeg_output:
        return RemuxPipeCapture()
    return DirectCapture()
