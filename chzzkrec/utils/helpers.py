"""Small helpers shared across the agent."""

from __future__ import annotations

import datetime as dt
import re
from typing import Iterable, Optional, Union

import psutil

VOD_URL_RE = re.compile(r"^https://chzzk\.naver\.com/video/([0-9]*)")


def format_date(template: str, target_time: Optional[dt.datetime] = None) -> str:
    """Fill the date tokens of a filename template."""
    t = target_time or dt.datetime.now()
    return (
        template.replace("{year}", f"{t.year:02d}")
        .replace("{month}", f"{t.month:02d}")
        .replace("{day}", f"{t.day:02d}")
        .replace("{hr}", f"{t.hour:02d}")
        .replace("{min}", f"{t.minute:02d}")
        .replace("{sec}", f"{t.second:02d}")
    )


def format_duration(seconds: Union[int, float]) -> str:
    """Format a duration as ``HHhMMmSSs``."""
    total = int(seconds)
    hour, rest = divmod(total, 3600)
    minute, second = divmod(rest, 60)
    return f"{hour:02d}h{minute:02d}m{second:02d}s"


def parse_vod_id(value: Union[str, int]) -> int:
    """Accept a VOD number or a VOD page URL and return the number.

    Raises:
        ValueError: if no number can be extracted.
    """
    if isinstance(value, int):
        return value
    match = VOD_URL_RE.match(value.strip())
    return int(match.group(1) if match else value.strip())


def is_invalid_live_category(allow_category: Iterable[str], current_category: Optional[str]) -> bool:
    """True when the live category is not covered by a non-empty allow-list.

    Matching is a case-insensitive substring test of each allow-list entry
    against the current category.
    """
    allowed = list(allow_category)
    if not allowed or not current_category:
        return False
    category = current_category.lower()
    return not any(c.lower() in category for c in allowed)


def is_process_running(pid: Optional[int]) -> bool:
    if pid is None:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists but belongs to someone else
        return True


def find_process_by_pattern(pattern: str) -> Optional[int]:
    """Return the pid of the first process whose command line contains ``pattern``."""
    for proc in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = " ".join(proc.info.get("cmdline") or [])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if pattern in cmdline:
            return proc.info["pid"]
    return None


def epoch_millis(moment: Optional[dt.datetime] = None) -> int:
    return int((moment or dt.datetime.now()).timestamp() * 1000)
