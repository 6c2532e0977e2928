"""Persisted document types.

Every document kept by :class:`~chzzkrec.state.store.PersistentState` is a
mapping keyed by the natural key of its entries (creator id, check time or
VOD number) and is validated through these models when read from disk.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class RosterEntry(BaseModel):
    """One watched creator, maintained by the operator."""

    channel_id: str
    username: str
    channel_name: str = ""
    disable_record: bool = False
    allow_category: List[str] = Field(default_factory=list)
    enable_auto_download_vod: bool = False


class RecordingRegistryEntry(BaseModel):
    """An active (or believed active) live capture process."""

    channel_id: str
    pid: Optional[int] = None
    start_at: dt.datetime = Field(default_factory=dt.datetime.now)
    username: str = ""
    channel_name: str = ""
    controllable: bool = True


class VodCheckEntry(BaseModel):
    """A scheduled look at one creator's VOD list."""

    check_time: int
    channel_id: str
    username: str
    local_time: str = ""
    last_vod_number: Optional[int] = None


class VodStatus(str, Enum):
    WAITING = "waiting"
    ONGOING = "ongoing"
    SUCCESS = "success"
    FAILED = "failed"


class VodDownloadEntry(BaseModel):
    """One VOD download task and its state machine position."""

    vod_num: int
    channel_id: str
    username: str
    publish_date: str
    duration: float
    adult: bool = False
    try_count: int = 0
    vod_url: str = ""
    cmd: str = ""
    status: VodStatus = VodStatus.WAITING
    # download process while ongoing
    pid: Optional[int] = None


class AuthCookie(BaseModel):
    """Platform session cookie pair."""

    auth: str = ""
    session: str = ""

    @property
    def available(self) -> bool:
        return bool(self.auth and self.session)


Roster = Dict[str, RosterEntry]
RecordingRegistry = Dict[str, RecordingRegistryEntry]
VodCheckList = Dict[int, VodCheckEntry]
VodDownloadList = Dict[int, VodDownloadEntry]
