"""Process lifecycle events and the channel that carries them.

The recorder never touches state documents itself.  It publishes these
events on an :class:`EventChannel`; bookkeeping components subscribe to the
event types they care about.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, DefaultDict, List, Optional, Tuple, Type, Union

import structlog

from ..state.models import RosterEntry, VodDownloadEntry

logger = structlog.get_logger(__name__)


@dataclass
class RecordingStarted:
    entry: RosterEntry
    pid: Optional[int]
    file_path: str = ""
    at: dt.datetime = field(default_factory=dt.datetime.now)


@dataclass
class RecordingEnded:
    entry: RosterEntry
    pid: Optional[int]
    returncode: Optional[int] = None
    at: dt.datetime = field(default_factory=dt.datetime.now)


@dataclass
class DownloadStarted:
    item: VodDownloadEntry
    pid: Optional[int]
    file_path: str = ""
    at: dt.datetime = field(default_factory=dt.datetime.now)


@dataclass
class DownloadEnded:
    item: VodDownloadEntry
    pid: Optional[int]
    returncode: Optional[int] = None
    file_path: str = ""
    at: dt.datetime = field(default_factory=dt.datetime.now)


LifecycleEvent = Union[RecordingStarted, RecordingEnded, DownloadStarted, DownloadEnded]
Handler = Callable[[LifecycleEvent], Awaitable[None]]


class EventChannel:
    """FIFO delivery of lifecycle events to subscribers.

    ``publish`` returns once every subscriber of the event has handled it,
    so a publisher can rely on bookkeeping being done.  Events are handled
    one at a time by the task running :meth:`run`.  Handlers must not
    publish themselves.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Tuple[LifecycleEvent, asyncio.Future]]" = asyncio.Queue()
        self._handlers: DefaultDict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    async def publish(self, event: LifecycleEvent) -> None:
        done = asyncio.get_running_loop().create_future()
        await self._queue.put((event, done))
        await done

    async def run(self) -> None:
        while True:
            event, done = await self._queue.get()
            for handler in self._handlers[type(event)]:
                try:
                    await handler(event)
                except Exception:
                    logger.exception("event handler failed", event=type(event).__name__)
            if not done.done():
                done.set_result(None)
            self._queue.task_done()
