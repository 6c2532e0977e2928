"""Recording registry bookkeeping driven by capture lifecycle events."""

from __future__ import annotations

import structlog

from ..recorder.events import EventChannel, RecordingEnded, RecordingStarted
from .models import RecordingRegistry, RecordingRegistryEntry
from .store import Domain, PersistentState

logger = structlog.get_logger(__name__)


class RecordingRegistryKeeper:
    """Writes registry entries when captures start and removes them when they end."""

    def __init__(self, state: PersistentState) -> None:
        self.state = state

    def subscribe(self, events: EventChannel) -> None:
        events.subscribe(RecordingStarted, self.on_recording_started)
        events.subscribe(RecordingEnded, self.on_recording_ended)

    async def on_recording_started(self, event: RecordingStarted) -> None:
        entry = event.entry

        def _add(registry: RecordingRegistry) -> None:
            registry[entry.channel_id] = RecordingRegistryEntry(
                channel_id=entry.channel_id,
                pid=event.pid,
                start_at=event.at,
                username=entry.username,
                channel_name=entry.channel_name,
                controllable=True,
            )

        await self.state.mutate(Domain.RECORDINGS, _add)

    async def on_recording_ended(self, event: RecordingEnded) -> None:
        channel_id = event.entry.channel_id

        def _remove(registry: RecordingRegistry) -> None:
            current = registry.get(channel_id)
            # A newer capture may already have replaced this one.
            if current is not None and current.pid == event.pid:
                del registry[channel_id]

        await self.state.mutate(Domain.RECORDINGS, _remove)
