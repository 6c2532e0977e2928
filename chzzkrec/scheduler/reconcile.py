"""Boot-time reconciliation of the recording registry.

Captures are spawned detached, so a previous agent run may have left
processes that are still recording, or registry entries whose process has
since died.  Live leftovers are kept but marked uncontrollable (their exit
event will never reach this process) and are polled until they die.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional

import structlog

from ..state.models import RecordingRegistry, RecordingRegistryEntry
from ..state.store import Domain, PersistentState
from ..utils.helpers import find_process_by_pattern, is_process_running

logger = structlog.get_logger(__name__)

LivenessCheck = Callable[[RecordingRegistryEntry], bool]


def default_liveness(entry: RecordingRegistryEntry) -> bool:
    if entry.pid is not None:
        return is_process_running(entry.pid)
    return find_process_by_pattern(f"chzzk.naver.com/live/{entry.channel_id}") is not None


class RecordingReconciler:
    def __init__(
        self,
        settings,
        state: PersistentState,
        is_alive: Optional[LivenessCheck] = None,
    ) -> None:
        self.settings = settings
        self.state = state
        self.is_alive = is_alive or default_liveness

    async def reconcile(self) -> Dict[str, RecordingRegistryEntry]:
        """One pass over the registry; returns the surviving uncontrollable entries."""
        survivors: Dict[str, RecordingRegistryEntry] = {}

        def _apply(registry: RecordingRegistry) -> None:
            for channel_id, entry in list(registry.items()):
                if self.is_alive(entry):
                    entry.controllable = False
                    survivors[channel_id] = entry.model_copy()
                else:
                    del registry[channel_id]

        await self.state.mutate(Domain.RECORDINGS, _apply)
        if survivors:
            logger.warning(
                "disconnected capture processes found, watching until they end",
                creators=[e.username for e in survivors.values()],
            )
        return survivors

    async def monitor(self, watch_list: Dict[str, RecordingRegistryEntry]) -> None:
        """Poll leftover captures until every one of them has exited."""
        watch_list = dict(watch_list)
        while watch_list:
            await asyncio.sleep(self.settings.check_interval_sec)
            for channel_id, entry in list(watch_list.items()):
                if self.is_alive(entry):
                    continue
                del watch_list[channel_id]

                def _remove(registry: RecordingRegistry, channel_id=channel_id, pid=entry.pid) -> None:
                    current = registry.get(channel_id)
                    if current is not None and not current.controllable and current.pid == pid:
                        del registry[channel_id]

                await self.state.mutate(Domain.RECORDINGS, _remove)
                logger.info("disconnected capture ended", creator=entry.username)
        logger.info("all disconnected captures ended")

    async def run(self) -> Optional[asyncio.Task]:
        """Reconcile now; returns the monitor task when stragglers remain."""
        survivors = await self.reconcile()
        if not survivors:
            return None
        return asyncio.create_task(self.monitor(survivors))
