"""Tests for boot-time reconciliation of the recording registry."""

import pytest

from chzzkrec.scheduler.reconcile import RecordingReconciler
from chzzkrec.state.models import RecordingRegistryEntry
from chzzkrec.state.store import Domain

from conftest import wait_until


async def seed_registry(state, *entries):
    await state.mutate(Domain.RECORDINGS, lambda r: {**r, **{e.channel_id: e for e in entries}})


@pytest.mark.asyncio
async def test_dead_entries_are_removed(settings, state):
    await seed_registry(state, RecordingRegistryEntry(channel_id="a", pid=111, username="alice"))
    reconciler = RecordingReconciler(settings, state, is_alive=lambda entry: False)

    monitor = await reconciler.run()

    assert monitor is None
    assert state.read(Domain.RECORDINGS) == {}


@pytest.mark.asyncio
async def test_live_leftovers_are_watched_until_they_end(settings, state):
    await seed_registry(
        state,
        RecordingRegistryEntry(channel_id="a", pid=111, username="alice"),
        RecordingRegistryEntry(channel_id="b", pid=222, username="bob"),
    )
    alive = {111}
    reconciler = RecordingReconciler(
        settings.model_copy(update={"check_interval_sec": 0.01}),
        state,
        is_alive=lambda entry: entry.pid in alive,
    )

    monitor = await reconciler.run()

    registry = state.read(Domain.RECORDINGS)
    assert list(registry) == ["a"]
    assert registry["a"].controllable is False

    alive.clear()
    await wait_until(lambda: state.read(Domain.RECORDINGS) == {})
    await monitor
    assert monitor.done()


@pytest.mark.asyncio
async def test_monitor_leaves_replaced_entries_alone(settings, state):
    await seed_registry(state, RecordingRegistryEntry(channel_id="a", pid=111, username="alice"))
    alive = {111}
    reconciler = RecordingReconciler(
        settings.model_copy(update={"check_interval_sec": 0.01}),
        state,
        is_alive=lambda entry: entry.pid in alive,
    )
    monitor = await reconciler.run()

    # a fresh capture of the same creator replaced the leftover entry
    await seed_registry(state, RecordingRegistryEntry(channel_id="a", pid=333, username="alice"))
    alive.clear()
    await monitor

    assert state.read(Domain.RECORDINGS)["a"].pid == 333
