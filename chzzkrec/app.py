"""Application entry point for the Chzzk recorder agent.

This module loads settings, configures logging, opens the state store and
the session history, and then runs the agent: a boot-time reconciliation
of the recording registry followed by the discovery cycles and the VOD
scheduler, forever.  A few one-shot operator commands share the same
bootstrap.

Run this module directly to start the agent:

    python -m chzzkrec.app run
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from .api.client import ChzzkApi
from .api.vod_fetch import make_vod_fetcher
from .config.config import AppSettings, SettingsNotFoundError, load_config
from .db.database import Database, HistoryRecorder
from .discovery.loop import DiscoveryLoop
from .recorder.events import EventChannel
from .recorder.recorder import Recorder
from .scheduler.reconcile import RecordingReconciler
from .scheduler.vod_pipeline import VodPipeline
from .state.recordings import RecordingRegistryKeeper
from .state.store import Domain, PersistentState, WatchPolicy
from .tools.roster import add_users, enqueue_vods, sort_add_list
from .utils.logger import configure_logging

logger = structlog.get_logger(__name__)


async def open_state(settings: AppSettings, initialise: bool = True) -> PersistentState:
    state = PersistentState(settings.state_directory, WatchPolicy.from_settings(settings))
    await state.load(initialise=initialise)
    return state


async def run_agent(settings: AppSettings) -> None:
    """Initialises every component and runs the agent until cancelled."""
    state = await open_state(settings)
    Path(settings.save_directory).mkdir(parents=True, exist_ok=True)

    db = Database(settings.history_path)
    await db.initialise()

    events = EventChannel()
    api = ChzzkApi(state)
    recorder = Recorder(settings, api, state, events)
    pipeline = VodPipeline(settings, state, recorder, make_vod_fetcher(settings, api))
    discovery = DiscoveryLoop(settings, api, state, recorder, pipeline)

    RecordingRegistryKeeper(state).subscribe(events)
    pipeline.subscribe(events)
    HistoryRecorder(db).subscribe(events)

    state.on_external_change(
        Domain.ROSTER, lambda roster: logger.info("roster reloaded", creators=len(roster))
    )
    state.on_external_change(
        Domain.VOD_DOWNLOADS, lambda vods: logger.info("vod download list reloaded", entries=len(vods))
    )

    background: List[asyncio.Task] = [
        asyncio.create_task(events.run()),
        asyncio.create_task(state.watch()),
    ]
    try:
        monitor = await RecordingReconciler(settings, state).run()
        if monitor is not None:
            background.append(monitor)
        detached = await pipeline.recover_interrupted()
        if detached is not None:
            background.append(detached)
        logger.info("agent started", creators=len(state.read(Domain.ROSTER)))
        await asyncio.gather(
            discovery.run_broad(),
            discovery.run_narrow(),
            pipeline.run(),
        )
    finally:
        await recorder.detach()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        await state.close()
        await api.close()
        await db.close()


async def run_add_users(settings: AppSettings, add_list: Path) -> None:
    state = await open_state(settings, initialise=False)
    api = ChzzkApi(state)
    try:
        await add_users(state, api, add_list)
    finally:
        await state.close()
        await api.close()


async def run_enqueue_vods(settings: AppSettings, vod_list: Path) -> None:
    state = await open_state(settings, initialise=False)
    api = ChzzkApi(state)
    try:
        await enqueue_vods(state, settings, make_vod_fetcher(settings, api), vod_list)
    finally:
        await state.close()
        await api.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chzzkrec", description="Chzzk live and VOD recorder agent")
    parser.add_argument("-c", "--config", help="path to the YAML settings file (default: ./config.yaml)")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="run the recorder agent (default)")
    add = sub.add_parser("add-users", help="add creators from an add-list to the roster")
    add.add_argument("--file", default="addList.json", type=Path)
    srt = sub.add_parser("sort-add-list", help="sort an add-list by username")
    srt.add_argument("--file", default="addList.json", type=Path)
    enq = sub.add_parser("enqueue-vods", help="queue VOD downloads from a list of ids or URLs")
    enq.add_argument("--file", default="vodList.json", type=Path)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Synchronously loads settings and starts the requested command."""
    args = build_parser().parse_args(argv)
    try:
        settings, _ = load_config(args.config)
    except SettingsNotFoundError as e:
        logger.error("cannot start without settings", error=str(e))
        sys.exit(1)
    configure_logging(settings)

    command = args.command or "run"
    try:
        if command == "run":
            asyncio.run(run_agent(settings))
        elif command == "add-users":
            asyncio.run(run_add_users(settings, args.file))
        elif command == "sort-add-list":
            sort_add_list(args.file)
        elif command == "enqueue-vods":
            asyncio.run(run_enqueue_vods(settings, args.file))
    except KeyboardInterrupt:
        # Captures run detached and keep going after shutdown
        pass


if __name__ == "__main__":
    main()
