"""Persistent, serialised state store.

``PersistentState`` owns the in-memory copy of every state document
(roster, recording registry, VOD check schedule, VOD download registry and
credential) and the files backing them.

Each domain has exactly one writer task consuming a FIFO queue of jobs.  A
job is either a mutation (apply a function, then write the file) or a
reload (re-read the file after an external edit).  A job starts only after
every earlier job of the same domain has finished both its in-memory change
and its disk write, so concurrent callers never lose each other's update.
Different domains have independent queues and are not ordered relative to
each other.

External edits are noticed by polling the files' ``stat`` signature.  A
burst of changes is coalesced by waiting until the signature stays stable
for ``debounce`` seconds.  A reload that comes back empty while the current
value is not empty is retried a few times before being accepted, because it
is usually a writer caught mid-save.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import inspect
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from pydantic import TypeAdapter, ValidationError

from .files import read_credential, read_json_or_default, write_credential, write_json_atomic
from .models import AuthCookie, Roster, RecordingRegistry, VodCheckList, VodDownloadList

logger = structlog.get_logger(__name__)


class Domain(str, Enum):
    ROSTER = "roster"
    RECORDINGS = "recordings"
    VOD_CHECKS = "vod_checks"
    VOD_DOWNLOADS = "vod_downloads"
    CREDENTIAL = "credential"


FILENAMES = {
    Domain.ROSTER: "users.json",
    Domain.RECORDINGS: "recordings.json",
    Domain.VOD_CHECKS: "vod_checks.json",
    Domain.VOD_DOWNLOADS: "vod_downloads.json",
    Domain.CREDENTIAL: "cookie.txt",
}

# The roster is owned by the operator; the agent never rewrites it on load.
INITIALISED_ON_LOAD = (Domain.RECORDINGS, Domain.VOD_CHECKS, Domain.VOD_DOWNLOADS)


@dataclass(frozen=True)
class WatchPolicy:
    """Tunables of the reload-on-external-change behaviour."""

    poll_interval: float = 1.0
    debounce: float = 0.5
    empty_retries: int = 3
    empty_retry_delay: float = 0.2

    @classmethod
    def from_settings(cls, settings) -> "WatchPolicy":
        return cls(
            poll_interval=settings.state_poll_interval_sec,
            debounce=settings.state_debounce_sec,
            empty_retries=settings.state_empty_read_retries,
            empty_retry_delay=settings.state_empty_read_delay_sec,
        )


class _JsonCodec:
    def __init__(self, value_type) -> None:
        self._adapter = TypeAdapter(value_type)

    def default(self) -> Any:
        return {}

    def load(self, path: Path) -> Any:
        raw = read_json_or_default(path, {})
        try:
            return self._adapter.validate_python(raw)
        except ValidationError as e:
            logger.error("invalid state document", path=str(path), error=str(e))
            return self.default()

    def dump(self, path: Path, value: Any) -> None:
        write_json_atomic(path, self._adapter.dump_python(value, mode="json"))


class _CredentialCodec:
    def default(self) -> AuthCookie:
        return AuthCookie()

    def load(self, path: Path) -> AuthCookie:
        return read_credential(path)

    def dump(self, path: Path, value: AuthCookie) -> None:
        write_credential(path, value)


CODECS = {
    Domain.ROSTER: lambda: _JsonCodec(Roster),
    Domain.RECORDINGS: lambda: _JsonCodec(RecordingRegistry),
    Domain.VOD_CHECKS: lambda: _JsonCodec(VodCheckList),
    Domain.VOD_DOWNLOADS: lambda: _JsonCodec(VodDownloadList),
    Domain.CREDENTIAL: _CredentialCodec,
}


def _is_empty(value: Any) -> bool:
    if isinstance(value, AuthCookie):
        return not value.available
    return not value


Signature = Optional[Tuple[int, int, int]]
ChangeCallback = Callable[[Any], Optional[Awaitable[None]]]


class _DomainStore:
    """Single-writer store for one document."""

    def __init__(self, domain: Domain, path: Path, policy: WatchPolicy) -> None:
        self.domain = domain
        self.path = path
        self.policy = policy
        self.codec = CODECS[domain]()
        self.value: Any = self.codec.default()
        self.callbacks: List[ChangeCallback] = []
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._known_signature: Signature = None
        self._writing = False

    def signature(self) -> Signature:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    async def load(self, initialise: bool) -> None:
        self.value = await asyncio.to_thread(self.codec.load, self.path)
        if initialise:
            await self._write(self.value)
        self._known_signature = self.signature()

    async def submit(self, job: Callable[[], Awaitable[Any]]) -> Any:
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(self._run())
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((job, future))
        return await future

    async def _run(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                result = await job()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def apply(self, fn: Callable[[Any], Any], fresh: bool = False) -> Any:
        if fresh:
            await self.reload()
        candidate = copy.deepcopy(self.value)
        result = fn(candidate)
        new_value = candidate if result is None else result
        self.value = new_value
        await self._write(new_value)
        return new_value

    async def _write(self, value: Any) -> None:
        self._writing = True
        try:
            await asyncio.to_thread(self.codec.dump, self.path, value)
        except (OSError, ValueError) as e:
            # The in-memory value stays authoritative for this run.
            logger.error("failed to persist state", domain=self.domain.value, path=str(self.path), error=str(e))
        finally:
            self._known_signature = self.signature()
            self._writing = False

    async def reload(self) -> Any:
        signature = self.signature()
        value = await asyncio.to_thread(self.codec.load, self.path)
        attempts = 0
        while _is_empty(value) and not _is_empty(self.value) and attempts < self.policy.empty_retries:
            attempts += 1
            await asyncio.sleep(self.policy.empty_retry_delay)
            signature = self.signature()
            value = await asyncio.to_thread(self.codec.load, self.path)
        if _is_empty(value) and not _is_empty(self.value):
            logger.warning(
                "accepting empty state document after retries",
                domain=self.domain.value,
                retries=attempts,
            )
        self.value = value
        self._known_signature = signature
        return value

    def changed_externally(self) -> bool:
        return not self._writing and self.signature() != self._known_signature

    async def watch(self) -> None:
        while True:
            await asyncio.sleep(self.policy.poll_interval)
            if not self.changed_externally():
                continue
            observed = self.signature()
            while True:
                await asyncio.sleep(self.policy.debounce)
                settled = self.signature()
                if settled == observed:
                    break
                observed = settled
            if not self.changed_externally():
                continue
            value = await self.submit(self.reload)
            logger.info("state document changed on disk", domain=self.domain.value)
            for callback in list(self.callbacks):
                try:
                    res = callback(value)
                    if inspect.isawaitable(res):
                        await res
                except Exception:
                    logger.exception("external change callback failed", domain=self.domain.value)

    async def close(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None


class PersistentState:
    """Single source of truth for all agent state documents."""

    def __init__(self, directory: Path, policy: Optional[WatchPolicy] = None) -> None:
        self.directory = Path(directory)
        self.policy = policy or WatchPolicy()
        self._stores: Dict[Domain, _DomainStore] = {
            domain: _DomainStore(domain, self.directory / FILENAMES[domain], self.policy)
            for domain in Domain
        }

    def path(self, domain: Domain) -> Path:
        return self._stores[domain].path

    async def load(self, initialise: bool = True) -> None:
        """Read every document from disk.

        With ``initialise`` the registries are written back, creating empty
        defaults for absent ones.  One-shot tools running next to an agent
        pass ``False`` so they leave the agent's files alone.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        for domain, store in self._stores.items():
            await store.load(initialise=initialise and domain in INITIALISED_ON_LOAD)
        logger.info(
            "state loaded",
            directory=str(self.directory),
            roster=len(self.read(Domain.ROSTER)),
            recordings=len(self.read(Domain.RECORDINGS)),
            vod_checks=len(self.read(Domain.VOD_CHECKS)),
            vod_downloads=len(self.read(Domain.VOD_DOWNLOADS)),
        )

    def read(self, domain: Domain) -> Any:
        """Latest in-memory snapshot.  Callers must not modify it."""
        return self._stores[domain].value

    async def mutate(self, domain: Domain, fn: Callable[[Any], Any], fresh: bool = False) -> Any:
        """Apply ``fn`` behind every earlier job of ``domain`` and persist the result.

        ``fn`` receives a private copy of the current value and either
        returns the new value or modifies the copy in place and returns
        ``None``.  If ``fn`` raises, the value is left untouched and the
        exception propagates to the caller.

        With ``fresh`` the document is re-read from disk first, for writers
        that do not watch the file for changes made by other processes.
        """
        store = self._stores[domain]
        return await store.submit(lambda: store.apply(fn, fresh))

    async def reload(self, domain: Domain) -> Any:
        store = self._stores[domain]
        return await store.submit(store.reload)

    def on_external_change(self, domain: Domain, callback: ChangeCallback) -> None:
        self._stores[domain].callbacks.append(callback)

    async def watch(self) -> None:
        """Watch every backing file until cancelled."""
        await asyncio.gather(*(store.watch() for store in self._stores.values()))

    async def close(self) -> None:
        for store in self._stores.values():
            await store.close()
