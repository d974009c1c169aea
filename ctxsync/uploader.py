from __future__ import annotations

import asyncio
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Iterator, Protocol, TypeVar

from ctxsync.blob_cache import BlobCache
from ctxsync.credentials import CredentialManager
from ctxsync.errors import AuthError, CacheInconsistency, PayloadRejected, TransportError
from ctxsync.hashing import hash_bytes
from ctxsync.models import FileRecord, SyncReport, TaskState, UploadTask, WorkspaceSnapshot
from ctxsync.transport import Acknowledged, RemoteTransport


logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_WORKERS = 6
DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_UPLOAD_TIMEOUT_SECONDS = 120.0
# Request limits of the batch-upload endpoint.
MAX_BATCH_BLOBS = 128
MAX_BATCH_BYTES = 1_000_000
# Up to 25% of the backoff delay is added as jitter.
JITTER_FRACTION = 0.25

T = TypeVar("T")


class SyncProgress(Protocol):
    def begin(self, tasks: list[UploadTask]) -> None: ...

    def task_started(self, task: UploadTask) -> None: ...

    def task_finished(self, task: UploadTask) -> None: ...


class NoOpProgress:
    def begin(self, tasks: list[UploadTask]) -> None:
        pass

    def task_started(self, task: UploadTask) -> None:
        pass

    def task_finished(self, task: UploadTask) -> None:
        pass


class _ContentChanged(Exception):
    pass


def _iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _is_timeout_error(exc: BaseException) -> bool:
    timeout_names = {
        "TimeoutError",
        "TimeoutException",
        "ReadTimeout",
        "ConnectTimeout",
        "ReadTimeoutError",
    }
    for current in _iter_exception_chain(exc):
        if current.__class__.__name__ in timeout_names:
            return True
        message = str(current).lower()
        if "timed out" in message or "timeout" in message:
            return True
    return False


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (AuthError, PayloadRejected)):
        return False
    if isinstance(exc, (TransportError, ConnectionError, asyncio.TimeoutError)):
        return True
    return _is_timeout_error(exc)


def backoff_delay(attempt: int, base_delay_seconds: float, jitter: float = 0.0) -> float:
    """Delay before retry number ``attempt`` (1-based), with ``jitter`` in [0, 1]."""
    delay = base_delay_seconds * (2 ** (attempt - 1))
    return delay + delay * JITTER_FRACTION * jitter


def plan_uploads(
    snapshot: WorkspaceSnapshot, confirmed: set[str]
) -> list[UploadTask]:
    """One task per distinct identity that the remote is not known to hold.

    Files sharing content share a task; the first path in sort order is the
    payload source.
    """
    sources: dict[str, FileRecord] = {}
    for record in sorted(snapshot.values(), key=lambda item: item.path):
        if record.identity in confirmed or record.identity in sources:
            continue
        sources[record.identity] = record
    return [
        UploadTask(identity=identity, source_path=record.path, size=record.size)
        for identity, record in sources.items()
    ]


def plan_batches(
    tasks: list[UploadTask],
    max_blobs: int = MAX_BATCH_BLOBS,
    max_bytes: int = MAX_BATCH_BYTES,
) -> list[list[UploadTask]]:
    """Group tasks into upload requests, keeping task order.

    A batch is closed before a task that would bring it to ``max_blobs``
    entries or ``max_bytes`` bytes. A task larger than ``max_bytes`` gets a
    batch of its own.
    """
    batches: list[list[UploadTask]] = []
    current: list[UploadTask] = []
    current_bytes = 0
    for task in tasks:
        if current and (len(current) >= max_blobs or current_bytes + task.size >= max_bytes):
            batches.append(current)
            current = []
            current_bytes = 0
        current.append(task)
        current_bytes += task.size
    if current:
        batches.append(current)
    return batches


class UploadCoordinator:
    """Turn a snapshot into the minimal set of uploads and keep the cache truthful.

    Identities already confirmed in the cache are skipped. The rest are
    marked pending, grouped into batches and uploaded by a fixed pool of
    workers. A batch is sent as one request; whatever it did not get
    acknowledged is retried one blob at a time with exponential backoff on
    transient failures. An identity is committed only after the remote
    acknowledged that exact identity.
    """

    def __init__(
        self,
        cache: BlobCache,
        transport: RemoteTransport,
        credentials: CredentialManager,
        *,
        root: Path,
        workers: int = DEFAULT_UPLOAD_WORKERS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        upload_timeout_seconds: float | None = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
        max_batch_blobs: int = MAX_BATCH_BLOBS,
        max_batch_bytes: int = MAX_BATCH_BYTES,
        progress: SyncProgress | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.cache = cache
        self.transport = transport
        self.credentials = credentials
        self.root = Path(root).resolve()
        self.workers = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self.upload_timeout_seconds = upload_timeout_seconds
        self.max_batch_blobs = max(1, max_batch_blobs)
        self.max_batch_bytes = max_batch_bytes
        self.progress = progress or NoOpProgress()
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._jitter = jitter
        self._halt: AuthError | None = None
        self._executor: ThreadPoolExecutor | None = None

    async def _in_thread(self, func: Callable[..., T], *args: Any) -> T:
        # Blocking work shares one pool per pass, sized to the worker count.
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def _remote_call(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.wait_for(
            self._in_thread(func, *args), timeout=self.upload_timeout_seconds
        )

    def _read_payload(self, task: UploadTask) -> bytes:
        data = (self.root / task.source_path).read_bytes()
        if hash_bytes(data) != task.identity:
            raise _ContentChanged(task.source_path)
        return data

    async def _load_payload(self, task: UploadTask) -> bytes | None:
        try:
            return await self._in_thread(self._read_payload, task)
        except _ContentChanged:
            task.fail("content changed during sync; will be picked up by the next scan")
        except OSError as exc:
            task.fail(f"unreadable: {exc}")
        return None

    async def _send_once(self, task: UploadTask, data: bytes) -> Acknowledged:
        credential = await self.credentials.get()
        ack = await self._remote_call(self.transport.upload_blob, task.identity, data, credential)
        if ack.identity != task.identity:
            raise PayloadRejected(
                f"Remote acknowledged {ack.identity} instead of {task.identity}"
            )
        return ack

    async def _send_with_retry(self, task: UploadTask, data: bytes) -> Acknowledged:
        attempt = 1
        while True:
            task.attempts = attempt
            try:
                return await self._send_once(task, data)
            except Exception as exc:
                if not is_transient(exc):
                    raise
                if attempt >= self.max_attempts:
                    raise TransportError(
                        f"gave up after {attempt} attempt(s): {exc or exc.__class__.__name__}"
                    ) from exc
                if self.cancel_event.is_set():
                    raise TransportError(f"cancelled while retrying: {exc}") from exc
                delay = backoff_delay(attempt, self.base_delay_seconds, self._jitter())
                logger.debug(
                    "Upload of %s failed (%s); retrying in %.2fs (attempt %d/%d)",
                    task.source_path,
                    exc or exc.__class__.__name__,
                    delay,
                    attempt,
                    self.max_attempts,
                )
                await self._sleep(delay)
                attempt += 1

    def _halt_with(self, exc: AuthError, tasks: Iterable[UploadTask]) -> None:
        for task in tasks:
            task.fail(f"authentication failed: {exc}")
        if self._halt is None:
            self._halt = exc

    async def _send_batch(self, ready: list[tuple[UploadTask, bytes]]) -> set[str]:
        """Send ``ready`` as one request; return the identities acknowledged."""
        wanted = {task.identity for task, _ in ready}
        for task, _ in ready:
            task.attempts = 1
        try:
            credential = await self.credentials.get()
            acks = await self._remote_call(
                self.transport.upload_blobs,
                [(task.identity, data) for task, data in ready],
                credential,
            )
        except AuthError as exc:
            self._halt_with(exc, (task for task, _ in ready))
            return set()
        except Exception as exc:
            logger.warning(
                "Batch upload of %d blob(s) failed (%s); uploading them one by one",
                len(ready),
                exc or exc.__class__.__name__,
            )
            return set()

        acknowledged = {ack.identity for ack in acks} & wanted
        if len(acknowledged) < len(wanted):
            logger.debug(
                "%d of %d blob(s) missing from the batch acknowledgement",
                len(wanted) - len(acknowledged),
                len(wanted),
            )
        return acknowledged

    async def _commit(self, task: UploadTask) -> None:
        try:
            await self.cache.commit(task.identity)
        except CacheInconsistency as exc:
            logger.error("Cache inconsistency while committing %s: %s", task.identity, exc)
            task.fail(f"cache inconsistency: {exc}")
        else:
            task.state = TaskState.COMMITTED

    async def _upload_and_commit(self, task: UploadTask, data: bytes) -> None:
        try:
            await self._send_with_retry(task, data)
        except AuthError as exc:
            self._halt_with(exc, [task])
        except PayloadRejected as exc:
            task.fail(f"rejected: {exc}")
        except TransportError as exc:
            task.fail(str(exc))
        except asyncio.TimeoutError:
            task.fail("timed out")
        except Exception as exc:
            logger.exception("Unexpected error uploading %s", task.source_path)
            task.fail(f"unexpected error: {exc!r}")
        else:
            await self._commit(task)

    async def _process(self, batch: list[UploadTask]) -> None:
        started: list[UploadTask] = []
        ready: list[tuple[UploadTask, bytes]] = []
        for task in batch:
            if self._halt is not None:
                task.fail(f"not attempted: {self._halt}")
                continue
            if self.cancel_event.is_set():
                task.fail("cancelled")
                continue
            task.state = TaskState.IN_FLIGHT
            self.progress.task_started(task)
            started.append(task)
            data = await self._load_payload(task)
            if data is not None:
                ready.append((task, data))

        acknowledged = await self._send_batch(ready) if len(ready) > 1 else set()
        for task, data in ready:
            if task.state is not TaskState.IN_FLIGHT:
                continue
            if task.identity in acknowledged:
                await self._commit(task)
            elif self._halt is not None:
                task.fail(f"not attempted: {self._halt}")
            elif self.cancel_event.is_set():
                task.fail("cancelled")
            else:
                await self._upload_and_commit(task, data)

        for task in started:
            if task.state is TaskState.FAILED:
                logger.warning("Upload failed for %s: %s", task.source_path, task.reason)
            self.progress.task_finished(task)

    async def _worker(self, queue: asyncio.Queue[list[UploadTask]]) -> None:
        while True:
            try:
                batch = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(batch)
            finally:
                queue.task_done()

    async def _run_pool(self, batches: list[list[UploadTask]]) -> None:
        queue: asyncio.Queue[list[UploadTask]] = asyncio.Queue()
        for batch in batches:
            queue.put_nowait(batch)
        self._executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="ctxsync-upload"
        )
        workers = [
            asyncio.create_task(self._worker(queue), name=f"ctxsync-upload-{index}")
            for index in range(min(self.workers, len(batches)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            # Threads still blocked in a timed-out call exit when the transport
            # gives up on the socket.
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    async def run(self, snapshot: WorkspaceSnapshot) -> SyncReport:
        """Upload whatever the remote lacks and return the manifest report.

        Raises ``AuthError`` when credentials are missing, cannot be
        refreshed, or are rejected by the remote; entries for unfinished
        uploads stay unconfirmed in that case.
        """
        self._halt = None
        manifest = snapshot.identities()
        known = await self.cache.lookup_many(manifest.values())
        confirmed = {identity for identity, entry in known.items() if entry.confirmed}
        await self.cache.touch(confirmed)

        tasks = plan_uploads(snapshot, confirmed)
        await self.cache.mark_pending_many((task.identity, task.size) for task in tasks)
        batches = plan_batches(tasks, self.max_batch_blobs, self.max_batch_bytes)

        logger.info(
            "Sync plan: %d file(s) (%d bytes), %d distinct blob(s) to upload in %d batch(es), "
            "%d already confirmed",
            len(manifest),
            snapshot.total_bytes(),
            len(tasks),
            len(batches),
            len(confirmed),
        )

        self.progress.begin(tasks)
        if batches:
            await self._run_pool(batches)

        report = SyncReport(
            manifest=manifest,
            uploaded=sorted(task.identity for task in tasks if task.state is TaskState.COMMITTED),
            already_confirmed=len(confirmed),
            failed=[task for task in tasks if task.state is TaskState.FAILED],
            scan_issues=snapshot.skipped,
            cancelled=self.cancel_event.is_set(),
        )
        # Failed uploads of content that has since left the workspace would
        # otherwise stay unconfirmed forever.
        await self.cache.discard_unconfirmed(manifest.values())
        if self._halt is not None:
            halted = AuthError(f"Synchronization halted: {self._halt}")
            halted.report = report
            raise halted from self._halt

        report.evicted = await self.cache.evict_if_needed()
        return report
