from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, replace

from ctxsync.blob_cache import BlobCache
from ctxsync.config import SyncConfig
from ctxsync.credentials import CredentialManager, CredentialStore
from ctxsync.errors import AuthError, CtxSyncError, SyncCancelled
from ctxsync.filters import PathFilter, build_path_filter
from ctxsync.models import SyncReport, WorkspaceSnapshot
from ctxsync.scanner import scan_workspace
from ctxsync.transport import HttpTransport, RemoteTransport
from ctxsync.uploader import SyncProgress, UploadCoordinator


logger = logging.getLogger(__name__)

LAST_SYNC_META_KEY = "last_sync_at"


@dataclass(slots=True)
class UploadStatus:
    total_files: int = 0
    uploaded_files: int = 0
    is_uploading: bool = False
    upload_complete: bool = False
    last_error: str | None = None


class WorkspaceSync:
    """Owns the blob cache, credentials and transport for one workspace root.

    This is the surface handed to the tool-routing layer: ``current_manifest``
    to answer queries and ``trigger_resync`` to bring the remote up to date.
    Only one pass runs at a time.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        transport: RemoteTransport | None = None,
        credentials: CredentialManager | None = None,
        cache: BlobCache | None = None,
    ) -> None:
        self.config = config
        self.root = config.workspace_root_path
        self._owns_transport = transport is None
        self.transport: RemoteTransport = transport or HttpTransport(
            pool_size=config.upload_workers,
            timeout_seconds=config.refresh_timeout_seconds,
            upload_timeout_seconds=config.upload_timeout_seconds,
        )
        self.credentials = credentials or CredentialManager(
            CredentialStore(config.session_path),
            self.transport,
            refresh_timeout_seconds=config.refresh_timeout_seconds,
        )
        self.cache = cache or BlobCache(
            config.cache_db_path, capacity_bytes=config.cache_capacity_bytes
        )
        self.status = UploadStatus()
        self._manifest: dict[str, str] = {}
        self._sync_lock = asyncio.Lock()
        self._pending_passes: set[threading.Event] = set()
        self._background: asyncio.Task[None] | None = None
        self._resync_requested = False

    async def __aenter__(self) -> "WorkspaceSync":
        await self.cache.open()
        self._manifest = await self.cache.load_manifest()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._background is not None and not self._background.done():
            self.cancel()
            await asyncio.gather(self._background, return_exceptions=True)
        await self.cache.close()
        if self._owns_transport and isinstance(self.transport, HttpTransport):
            self.transport.close()

    def path_filter(self) -> PathFilter:
        return build_path_filter(
            self.config.include_patterns,
            self.config.ignore_patterns,
            root=self.root,
        )

    async def scan(self, *, cancel_event: threading.Event | None = None) -> WorkspaceSnapshot:
        previous = await self.cache.load_records()
        return await asyncio.to_thread(
            scan_workspace,
            self.root,
            path_filter=self.path_filter(),
            previous_records=previous,
            hash_workers=self.config.hash_workers,
            follow_symlinks=self.config.follow_symlinks,
            max_file_bytes=self.config.max_file_bytes,
            skip_binary=self.config.skip_binary,
            cancel_event=cancel_event,
        )

    def _request_pass(self) -> threading.Event:
        # A pass owns its cancel flag from the moment it is requested.
        cancel_event = threading.Event()
        self._pending_passes.add(cancel_event)
        return cancel_event

    async def sync(self, *, progress: SyncProgress | None = None) -> SyncReport:
        """Scan the workspace and upload what the remote is missing.

        Raises ``ScanError`` and ``SyncCancelled`` from the scan and
        ``AuthError`` from the upload pass; per-file failures are in the
        returned report.
        """
        return await self._run_pass(self._request_pass(), progress)

    async def _run_pass(
        self, cancel_event: threading.Event, progress: SyncProgress | None = None
    ) -> SyncReport:
        try:
            async with self._sync_lock:
                return await self._locked_pass(cancel_event, progress)
        finally:
            self._pending_passes.discard(cancel_event)

    async def _locked_pass(
        self, cancel_event: threading.Event, progress: SyncProgress | None
    ) -> SyncReport:
        self.status = UploadStatus(is_uploading=True)
        try:
            snapshot = await self.scan(cancel_event=cancel_event)
            coordinator = UploadCoordinator(
                self.cache,
                self.transport,
                self.credentials,
                root=self.root,
                workers=self.config.upload_workers,
                max_attempts=self.config.max_attempts,
                base_delay_seconds=self.config.base_delay_seconds,
                upload_timeout_seconds=self.config.upload_timeout_seconds,
                progress=progress,
                cancel_event=cancel_event,
            )
            report = await coordinator.run(snapshot)
        except CtxSyncError as exc:
            self.status = replace(self.status, is_uploading=False, last_error=str(exc))
            if isinstance(exc, AuthError) and exc.report is not None:
                self.status.uploaded_files = exc.report.upload_count
            raise

        await self.cache.replace_records(snapshot.records())
        await self.cache.set_meta(LAST_SYNC_META_KEY, str(time.time()))
        self._manifest = dict(report.manifest)
        self.status = UploadStatus(
            total_files=len(snapshot),
            uploaded_files=report.upload_count,
            is_uploading=False,
            upload_complete=not report.cancelled,
            last_error=report.failed[0].reason if report.failed else None,
        )
        logger.info(
            "Sync complete: %d file(s), %d uploaded, %d already confirmed, %d failed",
            len(snapshot),
            report.upload_count,
            report.already_confirmed,
            len(report.failed),
        )
        return report

    def current_manifest(self) -> dict[str, str]:
        return dict(self._manifest)

    def trigger_resync(self) -> asyncio.Task[None]:
        """Run a pass in the background.

        While a background pass is running, further triggers are folded into
        a single follow-up pass.
        """
        if self._background is not None and not self._background.done():
            self._resync_requested = True
            return self._background
        self._resync_requested = False
        self._background = asyncio.create_task(
            self._resync_loop(self._request_pass()), name="ctxsync-resync"
        )
        return self._background

    async def _resync_loop(self, cancel_event: threading.Event) -> None:
        while True:
            try:
                await self._run_pass(cancel_event)
            except SyncCancelled:
                logger.info("Background sync cancelled")
            except CtxSyncError as exc:
                logger.error("Background sync failed: %s", exc)
            if not self._resync_requested:
                return
            self._resync_requested = False
            cancel_event = self._request_pass()

    def cancel(self) -> None:
        """Cancel the running pass and every pass already requested."""
        self._resync_requested = False
        for cancel_event in self._pending_passes:
            cancel_event.set()
