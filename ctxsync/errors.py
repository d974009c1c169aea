from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ctxsync.models import SyncReport


class CtxSyncError(RuntimeError):
    """Base class for all ctxsync failures."""


class ScanError(CtxSyncError):
    """The workspace could not be scanned; no partial snapshot is produced."""


class CacheInconsistency(CtxSyncError):
    """The blob cache was asked to do something its state does not allow."""


class TransportError(CtxSyncError):
    """Transient remote failure (timeout, connection reset, 5xx). Retryable."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PayloadRejected(CtxSyncError):
    """The remote service refused the payload itself. Not retryable."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(CtxSyncError):
    """Authentication is missing, rejected or could not be refreshed.

    When raised out of an upload pass, ``report`` holds what the pass had
    done before it halted.
    """

    report: "SyncReport | None" = None


class SyncCancelled(CtxSyncError):
    """A synchronization pass was cancelled cooperatively."""
