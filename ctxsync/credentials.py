from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from ctxsync.errors import AuthError, TransportError
from ctxsync.models import SessionCredential

if TYPE_CHECKING:
    from ctxsync.transport import RemoteTransport


logger = logging.getLogger(__name__)

SESSION_AUTH_ENV = "CTXSYNC_SESSION_AUTH"
API_TOKEN_ENV = "CTXSYNC_API_TOKEN"
API_URL_ENV = "CTXSYNC_API_URL"
DEFAULT_EXPIRY_SKEW_SECONDS = 30.0


def _credential_from_dict(data: Any) -> SessionCredential | None:
    if not isinstance(data, dict):
        return None
    access_token = str(data.get("access_token") or "").strip()
    tenant_url = str(data.get("tenant_url") or "").strip()
    if not access_token or not tenant_url:
        return None
    expires_at = data.get("expires_at")
    scopes = data.get("scopes") or ("read", "write")
    return SessionCredential(
        access_token=access_token,
        tenant_url=tenant_url,
        expires_at=None if expires_at is None else float(expires_at),
        refresh_token=data.get("refresh_token") or None,
        scopes=tuple(str(scope) for scope in scopes),
    )


def parse_credential(raw: str) -> SessionCredential | None:
    try:
        return _credential_from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        logger.warning("Ignoring malformed session data: %s", exc)
        return None


def resolve_env_credential() -> SessionCredential | None:
    """Credential supplied through the environment, if any.

    ``CTXSYNC_SESSION_AUTH`` (a JSON session) wins over the
    ``CTXSYNC_API_TOKEN`` + ``CTXSYNC_API_URL`` pair.
    """
    raw = os.getenv(SESSION_AUTH_ENV, "").strip()
    if raw:
        credential = parse_credential(raw)
        if credential is not None:
            return credential

    token = os.getenv(API_TOKEN_ENV, "").strip()
    url = os.getenv(API_URL_ENV, "").strip()
    if token and url:
        return SessionCredential(access_token=token, tenant_url=url)
    return None


class CredentialStore:
    """The persisted session file. Writes replace the file atomically."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> SessionCredential | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        credential = parse_credential(raw)
        if credential is None:
            logger.warning("Session file %s is invalid; treating as logged out", self.path)
        return credential

    def save(self, credential: SessionCredential) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = asdict(credential)
        payload["scopes"] = list(credential.scopes)
        fd, tmp_name = tempfile.mkstemp(prefix=".session-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def remove(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


class CredentialState(str, Enum):
    UNLOADED = "unloaded"
    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"


class CredentialManager:
    """Owns the process-wide session credential.

    The credential is loaded lazily on the first ``get()``, from the
    environment first and then from the session file. An expired credential
    is refreshed through the transport; only one refresh runs at a time and
    callers arriving meanwhile wait for its outcome. A rejected refresh raises
    ``AuthError``; a timeout or network failure raises ``TransportError`` so
    callers can retry it. Either way the persisted session is left untouched.
    """

    def __init__(
        self,
        store: CredentialStore,
        transport: "RemoteTransport | None" = None,
        *,
        clock: Callable[[], float] = time.time,
        skew_seconds: float = DEFAULT_EXPIRY_SKEW_SECONDS,
        refresh_timeout_seconds: float | None = 30.0,
        use_environment: bool = True,
    ) -> None:
        self.store = store
        self.transport = transport
        self._clock = clock
        self._skew = skew_seconds
        self._refresh_timeout = refresh_timeout_seconds
        self._use_environment = use_environment
        self._credential: SessionCredential | None = None
        self._loaded = False
        self._refreshing = False
        self._from_environment = False
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def state(self) -> CredentialState:
        if self._refreshing:
            return CredentialState.REFRESHING
        if not self._loaded or self._credential is None:
            return CredentialState.UNLOADED
        if self._credential.is_expired(self._clock(), self._skew):
            return CredentialState.EXPIRED
        return CredentialState.VALID

    def _load(self) -> None:
        credential = resolve_env_credential() if self._use_environment else None
        self._from_environment = credential is not None
        if credential is None:
            credential = self.store.load()
        self._credential = credential
        self._loaded = True

    async def get(self) -> SessionCredential:
        """Return a valid credential, loading or refreshing it if needed."""
        current = self._credential
        if self._loaded and current is not None and not current.is_expired(self._clock(), self._skew):
            return current

        async with self._lock:
            if not self._loaded:
                self._load()
            current = self._credential
            if current is None:
                raise AuthError("Not logged in. Run `ctxsync login` or set CTXSYNC_API_TOKEN.")
            if not current.is_expired(self._clock(), self._skew):
                return current
            return await self._refresh(current)

    async def _refresh(self, current: SessionCredential) -> SessionCredential:
        if not current.refresh_token:
            raise AuthError("Session expired and no refresh token is available; log in again.")
        if self.transport is None:
            raise AuthError("Session expired and no transport is configured to refresh it.")

        self._refreshing = True
        try:
            logger.info("Refreshing session credential for %s", current.tenant_url)
            self.refresh_count += 1
            call = asyncio.to_thread(
                self.transport.authenticate, current.tenant_url, current.refresh_token
            )
            try:
                refreshed = await asyncio.wait_for(call, timeout=self._refresh_timeout)
            except asyncio.TimeoutError as exc:
                raise TransportError(
                    f"timed out refreshing the session credential after {self._refresh_timeout}s"
                ) from exc
            except ConnectionError as exc:
                raise TransportError(f"failed to refresh the session credential: {exc}") from exc
        finally:
            self._refreshing = False

        if not refreshed.refresh_token:
            refreshed = replace(refreshed, refresh_token=current.refresh_token)
        if not self._from_environment:
            self.store.save(refreshed)
        self._credential = refreshed
        return refreshed

    async def login(self, credential: SessionCredential) -> None:
        async with self._lock:
            self.store.save(credential)
            self._credential = credential
            self._loaded = True
            self._from_environment = False

    async def logout(self) -> bool:
        async with self._lock:
            removed = self.store.remove()
            self._credential = None
            self._loaded = True
            self._from_environment = False
            return removed
