from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
import pytest_asyncio

from ctxsync.blob_cache import BlobCache
from ctxsync.credentials import CredentialManager, CredentialStore
from ctxsync.errors import AuthError
from ctxsync.models import SessionCredential
from ctxsync.transport import Acknowledged


TENANT_URL = "https://tenant.example.test/"


class FakeTransport:
    """In-memory remote. Thread-safe because calls arrive on worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.stored: dict[str, bytes] = {}
        self.upload_calls: list[str] = []
        self.auth_calls = 0
        self.tokens_seen: list[str] = []
        # identity -> exceptions raised on successive attempts before succeeding
        self.failures: dict[str, list[BaseException]] = {}
        self.ack_override: dict[str, str] = {}
        self.upload_delay = 0.0
        self.auth_delay = 0.0
        self.auth_error: BaseException | None = None
        # exceptions raised by successive token exchanges before auth_error applies
        self.auth_failures: list[BaseException] = []
        self.batch_calls: list[list[str]] = []
        self.issued_expires_at: float | None = None
        self.before_ack = None

    def upload_blob(self, identity: str, data: bytes, credential: SessionCredential) -> Acknowledged:
        with self._lock:
            self.upload_calls.append(identity)
            self.tokens_seen.append(credential.access_token)
            pending = self.failures.get(identity)
            error = pending.pop(0) if pending else None
        if self.upload_delay:
            time.sleep(self.upload_delay)
        if error is not None:
            raise error
        with self._lock:
            self.stored[identity] = data
        if self.before_ack is not None:
            self.before_ack(identity)
        return Acknowledged(identity=self.ack_override.get(identity, identity))

    def upload_blobs(
        self, blobs: list[tuple[str, bytes]], credential: SessionCredential
    ) -> list[Acknowledged]:
        with self._lock:
            self.batch_calls.append([identity for identity, _ in blobs])
        # Any failing blob fails the whole request, like an HTTP error would.
        return [self.upload_blob(identity, data, credential) for identity, data in blobs]

    def authenticate(self, tenant_url: str, refresh_token: str) -> SessionCredential:
        with self._lock:
            self.auth_calls += 1
            count = self.auth_calls
        if self.auth_delay:
            time.sleep(self.auth_delay)
        with self._lock:
            error = self.auth_failures.pop(0) if self.auth_failures else self.auth_error
        if error is not None:
            raise error
        return SessionCredential(
            access_token=f"refreshed-{count}",
            tenant_url=tenant_url,
            expires_at=self.issued_expires_at,
        )

    def upload_count(self, identity: str) -> int:
        return self.upload_calls.count(identity)


class RejectingTransport(FakeTransport):
    def upload_blob(self, identity: str, data: bytes, credential: SessionCredential) -> Acknowledged:
        with self._lock:
            self.upload_calls.append(identity)
        raise AuthError("HTTP 401: token revoked")


def write_file(root: Path, rel: str, content: bytes | str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for name in (
        "CTXSYNC_SESSION_AUTH",
        "CTXSYNC_API_TOKEN",
        "CTXSYNC_API_URL",
        "CTXSYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CTXSYNC_STATE_DIR", str(tmp_path / "state"))


@pytest.fixture
def workspace(tmp_path) -> Path:
    root = tmp_path / "ws"
    root.mkdir()
    return root


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def session_store(tmp_path) -> CredentialStore:
    store = CredentialStore(tmp_path / "state" / "session.json")
    store.save(SessionCredential(access_token="token-0", tenant_url=TENANT_URL))
    return store


@pytest.fixture
def credentials(session_store, transport) -> CredentialManager:
    return CredentialManager(session_store, transport, use_environment=False)


@pytest_asyncio.fixture
async def cache(tmp_path):
    blob_cache = BlobCache(tmp_path / "state" / "cache.db", capacity_bytes=1024 * 1024)
    await blob_cache.open()
    try:
        yield blob_cache
    finally:
        await blob_cache.close()
