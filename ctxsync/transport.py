from __future__ import annotations

import base64
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from ctxsync.errors import AuthError, PayloadRejected, TransportError
from ctxsync.hashing import is_identity
from ctxsync.models import SessionCredential


logger = logging.getLogger(__name__)

UPLOAD_ENDPOINT = "batch-upload"
TOKEN_ENDPOINT = "token"
DEFAULT_TIMEOUT_SECONDS = 30.0
UPLOAD_TIMEOUT_SECONDS = 120.0
USER_AGENT = "ctxsync/0.1"

RETRIABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
AUTH_STATUS_CODES = frozenset({401, 403})


@dataclass(frozen=True, slots=True)
class Acknowledged:
    identity: str


class RemoteTransport(Protocol):
    def upload_blob(
        self, identity: str, data: bytes, credential: SessionCredential
    ) -> Acknowledged: ...

    def upload_blobs(
        self, blobs: list[tuple[str, bytes]], credential: SessionCredential
    ) -> list[Acknowledged]: ...

    def authenticate(self, tenant_url: str, refresh_token: str) -> SessionCredential: ...


def raise_for_status(response: requests.Response, *, operation: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = (response.text or "").strip()[:200]
    message = f"{operation} failed with HTTP {status}" + (f": {detail}" if detail else "")
    if status in AUTH_STATUS_CODES:
        raise AuthError(message)
    if status in RETRIABLE_STATUS_CODES or status >= 500:
        raise TransportError(message, status_code=status)
    raise PayloadRejected(message, status_code=status)


class HttpTransport:
    """Blob upload and token exchange over the service's JSON API."""

    def __init__(
        self,
        *,
        pool_size: int = 6,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        upload_timeout_seconds: float = UPLOAD_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.upload_timeout_seconds = upload_timeout_seconds
        self.session_id = str(uuid.uuid4())
        if session is None:
            session = requests.Session()
            adapter = HTTPAdapter(pool_connections=1, pool_maxsize=max(1, pool_size))
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        session.headers.update({"User-Agent": USER_AGENT, "X-Session-Id": self.session_id})
        self._session = session

    def close(self) -> None:
        self._session.close()

    def _post(
        self,
        tenant_url: str,
        endpoint: str,
        body: dict[str, Any],
        *,
        access_token: str | None,
        timeout: float,
    ) -> dict[str, Any]:
        url = urljoin(tenant_url if tenant_url.endswith("/") else tenant_url + "/", endpoint)
        headers = {"X-Request-Id": str(uuid.uuid4())}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            response = self._session.post(url, json=body, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            raise TransportError(f"{endpoint} timed out after {timeout}s") from exc
        except requests.ConnectionError as exc:
            raise TransportError(f"{endpoint} connection failed: {exc}") from exc
        except requests.RequestException as exc:
            raise TransportError(f"{endpoint} request failed: {exc}") from exc

        raise_for_status(response, operation=endpoint)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"{endpoint} returned a non-JSON response") from exc
        if not isinstance(payload, dict):
            raise TransportError(f"{endpoint} returned an unexpected response shape")
        return payload

    def upload_blobs(
        self, blobs: list[tuple[str, bytes]], credential: SessionCredential
    ) -> list[Acknowledged]:
        """Upload several blobs in one request.

        Returns an acknowledgement for each name the remote listed in
        ``blob_names``. Names that are not content identities are dropped.
        """
        body = {
            "blobs": [
                {
                    "blob_name": identity,
                    "content": base64.b64encode(data).decode("ascii"),
                }
                for identity, data in blobs
            ]
        }
        payload = self._post(
            credential.tenant_url,
            UPLOAD_ENDPOINT,
            body,
            access_token=credential.access_token,
            timeout=self.upload_timeout_seconds,
        )
        blob_names = payload.get("blob_names") or []
        if not isinstance(blob_names, list):
            raise TransportError(f"{UPLOAD_ENDPOINT} returned an unexpected 'blob_names' value")

        acknowledged = []
        for name in blob_names:
            if not isinstance(name, str) or not is_identity(name):
                logger.warning("Ignoring malformed blob name in upload response: %r", name)
                continue
            acknowledged.append(Acknowledged(identity=name))
        logger.debug(
            "Uploaded %d blob(s) (%d bytes), %d acknowledged",
            len(blobs),
            sum(len(data) for _, data in blobs),
            len(acknowledged),
        )
        return acknowledged

    def upload_blob(
        self, identity: str, data: bytes, credential: SessionCredential
    ) -> Acknowledged:
        acknowledged = self.upload_blobs([(identity, data)], credential)
        if Acknowledged(identity=identity) not in acknowledged:
            raise PayloadRejected(f"Remote did not acknowledge blob {identity}")
        return Acknowledged(identity=identity)

    def authenticate(self, tenant_url: str, refresh_token: str) -> SessionCredential:
        body = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        try:
            payload = self._post(
                tenant_url,
                TOKEN_ENDPOINT,
                body,
                access_token=None,
                timeout=self.timeout_seconds,
            )
        except PayloadRejected as exc:
            raise AuthError(f"Token exchange rejected: {exc}") from exc

        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise AuthError("Token response does not contain a valid 'access_token' field")
        expires_in = payload.get("expires_in")
        return SessionCredential(
            access_token=access_token,
            tenant_url=tenant_url,
            expires_at=None if expires_in is None else time.time() + float(expires_in),
            refresh_token=payload.get("refresh_token") or None,
        )
