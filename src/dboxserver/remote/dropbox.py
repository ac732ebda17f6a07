"""Dropbox HTTP API v2 client used as the origin's remote store."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
import structlog
from opentelemetry import trace

API_BASE = "https://api.dropboxapi.com/2"
CONTENT_BASE = "https://content.dropboxapi.com/2"
NOTIFY_BASE = "https://notify.dropboxapi.com/2"
# Dropbox adds up to 90 seconds of jitter on top of the requested long-poll timeout.
LONGPOLL_TIMEOUT_MARGIN = 120.0
GENERIC_CONTENT_TYPE = "application/octet-stream"

LOGGER = structlog.get_logger("dboxserver.remote.dropbox")
TRACER = trace.get_tracer("dboxserver.remote")


class RemoteStoreError(Exception):
    """The remote store could not complete a request."""


class RemoteNotFound(RemoteStoreError):
    """The requested path does not exist in the remote store."""


@dataclass(frozen=True)
class RemoteMetadata:
    path: str
    is_dir: bool
    revision: str = ""
    modified_at: Optional[datetime] = None
    size: int = 0


@dataclass(frozen=True)
class RemoteObject:
    metadata: RemoteMetadata
    content_type: str
    body: bytes


@dataclass(frozen=True)
class ChangeSignal:
    changes: bool
    backoff_seconds: float = 0.0


class RemoteStore(Protocol):
    async def get_metadata(self, path: str) -> RemoteMetadata: ...

    async def download(self, path: str) -> RemoteObject: ...

    async def latest_cursor(self, folder: str) -> str: ...

    async def wait_for_changes(self, cursor: str, timeout: int) -> ChangeSignal: ...

    async def aclose(self) -> None: ...


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_metadata(payload: dict[str, Any]) -> RemoteMetadata:
    tag = payload.get(".tag", "file")
    path = payload.get("path_display") or payload.get("path_lower") or ""
    if tag == "folder":
        return RemoteMetadata(path=path, is_dir=True)
    if tag == "deleted":
        raise RemoteNotFound(f"{path} has been deleted")
    return RemoteMetadata(
        path=path,
        is_dir=False,
        revision=payload.get("rev", ""),
        modified_at=_parse_timestamp(payload.get("server_modified")),
        size=int(payload.get("size", 0)),
    )


def _error_summary(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict) and payload.get("error_summary"):
        return str(payload["error_summary"])
    return response.text.strip() or response.reason_phrase


class DropboxClient:
    """Thin async wrapper over the Dropbox endpoints the origin needs."""

    def __init__(
        self,
        access_token: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ) -> None:
        self._token = access_token
        self._timeout = timeout
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    @classmethod
    def from_settings(cls, settings) -> "DropboxClient":
        if settings.access_token is None:
            raise RuntimeError("DROPBOX_ACCESS_TOKEN is required to reach Dropbox")
        return cls(settings.access_token.get_secret_value(), timeout=settings.remote_timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _post(
        self,
        endpoint: str,
        url: str,
        *,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._http.post(url, timeout=timeout, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"dropbox {endpoint} request failed: {exc}") from exc
        if response.status_code == httpx.codes.OK:
            return response
        summary = _error_summary(response)
        LOGGER.debug("dropbox_request_rejected", endpoint=endpoint, status=response.status_code, summary=summary)
        if response.status_code == httpx.codes.CONFLICT and summary.startswith("path/not_found"):
            raise RemoteNotFound(f"dropbox {endpoint}: {summary}")
        raise RemoteStoreError(f"dropbox {endpoint} failed ({response.status_code}): {summary}")

    @staticmethod
    def _json(endpoint: str, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteStoreError(f"dropbox {endpoint} returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise RemoteStoreError(f"dropbox {endpoint} returned an unexpected payload")
        return payload

    @staticmethod
    def _metadata(endpoint: str, payload: Any) -> RemoteMetadata:
        if not isinstance(payload, dict):
            raise RemoteStoreError(f"dropbox {endpoint} returned an unexpected metadata payload")
        try:
            return parse_metadata(payload)
        except (ValueError, TypeError) as exc:
            raise RemoteStoreError(f"dropbox {endpoint} returned malformed metadata: {exc}") from exc

    async def get_metadata(self, path: str) -> RemoteMetadata:
        with TRACER.start_as_current_span("dropbox.get_metadata", attributes={"dboxserver.remote_path": path}):
            response = await self._post(
                "get_metadata",
                f"{API_BASE}/files/get_metadata",
                json={"path": path},
                headers=self._auth_headers(),
                timeout=self._timeout,
            )
            return self._metadata("get_metadata", self._json("get_metadata", response))

    async def download(self, path: str) -> RemoteObject:
        with TRACER.start_as_current_span("dropbox.download", attributes={"dboxserver.remote_path": path}) as span:
            headers = self._auth_headers()
            headers["Dropbox-API-Arg"] = json.dumps({"path": path})
            response = await self._post(
                "download",
                f"{CONTENT_BASE}/files/download",
                headers=headers,
                timeout=self._timeout,
            )
            raw_result = response.headers.get("Dropbox-API-Result")
            if not raw_result:
                raise RemoteStoreError("dropbox download response is missing Dropbox-API-Result")
            try:
                result = json.loads(raw_result)
            except ValueError as exc:
                raise RemoteStoreError("dropbox download returned malformed metadata") from exc
            metadata = self._metadata("download", result)
            body = response.content
            span.set_attribute("dboxserver.bytes", len(body))
            return RemoteObject(
                metadata=metadata,
                content_type=response.headers.get("Content-Type", GENERIC_CONTENT_TYPE),
                body=body,
            )

    async def latest_cursor(self, folder: str) -> str:
        response = await self._post(
            "list_folder/get_latest_cursor",
            f"{API_BASE}/files/list_folder/get_latest_cursor",
            json={"path": "" if folder == "/" else folder, "recursive": True},
            headers=self._auth_headers(),
            timeout=self._timeout,
        )
        payload = self._json("list_folder/get_latest_cursor", response)
        cursor = payload.get("cursor")
        if not cursor:
            raise RemoteStoreError("dropbox list_folder/get_latest_cursor returned no cursor")
        return str(cursor)

    async def wait_for_changes(self, cursor: str, timeout: int) -> ChangeSignal:
        # The notify endpoint rejects requests that carry an Authorization header.
        response = await self._post(
            "list_folder/longpoll",
            f"{NOTIFY_BASE}/files/list_folder/longpoll",
            json={"cursor": cursor, "timeout": timeout},
            timeout=timeout + LONGPOLL_TIMEOUT_MARGIN,
        )
        payload = self._json("list_folder/longpoll", response)
        return ChangeSignal(
            changes=bool(payload.get("changes")),
            backoff_seconds=float(payload.get("backoff") or 0),
        )
