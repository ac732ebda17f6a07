"""Resolve request paths against the cache and the Dropbox folder."""

from __future__ import annotations

import asyncio
import mimetypes
import posixpath
from datetime import datetime
from typing import Callable, Mapping, Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..remote.dropbox import GENERIC_CONTENT_TYPE, RemoteNotFound, RemoteStore
from .cache import CacheEntry, CacheStore, utc_now
from .invalidation import InvalidationSignal

LOGGER = structlog.get_logger("dboxserver.origin.fetcher")
TRACER = trace.get_tracer("dboxserver.origin")

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("dboxserver_cache_hits_total", "Requests served without a remote call"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("dboxserver_cache_misses_total", "Paths fetched for the first time"))
REVALIDATION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_cache_revalidations_total", "Stale entries checked against the remote store")
)
REUSE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_revision_reuses_total", "Revalidations that kept the cached body")
)
DOWNLOAD_COUNTER = GLOBAL_REGISTRY.register(Counter("dboxserver_downloads_total", "Bodies downloaded from Dropbox"))
NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(Counter("dboxserver_not_found_total", "Negative entries stored"))
BYPASS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_cache_bypass_total", "Bodies served without caching because of their size")
)
COALESCED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_coalesced_fetches_total", "Requests that joined an in-flight fetch")
)


def is_generic_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return True
    return content_type.split(";", 1)[0].strip().lower() == GENERIC_CONTENT_TYPE


def guess_content_type(path: str, overrides: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Look up a MIME type from the extension of the path's final segment."""
    extension = posixpath.splitext(posixpath.basename(path))[1].lower()
    if not extension:
        return None
    if overrides and extension in overrides:
        return overrides[extension]
    guessed, _ = mimetypes.guess_type(f"file{extension}", strict=False)
    return guessed


def correct_content_type(
    path: str,
    remote_type: Optional[str],
    overrides: Optional[Mapping[str, str]] = None,
) -> str:
    """Keep a specific remote type; replace the provider's generic fallback by extension."""
    if not is_generic_content_type(remote_type):
        return remote_type
    return guess_content_type(path, overrides) or GENERIC_CONTENT_TYPE


class Fetcher:
    """Produce a servable :class:`CacheEntry` for a request path.

    Fresh entries are returned directly. Missing or stale entries trigger a
    metadata lookup; the body is downloaded only when the revision changed.
    """

    def __init__(
        self,
        remote: RemoteStore,
        store: CacheStore,
        signal: InvalidationSignal,
        *,
        folder: str = "",
        clock: Callable[[], datetime] = utc_now,
        max_object_bytes: Optional[int] = None,
        coalesce: bool = False,
        mime_overrides: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._remote = remote
        self._store = store
        self._signal = signal
        self._folder = folder
        self._clock = clock
        self._max_object_bytes = max_object_bytes
        self._coalesce = coalesce
        self._mime_overrides = dict(mime_overrides or {})
        self._inflight: dict[str, asyncio.Task] = {}

    def remote_path(self, path: str) -> str:
        return f"{self._folder}{path}"

    async def resolve(self, path: str) -> CacheEntry:
        entry = self._store.get(path)
        if entry is not None and not self._signal.is_stale(entry.fetched_at):
            HIT_COUNTER.inc()
            LOGGER.debug("origin_cache_hit", path=path, exists=entry.exists)
            return entry
        if self._coalesce:
            return await self._refresh_shared(path)
        return await self._refresh(path)

    async def _refresh_shared(self, path: str) -> CacheEntry:
        task = self._inflight.get(path)
        if task is not None:
            COALESCED_COUNTER.inc()
            return await asyncio.shield(task)
        task = asyncio.ensure_future(self._refresh(path))
        task.add_done_callback(self._forget(path))
        self._inflight[path] = task
        return await asyncio.shield(task)

    def _forget(self, path: str):
        def _done(task: asyncio.Task) -> None:
            if self._inflight.get(path) is task:
                del self._inflight[path]
            if not task.cancelled():
                # Mark the outcome as observed; waiters re-raise it themselves.
                task.exception()

        return _done

    async def _refresh(self, path: str) -> CacheEntry:
        previous = self._store.get(path)
        remote_path = self.remote_path(path)
        fetched_at = self._clock()
        if previous is None:
            MISS_COUNTER.inc()
        else:
            REVALIDATION_COUNTER.inc()
            LOGGER.debug("origin_cache_revalidate", path=path, fetched_at=previous.fetched_at.isoformat())

        with TRACER.start_as_current_span("origin.refresh", attributes={"dboxserver.path": path}) as span:
            try:
                metadata = await self._remote.get_metadata(remote_path)
            except RemoteNotFound:
                return self._store_missing(path, fetched_at)
            if metadata.is_dir:
                return self._store_missing(path, fetched_at)

            if (
                previous is not None
                and previous.exists
                and metadata.revision
                and previous.revision == metadata.revision
            ):
                entry = CacheEntry(
                    exists=True,
                    fetched_at=fetched_at,
                    revision=metadata.revision,
                    modified_at=metadata.modified_at or previous.modified_at,
                    content_type=previous.content_type,
                    body=previous.body,
                )
                self._store.set(path, entry)
                REUSE_COUNTER.inc()
                span.set_attribute("dboxserver.reused", True)
                LOGGER.debug("origin_revision_reused", path=path, revision=metadata.revision)
                return entry

            remote_object = await self._remote.download(remote_path)
            DOWNLOAD_COUNTER.inc()
            downloaded = remote_object.metadata
            entry = CacheEntry(
                exists=True,
                fetched_at=fetched_at,
                revision=downloaded.revision or metadata.revision,
                modified_at=downloaded.modified_at or metadata.modified_at,
                content_type=correct_content_type(path, remote_object.content_type, self._mime_overrides),
                body=remote_object.body,
            )
            span.set_attribute("dboxserver.bytes", len(entry.body))
            LOGGER.info(
                "origin_downloaded",
                path=path,
                revision=entry.revision,
                content_type=entry.content_type,
                bytes=len(entry.body),
            )
            if self._max_object_bytes is not None and len(entry.body) > self._max_object_bytes:
                BYPASS_COUNTER.inc()
                LOGGER.info("origin_cache_bypassed", path=path, bytes=len(entry.body), limit=self._max_object_bytes)
                return entry
            self._store.set(path, entry)
            return entry

    def _store_missing(self, path: str, fetched_at: datetime) -> CacheEntry:
        entry = CacheEntry.missing(fetched_at)
        self._store.set(path, entry)
        NOT_FOUND_COUNTER.inc()
        LOGGER.info("origin_not_found", path=path)
        return entry
