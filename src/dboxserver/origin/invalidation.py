"""Folder-wide invalidation signal driven by Dropbox long-polling."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from typing import Callable, Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..remote.dropbox import RemoteStore
from .cache import utc_now

LOGGER = structlog.get_logger("dboxserver.origin.watch")

INVALIDATION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_invalidations_total", "Remote change notifications that invalidated the cache")
)
WATCH_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_watch_errors_total", "Failed cursor or long-poll calls")
)
WATCH_TIMEOUT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("dboxserver_watch_idle_polls_total", "Long-polls that ended without a change")
)


class InvalidationSignal:
    """Timestamp of the most recent remote change seen anywhere in the folder.

    Written only by :class:`ChangeWatcher`; read by every request. It decides
    when to ask the remote store again, while the per-file revision decides
    what gets served.
    """

    def __init__(self, initial: Optional[datetime] = None) -> None:
        self._last_invalidated_at = initial or utc_now()

    @property
    def last_invalidated_at(self) -> datetime:
        return self._last_invalidated_at

    def is_stale(self, fetched_at: datetime) -> bool:
        # Equal timestamps count as fresh.
        return fetched_at < self._last_invalidated_at

    def invalidate(self, at: Optional[datetime] = None) -> datetime:
        moment = at or utc_now()
        if moment > self._last_invalidated_at:
            self._last_invalidated_at = moment
        return self._last_invalidated_at


class ChangeWatcher:
    """Long-poll the monitored folder and bump the signal on every change."""

    def __init__(
        self,
        remote: RemoteStore,
        signal: InvalidationSignal,
        folder: str,
        *,
        longpoll_timeout: int = 300,
        error_backoff: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._remote = remote
        self._signal = signal
        self._folder = folder
        self._longpoll_timeout = longpoll_timeout
        self._error_backoff = error_backoff
        self._clock = clock
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> float:
        """Run one watch cycle and return the pause before the next one."""
        try:
            cursor = await self._remote.latest_cursor(self._folder)
            result = await self._remote.wait_for_changes(cursor, self._longpoll_timeout)
        except Exception as exc:  # noqa: BLE001 - the loop must outlive any remote failure
            WATCH_ERROR_COUNTER.inc()
            LOGGER.warning(
                "watch_failed",
                folder=self._folder,
                error=str(exc),
                retry_in=self._error_backoff,
            )
            return self._error_backoff

        if result.changes:
            invalidated_at = self._signal.invalidate(self._clock())
            INVALIDATION_COUNTER.inc()
            LOGGER.info(
                "watch_invalidated",
                folder=self._folder,
                invalidated_at=invalidated_at.isoformat(),
                backoff=result.backoff_seconds,
            )
        else:
            WATCH_TIMEOUT_COUNTER.inc()
            LOGGER.debug("watch_idle", folder=self._folder)
        return result.backoff_seconds

    async def run(self) -> None:
        while not self._stopping.is_set():
            delay = await self.poll_once()
            if delay > 0 and await self._wait_for_stop(delay):
                break

    async def _wait_for_stop(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name="dboxserver-change-watcher")
        LOGGER.info("watch_started", folder=self._folder, longpoll_timeout=self._longpoll_timeout)

    async def stop(self) -> None:
        self._stopping.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        LOGGER.info("watch_stopped", folder=self._folder)
