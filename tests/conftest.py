from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from dboxserver.remote.dropbox import (
    ChangeSignal,
    RemoteMetadata,
    RemoteNotFound,
    RemoteObject,
    RemoteStoreError,
)

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeRemoteStore:
    """In-memory Dropbox folder with per-operation call counters."""

    def __init__(self) -> None:
        self.files: dict[str, tuple[str, bytes, str]] = {}
        self.folders: set[str] = set()
        self.metadata_calls: list[str] = []
        self.download_calls: list[str] = []
        self.cursor_calls = 0
        self.longpoll_calls = 0
        self.metadata_error: Optional[Exception] = None
        self.download_error: Optional[Exception] = None
        self.changes: asyncio.Queue[ChangeSignal | Exception] = asyncio.Queue()
        self.download_delay = 0.0
        self.closed = False

    def put(self, path: str, body: bytes, revision: str, content_type: str = "application/octet-stream") -> None:
        self.files[path] = (revision, body, content_type)

    def _metadata(self, path: str) -> RemoteMetadata:
        revision, body, _ = self.files[path]
        return RemoteMetadata(path=path, is_dir=False, revision=revision, modified_at=BASE_TIME, size=len(body))

    async def get_metadata(self, path: str) -> RemoteMetadata:
        self.metadata_calls.append(path)
        if self.metadata_error is not None:
            raise self.metadata_error
        if path in self.folders:
            return RemoteMetadata(path=path, is_dir=True)
        if path not in self.files:
            raise RemoteNotFound(f"dropbox get_metadata: path/not_found/ {path}")
        return self._metadata(path)

    async def download(self, path: str) -> RemoteObject:
        self.download_calls.append(path)
        if self.download_delay:
            await asyncio.sleep(self.download_delay)
        if self.download_error is not None:
            raise self.download_error
        if path not in self.files:
            raise RemoteNotFound(f"dropbox download: path/not_found/ {path}")
        _, body, content_type = self.files[path]
        return RemoteObject(metadata=self._metadata(path), content_type=content_type, body=body)

    async def latest_cursor(self, folder: str) -> str:
        self.cursor_calls += 1
        return f"cursor-{self.cursor_calls}"

    async def wait_for_changes(self, cursor: str, timeout: int) -> ChangeSignal:
        self.longpoll_calls += 1
        outcome = await self.changes.get()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote_error() -> RemoteStoreError:
    return RemoteStoreError("dropbox get_metadata failed (429): too_many_requests/")
