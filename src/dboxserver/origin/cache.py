"""Process-lifetime cache of resolved request paths."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    """Resolved state of one request path; replaced, never mutated."""

    exists: bool
    fetched_at: datetime
    revision: str = ""
    modified_at: Optional[datetime] = None
    content_type: str = ""
    body: bytes = b""

    def __post_init__(self) -> None:
        if not self.exists and (self.revision or self.body or self.content_type):
            raise ValueError("negative cache entries carry no revision, body or content type")

    @classmethod
    def missing(cls, fetched_at: datetime) -> "CacheEntry":
        return cls(exists=False, fetched_at=fetched_at)


class CacheStore:
    """Path-keyed entry map shared by request handlers.

    Keys are used exactly as received. Entries are immutable and replaced whole,
    so the lock is held for a single dictionary lookup or assignment and never
    across a remote call. A reader waits at most for one such operation, and a
    slow refresh of one path never delays hits on another.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(path)

    def set(self, path: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[path] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def total_bytes(self) -> int:
        with self._lock:
            return sum(len(entry.body) for entry in self._entries.values())
