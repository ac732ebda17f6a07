"""Caching origin: cache store, invalidation, fetcher and HTTP surface."""

from .cache import CacheEntry, CacheStore
from .fetcher import Fetcher, correct_content_type
from .invalidation import ChangeWatcher, InvalidationSignal

__all__ = [
    "CacheEntry",
    "CacheStore",
    "ChangeWatcher",
    "Fetcher",
    "InvalidationSignal",
    "correct_content_type",
]
