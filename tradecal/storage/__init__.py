"""Persistence and caching."""

from tradecal.storage.cache import CacheStore, MemoryCache, fingerprint
from tradecal.storage.locks import SegmentLockRegistry
from tradecal.storage.repository import InMemoryRepository, JsonFileRepository, TradeRepository

__all__ = [
    "CacheStore",
    "MemoryCache",
    "fingerprint",
    "SegmentLockRegistry",
    "TradeRepository",
    "InMemoryRepository",
    "JsonFileRepository",
]
