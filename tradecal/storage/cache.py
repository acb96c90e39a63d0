"""Analysis cache keyed by offer fingerprint.

A fingerprint covers both sides, the segment, the valuation date and the
league context, plus the weight coefficients and isotonic map in force, so
a weight update never serves a stale analysis.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional
import hashlib
import json
import threading
import time


def fingerprint(payload: Dict[str, Any]) -> str:
    """Stable sha256 over a JSON-serialisable payload."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


@dataclass(frozen=True)
class _Entry:
    value: Any
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheStore:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCache(CacheStore):
    """Thread-safe TTL cache with least-recently-used eviction."""

    def __init__(self, max_entries: int = 10000, clock=time.monotonic) -> None:
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired(self._clock()):
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        # ttl <= 0 disables caching
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
