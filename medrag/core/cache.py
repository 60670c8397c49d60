"""
TTL cache for results of external lookups.

Keys are content hashes of the request (see make_key), so an entry is a pure
function of its key. Expired entries are dropped when they are looked up, and
the whole cache is swept once it grows past `sweep_threshold` entries.
"""

import hashlib
import json
import threading
import time
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from cachetools import TTLCache
from loguru import logger

V = TypeVar("V")


def make_key(*parts: Any) -> str:
    """Stable md5 key over JSON-serialisable parts (dict keys are sorted)."""
    serialized = json.dumps(parts, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)
    return hashlib.md5(serialized.encode()).hexdigest()


class ResultCache(Generic[V]):
    def __init__(
        self,
        name: str,
        ttl: float,
        maxsize: int = 1000,
        sweep_threshold: int = 100,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.sweep_threshold = sweep_threshold
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            value = self._cache.get(key)
            if value is None:
                self.misses += 1
            else:
                self.hits += 1
        return value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            self._cache[key] = value
            if len(self._cache) > self.sweep_threshold:
                self._cache.expire()
            size = len(self._cache)
        logger.debug(f"[{self.name}] cached {key} ({size} entries)")

    def sweep(self) -> int:
        """Evict every expired entry now; returns how many were dropped."""
        with self._lock:
            return len(self._cache.expire())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self._cache),
            "maxsize": self._cache.maxsize,
            "ttl": self._cache.ttl,
            "hits": self.hits,
            "misses": self.misses,
        }
