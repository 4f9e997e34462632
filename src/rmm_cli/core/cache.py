"""Short-lived in-memory cache for remote metadata lookups.

A MetadataCache is created by the operation that needs it (one ``add`` or one
``install``) and dropped with it; nothing here outlives the process.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")

DEFAULT_TTL = 300.0


@dataclass
class CacheItem(Generic[T]):
    """A cached value with a time-to-live in seconds."""
    data: T
    ttl: float
    created_at: float

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class MetadataCache:
    """Thread-safe TTL map keyed by strings."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._items: Dict[str, CacheItem[Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            if item.is_expired(self._clock()):
                del self._items[key]
                return None
            return item.data

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._items[key] = CacheItem(data=value, ttl=self.ttl if ttl is None else ttl, created_at=self._clock())

    def get_or_load(self, key: str, loader: Callable[[], T]) -> T:
        """Return the cached value for ``key`` or load and cache it.

        The loader runs outside the lock; two threads missing the same key at
        once may both load, and the later result wins.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
