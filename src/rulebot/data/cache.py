"""Small in-process TTL cache, constructed explicitly and passed where needed."""

from __future__ import annotations

import threading
import time
from typing import Callable, Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Key/value cache whose entries expire ``ttl_seconds`` after being stored."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds_must_not_be_negative")
        if max_entries <= 0:
            raise ValueError("max_entries_must_be_positive")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, V]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> V | None:
        with self._lock:
            row = self._entries.get(key)
            if row is None:
                return None
            stored_at, value = row
            if self._clock() - stored_at > self._ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                # evict the oldest entry
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[key] = (self._clock(), value)

    def get_or_load(self, key: str, loader: Callable[[], V]) -> V:
        """Return the cached value, calling ``loader`` on a miss."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
