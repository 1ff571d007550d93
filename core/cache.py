"""Bounded in-memory cache with per-entry expiry."""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """LRU cache whose entries also expire after ``ttl`` seconds.

    The oldest entry is evicted once ``max_size`` is reached. Expired entries
    are dropped lazily on access and by :meth:`cleanup`.
    """

    def __init__(
        self,
        max_size: int = 256,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            self._data.move_to_end(key)
            return value

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        lifetime = self.ttl if ttl is None else ttl
        with self._lock:
            self._data[key] = (self._clock() + lifetime, value)
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._data.items() if now >= expires_at]
            for key in expired:
                del self._data[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


__all__ = ["TTLCache"]
