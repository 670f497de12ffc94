"""Bounded, TTL-based per-process cache (least recently used eviction)."""

import time
from collections import OrderedDict
from typing import Any, Callable, Optional


class LocalCache:
    """
    In-memory LRU cache with a single TTL for all entries.

    Best-effort only: entries may vanish at any time through eviction,
    expiry or a process restart.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 100,
        time_func: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._now = time_func or time.monotonic
        self._entries: "OrderedDict[str, tuple[Any, float]]" = OrderedDict()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when absent or expired."""
        cached = self._entries.get(key)
        if cached is None:
            return None
        value, stored_at = cached
        if self._now() - stored_at > self._ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (value, self._now())

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
