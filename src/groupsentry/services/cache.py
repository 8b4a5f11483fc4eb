from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """In-memory TTL cache with a bound on the number of entries."""

    def __init__(
        self,
        default_ttl_seconds: int = 120,
        *,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = max(1, int(default_ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._store: dict[K, _Entry[V]] = {}

    def get(self, key: K) -> Optional[V]:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return entry.value

    def set(self, key: K, value: V, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else max(1, int(ttl_seconds))
        if key not in self._store and len(self._store) >= self._max_entries:
            self.prune()
            if len(self._store) >= self._max_entries:
                # Oldest insertion goes first.
                self._store.pop(next(iter(self._store)))
        self._store[key] = _Entry(value=value, expires_at=self._clock() + ttl)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def clear(self) -> None:
        self._store.clear()

    def prune(self) -> int:
        now = self._clock()
        stale = [k for k, v in self._store.items() if v.expires_at <= now]
        for k in stale:
            self._store.pop(k, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._store)
