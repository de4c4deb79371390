"""Explicit in-process cache with a TTL and last-refresh time per key."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any


@dataclass
class CacheEntry:
    value: Any
    last_refresh: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return (now - self.last_refresh) < self.ttl


class ExpiringCache:
    """Small TTL cache for display-only reads (never consulted for bid decisions)."""

    def __init__(
        self,
        *,
        default_ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._load_lock = asyncio.Lock()

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: Hashable, value: Any, *, ttl: float | None = None) -> None:
        self._entries[key] = CacheEntry(
            value=value,
            last_refresh=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def invalidate(self, key: Hashable | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def entry(self, key: Hashable) -> CacheEntry | None:
        return self._entries.get(key)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        *,
        ttl: float | None = None,
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        async with self._load_lock:
            # Another caller may have loaded the key while this one waited.
            cached = self.get(key)
            if cached is not None:
                return cached
            value = await loader()
            self.set(key, value, ttl=ttl)
            return value
