from __future__ import annotations

from asyncio import Lock
from collections.abc import Awaitable, Callable, Hashable, Iterable
import logging
import time
from typing import Any

from .config import SUMMARY_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

class TTLCache:
    """A simple in-memory TTL cache with async-safe access.

    Keys that are tuples are grouped by their first element, so every entry
    of one ladder session can be dropped at once.
    """

    def __init__(self, ttl_seconds: float = 300.0) -> None:
        self._ttl = ttl_seconds
        self._lock = Lock()
        self._store: dict[Hashable, tuple[Any, float]] = {}

    async def get(self, key: Hashable) -> Any | None:
        now = time.monotonic()
        async with self._lock:
            entry = self._store.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at <= now:
                self._store.pop(key, None)
                return None
            return value

    async def set(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        async with self._lock:
            if ttl <= 0:
                self._store.pop(key, None)
            else:
                self._store[key] = (value, time.monotonic() + ttl)

    async def get_or_set(
        self, key: Hashable, factory: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Return the cached value for ``key`` or compute and store it.

        ``factory`` runs outside the lock; concurrent misses may compute twice.
        """

        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await factory()
        await self.set(key, value)
        return value

    async def invalidate_sessions(self, session_ids: Iterable[str | None]) -> None:
        """Drop every entry whose tuple key starts with one of ``session_ids``."""

        ids = {sid for sid in session_ids if sid}
        if not ids:
            return
        async with self._lock:
            stale = [
                key
                for key in self._store
                if isinstance(key, tuple) and key and key[0] in ids
            ]
            for key in stale:
                self._store.pop(key, None)
        if stale:
            logger.debug("dropped %d cached summaries for sessions %s", len(stale), sorted(ids))

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()


session_summary_cache = TTLCache(ttl_seconds=SUMMARY_CACHE_TTL_SECONDS)
