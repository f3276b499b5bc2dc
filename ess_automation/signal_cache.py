"""TTL cache for upstream signals with in-flight request sharing"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Union

from .clock import utc_now
from .models import CacheEntry

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


class SignalCache:
    """Per-key TTL cache; concurrent misses for one key share a single upstream call"""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._in_flight: Dict[Hashable, asyncio.Future] = {}

    async def get_or_fetch(self, key: Hashable, ttl: Union[timedelta, float], fetch_fn: Fetcher) -> Any:
        """Return the cached value while fresh, otherwise join or start a fetch"""
        if not isinstance(ttl, timedelta):
            ttl = timedelta(seconds=ttl)

        entry = self._entries.get(key)
        if entry is not None and entry.is_valid(self._clock()):
            logger.debug(f"signal_cache.get cached=true key={key}")
            return entry.value

        task = self._in_flight.get(key)
        if task is None:
            logger.debug(f"signal_cache.get cached=false key={key}")
            task = asyncio.ensure_future(self._fetch(key, ttl, fetch_fn))
            self._in_flight[key] = task
        else:
            logger.debug(f"signal_cache.get joined=true key={key}")
        # A cancelled waiter must not cancel the fetch other waiters share
        return await asyncio.shield(task)

    async def _fetch(self, key: Hashable, ttl: timedelta, fetch_fn: Fetcher) -> Any:
        try:
            value = await fetch_fn()
            self._entries[key] = CacheEntry(value, self._clock(), ttl)
            return value
        finally:
            self._in_flight.pop(key, None)

    def peek(self, key: Hashable) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
