"""Amber Electric price API client"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from .errors import RateLimited, SignalUnavailable
from .models import CurrentPrice, PriceInterval

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


def _parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _per_kwh(item: Dict[str, Any]) -> Optional[float]:
    """Feed-in prices come back negative when the user earns; flip them to earnings"""
    value = item.get('perKwh')
    if value is None:
        return None
    return -float(value) if item.get('channelType') == 'feedIn' else float(value)


def parse_prices(items: List[Dict[str, Any]]) -> Tuple[Optional[CurrentPrice], List[PriceInterval]]:
    """Split an Amber price list into the current interval and forecast intervals"""
    current = None
    intervals: Dict[str, PriceInterval] = {}

    for item in items or []:
        kind = item.get('type')
        channel = item.get('channelType')
        if channel not in ('general', 'feedIn'):
            continue
        price = _per_kwh(item)

        if kind == 'CurrentInterval':
            current = current or CurrentPrice()
            if channel == 'general':
                current.import_per_unit = price
            else:
                current.export_per_unit = price
        elif kind == 'ForecastInterval' and item.get('startTime') and item.get('endTime'):
            key = item['startTime']
            interval = intervals.get(key)
            if interval is None:
                interval = PriceInterval(_parse_time(item['startTime']), _parse_time(item['endTime']))
                intervals[key] = interval
            if channel == 'general':
                interval.import_per_unit = price
            else:
                interval.export_per_unit = price

    return current, sorted(intervals.values(), key=lambda i: i.start)


class AmberClient:
    """Bearer-authenticated access to /sites/{id}/prices/current"""

    def __init__(self, api_key: str, base_url: str = 'https://api.amber.com.au/v1',
                 forecast_intervals: int = 288, timeout_seconds: float = 10,
                 session: Optional[aiohttp.ClientSession] = None,
                 clock: Callable[[], float] = time.time):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.forecast_intervals = forecast_intervals
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._retry_after = 0.0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        if self._retry_after > self._clock():
            raise RateLimited(f"Amber rate limited for another {int(self._retry_after - self._clock())}s",
                              errno=429)
        headers = {'Authorization': f"Bearer {self.api_key}", 'Accept': 'application/json'}
        try:
            async with self._get_session().get(f"{self.base_url}{path}", params=params,
                                               headers=headers) as response:
                if response.status == 429:
                    retry = response.headers.get('Retry-After', DEFAULT_RETRY_AFTER_SECONDS)
                    try:
                        retry_seconds = float(retry)
                    except (TypeError, ValueError):
                        retry_seconds = DEFAULT_RETRY_AFTER_SECONDS
                    self._retry_after = self._clock() + retry_seconds
                    logger.error(f"Amber rate limit hit, retry after {retry_seconds:.0f}s")
                    raise RateLimited("Amber rate limited", errno=429)
                if response.status != 200:
                    logger.error(f"Amber {path} returned HTTP {response.status}")
                    raise SignalUnavailable('amber', f"HTTP {response.status}")
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Amber call {path} failed: {e!r}")
            raise SignalUnavailable('amber', repr(e))

    def site_key(self, site_id: Optional[str]) -> Optional[str]:
        """Prices are per Amber site; without one there is nothing to fetch"""
        return site_id

    async def get_prices(self, site_id: str, next_intervals: Optional[int] = None) -> Tuple[Optional[CurrentPrice], List[PriceInterval]]:
        """One request carries both the current interval and the forecast"""
        if next_intervals is None:
            next_intervals = self.forecast_intervals
        data = await self._get(f"/sites/{site_id}/prices/current", {'next': next_intervals})
        if not isinstance(data, list):
            raise SignalUnavailable('amber', 'unexpected response')
        current, intervals = parse_prices(data)
        if current is not None:
            logger.info(f"💰 Price: import {current.import_per_unit} c/kWh, feed-in {current.export_per_unit} c/kWh")
        logger.debug(f"amber.prices site={site_id} intervals={len(intervals)}")
        return current, intervals

    async def get_current_price(self, site_id: str) -> CurrentPrice:
        current, _ = await self.get_prices(site_id, 0)
        if current is None:
            raise SignalUnavailable('amber', 'no current interval')
        return current

    async def get_forecast_prices(self, site_id: str, horizon: Optional[int] = None) -> List[PriceInterval]:
        _, intervals = await self.get_prices(site_id, horizon)
        return intervals

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
