"""OTE (Czech market operator) day-ahead prices as an import/export price source"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from ote_cr_price_fetcher import PriceFetcher

from .clock import resolve_timezone, utc_now
from .errors import SignalUnavailable
from .models import CurrentPrice, PriceInterval
from .price_cache import PriceDocumentCache

logger = logging.getLogger(__name__)

SLOT_MINUTES = 15
MARKET_TIMEZONE = 'Europe/Prague'
MARKET_KEY = 'ote-cz'


class OTEPriceClient:
    """15-minute spot prices (EUR/MWh); import adds the markup, export subtracts it"""

    def __init__(self, import_markup: float = 0.0, export_markup: float = 0.0,
                 cache: Optional[PriceDocumentCache] = None, fetcher: Optional[PriceFetcher] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.import_markup = import_markup
        self.export_markup = export_markup
        self.cache = cache or PriceDocumentCache()
        self.price_fetcher = fetcher or PriceFetcher()
        self.tz = resolve_timezone(MARKET_TIMEZONE)
        self._clock = clock

    def _today(self) -> date:
        return self._clock().astimezone(self.tz).date()

    async def get_day_prices(self, site_id: str, day: date) -> List[float]:
        """Get 15-minute prices for a day (cached for today/tomorrow)"""
        today = self._today()
        cached = self.cache.get(site_id, day, today)
        if cached is not None:
            return cached
        try:
            prices = await self.price_fetcher.fetch_prices_for_date(day, hourly=False)
        except Exception as e:
            logger.error(f"Failed to get prices for {day}: {e}")
            raise SignalUnavailable('ote', str(e))
        if not prices:
            raise SignalUnavailable('ote', f"no prices published for {day}")
        prices = [float(p) for p in prices]
        self.cache.set(site_id, day, prices, today)
        return prices

    def _intervals(self, day: date, prices: List[float]) -> List[PriceInterval]:
        midnight = datetime(day.year, day.month, day.day, tzinfo=self.tz)
        intervals = []
        for slot, spot in enumerate(prices):
            start = midnight + timedelta(minutes=slot * SLOT_MINUTES)
            intervals.append(PriceInterval(start, start + timedelta(minutes=SLOT_MINUTES),
                                           import_per_unit=spot + self.import_markup,
                                           export_per_unit=spot - self.export_markup))
        return intervals

    async def get_current_price(self, site_id: str) -> CurrentPrice:
        now = self._clock().astimezone(self.tz)
        prices = await self.get_day_prices(site_id, now.date())
        slot = (now.hour * 60 + now.minute) // SLOT_MINUTES
        if slot >= len(prices):
            raise SignalUnavailable('ote', f"no price for slot {slot}")
        spot = prices[slot]
        logger.info(f"💰 Spot price: {spot:.0f} EUR/MWh (slot {slot})")
        return CurrentPrice(spot + self.import_markup, spot - self.export_markup)

    async def get_forecast_prices(self, site_id: str, horizon: Optional[int] = None) -> List[PriceInterval]:
        """Remaining intervals of today plus tomorrow once published"""
        now = self._clock().astimezone(self.tz)
        intervals = self._intervals(now.date(), await self.get_day_prices(site_id, now.date()))
        tomorrow = now.date() + timedelta(days=1)
        try:
            intervals += self._intervals(tomorrow, await self.get_day_prices(site_id, tomorrow))
        except SignalUnavailable:
            # Tomorrow's auction results appear early afternoon
            logger.debug(f"ote.forecast tomorrow=unavailable date={tomorrow}")
        upcoming = [i for i in intervals if i.end > now]
        return upcoming[:horizon] if horizon else upcoming

    def site_key(self, site_id: Optional[str]) -> str:
        """One market price for everyone; a configured site only namespaces the day cache"""
        return site_id or MARKET_KEY

    async def get_prices(self, site_id: str) -> Tuple[CurrentPrice, List[PriceInterval]]:
        current = await self.get_current_price(site_id)
        return current, await self.get_forecast_prices(site_id)
