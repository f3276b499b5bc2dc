"""Day-ahead price document caching for today and tomorrow, per site"""

import json
import logging
import os
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class PriceDocumentCache:
    """File-backed cache of day price documents, shared by every user of a site"""

    def __init__(self, path: Optional[str] = None):
        # Lambda only has /tmp (ephemeral, but survives warm invocations)
        if path:
            self._cache_file = Path(path)
        elif os.environ.get('AWS_LAMBDA_FUNCTION_NAME') is not None:
            self._cache_file = Path('/tmp/price_cache.json')
        else:
            self._cache_file = Path('logs/price_cache.json')
        self._cache_file.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Dict[str, List[float]]]:
        """Load price cache from disk"""
        if not self._cache_file.exists():
            return {}
        try:
            with open(self._cache_file, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to load price cache: {e}")
            return {}

    def save(self, cache: Dict[str, Dict[str, List[float]]]) -> None:
        try:
            with open(self._cache_file, 'w') as f:
                json.dump(cache, f)
        except IOError as e:
            logger.warning(f"Failed to save price cache: {e}")

    @staticmethod
    def cleanup(cache: Dict[str, Dict[str, List[float]]], today: date) -> Dict[str, Dict[str, List[float]]]:
        """Drop every day except today and tomorrow"""
        valid_dates = {str(today), str(today + timedelta(days=1))}
        for site_id in list(cache):
            days = cache[site_id]
            for d in [d for d in days if d not in valid_dates]:
                del days[d]
                logger.debug(f"Removed stale price cache entry for {site_id} {d}")
            if not days:
                del cache[site_id]
        return cache

    def get(self, site_id: str, day: date, today: date) -> Optional[List[float]]:
        cache = self.cleanup(self.load(), today)
        prices = cache.get(site_id, {}).get(str(day))
        if prices is not None:
            logger.debug(f"price_cache.get cached=true site={site_id} date={day}")
        return prices

    def set(self, site_id: str, day: date, prices: List[float], today: date) -> None:
        """Cache a day's prices (only if today or tomorrow)"""
        if day not in {today, today + timedelta(days=1)}:
            logger.debug(f"price_cache.set cached=false site={site_id} date={day} reason=outside_window")
            return
        cache = self.cleanup(self.load(), today)
        cache.setdefault(site_id, {})[str(day)] = list(prices)
        self.save(cache)
        logger.debug(f"price_cache.set cached=true site={site_id} date={day} slots={len(prices)}")
