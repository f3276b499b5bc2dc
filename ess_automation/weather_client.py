"""Open-Meteo weather forecast client with place-name geocoding"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import aiohttp

from .clock import resolve_timezone
from .errors import SignalUnavailable
from .models import HourlyWeather, WeatherForecast

logger = logging.getLogger(__name__)

GEOCODING_URL = 'https://geocoding-api.open-meteo.com/v1/search'
FORECAST_URL = 'https://api.open-meteo.com/v1/forecast'
HOURLY_VARIABLES = 'shortwave_radiation,cloudcover,temperature_2m'
DAILY_VARIABLES = 'sunrise,sunset,shortwave_radiation_sum'


def parse_forecast(data: Dict[str, Any]) -> WeatherForecast:
    """Hourly times come back as local wall-clock strings in the resolved timezone"""
    tz_name = data.get('timezone')
    tz = resolve_timezone(tz_name)
    hourly = data.get('hourly') or {}
    times = hourly.get('time') or []
    radiation = hourly.get('shortwave_radiation') or []
    cloud = hourly.get('cloudcover') or []
    temperature = hourly.get('temperature_2m') or []

    def at(values, index):
        return values[index] if index < len(values) else None

    hours = [
        HourlyWeather(
            time=datetime.fromisoformat(t).replace(tzinfo=tz),
            solar_radiation=at(radiation, i),
            cloud_cover=at(cloud, i),
            temperature=at(temperature, i),
        )
        for i, t in enumerate(times)
    ]
    return WeatherForecast(timezone=tz_name, hourly=hours, daily=data.get('daily') or {})


class WeatherClient:
    def __init__(self, forecast_days: int = 2, timeout_seconds: float = 10,
                 session: Optional[aiohttp.ClientSession] = None):
        self.forecast_days = forecast_days
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._locations: Dict[str, Tuple[float, float]] = {}

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._get_session().get(url, params=params) as response:
                if response.status != 200:
                    logger.error(f"Open-Meteo {url} returned HTTP {response.status}")
                    raise SignalUnavailable('weather', f"HTTP {response.status}")
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Open-Meteo call failed: {e!r}")
            raise SignalUnavailable('weather', repr(e))

    async def geocode(self, location: str) -> Tuple[float, float]:
        """Latitude/longitude for a place name, or 'lat,lon' passed through"""
        if location in self._locations:
            return self._locations[location]
        parts = [p.strip() for p in location.split(',')]
        if len(parts) == 2:
            try:
                coords = (float(parts[0]), float(parts[1]))
                self._locations[location] = coords
                return coords
            except ValueError:
                pass
        data = await self._get_json(GEOCODING_URL, {'name': parts[0], 'count': 1})
        results = data.get('results') or []
        if not results:
            raise SignalUnavailable('weather', f"unknown location {location!r}")
        coords = (float(results[0]['latitude']), float(results[0]['longitude']))
        self._locations[location] = coords
        logger.debug(f"weather.geocode location={location} lat={coords[0]} lon={coords[1]}")
        return coords

    async def get_forecast(self, location: str, days: Optional[int] = None) -> WeatherForecast:
        latitude, longitude = await self.geocode(location)
        data = await self._get_json(FORECAST_URL, {
            'latitude': latitude,
            'longitude': longitude,
            'hourly': HOURLY_VARIABLES,
            'daily': DAILY_VARIABLES,
            'timezone': 'auto',
            'forecast_days': days or self.forecast_days,
        })
        forecast = parse_forecast(data)
        logger.info(f"🌤  Weather: {len(forecast.hourly)} hourly points for {location} ({forecast.timezone})")
        return forecast

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
