"""FoxESS Cloud API client for telemetry, scheduler and device settings"""

import asyncio
import hashlib
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from .errors import DeviceWriteFailure, RateLimited, SignalUnavailable
from .models import ScheduleSegment, Telemetry

logger = logging.getLogger(__name__)

RATE_LIMIT_ERRNO = 40402

TELEMETRY_VARIABLES = [
    'SoC',
    'batTemperature',
    'ambientTemperation',
    'invTemperation',
    'pvPower',
    'loadsPower',
    'gridConsumptionPower',
    'feedinPower',
]


def clean_token(token: str) -> str:
    """Strip whitespace and non-printable characters that break the signature"""
    return re.sub(r'[^\x20-\x7E]', '', re.sub(r'\s+', '', token or ''))


def signature(path: str, token: str, timestamp: int) -> str:
    """MD5 over path, token and timestamp joined by a literal backslash-r-backslash-n"""
    plain = f"{path}\\r\\n{token}\\r\\n{timestamp}"
    return hashlib.md5(plain.encode('utf-8')).hexdigest()


class FoxESSClient:
    """Handles all FoxESS Cloud API interactions"""

    def __init__(self, token: str, base_url: str = 'https://www.foxesscloud.com',
                 timeout_seconds: float = 10, session: Optional[aiohttp.ClientSession] = None,
                 clock: Callable[[], float] = time.time):
        self.token = clean_token(token)
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._clock = clock

    def _get_session(self) -> aiohttp.ClientSession:
        # Created lazily so it binds to the running event loop
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    def _headers(self, path: str) -> Dict[str, str]:
        timestamp = int(self._clock() * 1000)
        return {
            'token': self.token,
            'timestamp': str(timestamp),
            'signature': signature(path.split('?')[0], self.token, timestamp),
            'lang': 'en',
            'Content-Type': 'application/json',
        }

    async def _call(self, path: str, body: Dict[str, Any], write: bool = False) -> Any:
        """POST to the API and return ``result``; raises the automation error taxonomy"""
        failure = DeviceWriteFailure if write else None
        try:
            async with self._get_session().post(f"{self.base_url}{path}", json=body,
                                                headers=self._headers(path)) as response:
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"FoxESS call {path} failed: {e!r}")
            if failure:
                raise failure(f"FoxESS call {path} failed: {e!r}")
            raise SignalUnavailable('foxess', repr(e))

        errno = payload.get('errno', 0) if isinstance(payload, dict) else None
        if errno == RATE_LIMIT_ERRNO:
            logger.error(f"FoxESS rate limit hit on {path}")
            raise RateLimited(f"FoxESS rate limited on {path}", errno=errno)
        if errno != 0:
            msg = payload.get('msg') if isinstance(payload, dict) else payload
            logger.error(f"FoxESS {path} returned errno={errno}: {msg}")
            if failure:
                raise failure(f"FoxESS {path} errno={errno}: {msg}", errno=errno)
            raise SignalUnavailable('foxess', f"errno={errno}")
        return payload.get('result')

    async def get_telemetry(self, device_id: str) -> Telemetry:
        """Real-time inverter readings"""
        result = await self._call('/op/v0/device/real/query',
                                  {'sn': device_id, 'variables': TELEMETRY_VARIABLES})
        datas = {}
        if isinstance(result, list) and result:
            for item in result[0].get('datas') or []:
                datas[item.get('variable')] = item.get('value')

        def value(name: str) -> Optional[float]:
            raw = datas.get(name)
            try:
                return float(raw) if raw is not None else None
            except (TypeError, ValueError):
                return None

        telemetry = Telemetry(
            soc=value('SoC'),
            battery_temperature=value('batTemperature'),
            ambient_temperature=value('ambientTemperation'),
            inverter_temperature=value('invTemperation'),
            pv_power=value('pvPower'),
            load_power=value('loadsPower'),
            grid_power=value('gridConsumptionPower'),
            feed_in_power=value('feedinPower'),
        )
        logger.info(f"🔋 Battery SOC: {telemetry.soc}%")
        return telemetry

    async def get_segments(self, device_id: str) -> List[ScheduleSegment]:
        result = await self._call('/op/v1/device/scheduler/get', {'deviceSN': device_id})
        groups = (result or {}).get('groups') or []
        return [ScheduleSegment.from_device(group) for group in groups]

    async def set_segments(self, device_id: str, segments: List[ScheduleSegment]) -> None:
        """Write every slot, then switch the scheduler on or off to match"""
        groups = [segment.to_device() for segment in segments]
        await self._call('/op/v1/device/scheduler/enable', {'deviceSN': device_id, 'groups': groups},
                         write=True)
        enable = 1 if any(segment.enabled for segment in segments) else 0
        await self._call('/op/v1/device/scheduler/set/flag', {'deviceSN': device_id, 'enable': enable},
                         write=True)
        logger.debug(f"foxess.set_segments device={device_id} enabled_slots="
                     f"{sum(1 for s in segments if s.enabled)} flag={enable}")

    async def set_export_limit(self, device_id: str, watts: int) -> None:
        await self._call('/op/v0/device/setting/set',
                         {'sn': device_id, 'key': 'ExportLimitPower', 'value': watts}, write=True)
        logger.info(f"  ✓ Export limit set to {watts} W")

    async def close(self):
        """Close the HTTP session"""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
