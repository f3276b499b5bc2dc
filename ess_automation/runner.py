"""Trigger sources: the periodic all-users sweep and the per-user session loop"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional

from .amber_client import AmberClient
from .clock import utc_now
from .config import Config
from .foxess_client import FoxESSClient
from .models import CycleResult
from .orchestrator import AutomationSettings, Orchestrator
from .ote_client import OTEPriceClient
from .price_cache import PriceDocumentCache
from .segments import SegmentDefaults
from .storage import FileStorage
from .weather_client import WeatherClient

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    """Lambda logs to stdout for CloudWatch; local runs also log to logs/ess_automation.log"""
    if logging.getLogger().handlers:
        return
    handlers = [logging.StreamHandler()]
    if os.environ.get('AWS_LAMBDA_FUNCTION_NAME') is None:
        Path('logs').mkdir(exist_ok=True)
        handlers.append(logging.FileHandler('logs/ess_automation.log'))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def build_orchestrator(config: Config) -> Orchestrator:
    """Wire storage, device, price and weather clients from config"""
    settings = AutomationSettings.from_config(config)
    defaults = config.section('defaults')
    foxess = config.section('foxess')
    storage = FileStorage(config.section('storage').get('path', 'data'), rule_defaults=defaults)

    device = FoxESSClient(foxess['token'], foxess.get('base_url', 'https://www.foxesscloud.com'),
                          timeout_seconds=settings.device_timeout_seconds)

    amber = config.section('amber')
    if amber.get('api_key'):
        prices = AmberClient(amber['api_key'], amber.get('base_url', 'https://api.amber.com.au/v1'),
                             forecast_intervals=int(amber.get('forecast_intervals', 288)),
                             timeout_seconds=settings.fetch_timeout_seconds)
    else:
        ote = config.section('ote')
        prices = OTEPriceClient(float(ote.get('import_markup', 0.0)), float(ote.get('export_markup', 0.0)),
                                cache=PriceDocumentCache(ote.get('cache_path')))
        logger.info("No Amber API key configured, using OTE day-ahead prices")

    weather = WeatherClient(settings.forecast_days, timeout_seconds=settings.fetch_timeout_seconds)
    return Orchestrator(storage, device, prices, weather, settings, SegmentDefaults.from_dict(defaults))


async def run_all_users(orchestrator: Orchestrator, dry_run: bool = False) -> List[CycleResult]:
    """Run one cycle per initialized user, sequentially; one user's failure never stops the sweep"""
    results = []
    users = orchestrator.storage.list_users()
    logger.info(f"Running automation cycle for {len(users)} user(s)")
    for user_id in users:
        try:
            result = await orchestrator.run_cycle(user_id, dry_run=dry_run)
        except Exception as e:
            logger.exception(f"Cycle failed for {user_id}: {e}")
            result = CycleResult(user_id, error=f"{type(e).__name__}: {e}")
        logger.info(f"{user_id}: {result.outcome}" + (f" ({result.matched_rule})" if result.matched_rule else ""))
        results.append(result)
    return results


async def run_session(orchestrator: Orchestrator, user_id: str, max_cycles: Optional[int] = None,
                      stop: Optional[asyncio.Event] = None) -> int:
    """User-session timer: ask for a cycle every interval until stopped

    Runs alongside the periodic sweep; the shared last-check throttle makes
    whichever trigger arrives second skip.
    """
    stop = stop or asyncio.Event()
    cycles = 0
    while not stop.is_set() and (max_cycles is None or cycles < max_cycles):
        try:
            result = await orchestrator.run_cycle(user_id)
            if result.skipped is None:
                logger.info(f"Session cycle for {user_id}: {result.outcome}")
        except Exception as e:
            logger.exception(f"Session cycle failed for {user_id}: {e}")
        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break
        settings = orchestrator.storage.load_settings(user_id)
        interval = settings.interval_seconds or orchestrator.settings.interval_seconds
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.debug(f"runner.session stopped user={user_id} cycles={cycles} at={utc_now().isoformat()}")
    return cycles
