"""Shared fakes and fixtures for the automation tests"""

from datetime import datetime, timezone
from typing import List, Optional

import pytest

from ess_automation.models import SLOT_COUNT, AutomationState, CurrentPrice, PriceInterval, ScheduleSegment, \
    Telemetry, UserSettings, WeatherForecast
from ess_automation.orchestrator import AutomationSettings, Orchestrator
from ess_automation.rules import Rule
from ess_automation.storage import MemoryStorage

# Monday 2025-06-16 14:05 in Sydney (AEST, UTC+10)
NOW = datetime(2025, 6, 16, 4, 5, tzinfo=timezone.utc)
USER = 'user-1'


class FakeDevice:
    """In-memory inverter: eight scheduler slots, telemetry and an export limit"""

    def __init__(self):
        self.slots = [ScheduleSegment.disabled() for _ in range(SLOT_COUNT)]
        self.telemetry = Telemetry(soc=70.0, battery_temperature=25.0, ambient_temperature=18.0,
                                   inverter_temperature=40.0)
        self.reorder = False
        self.drop_writes = False
        self.write_error: Optional[Exception] = None
        self.telemetry_error: Optional[Exception] = None
        self.writes: List[List[ScheduleSegment]] = []
        self.export_limits: List[int] = []
        self.telemetry_calls = 0
        self.read_calls = 0

    async def get_telemetry(self, device_id):
        self.telemetry_calls += 1
        if self.telemetry_error:
            raise self.telemetry_error
        return self.telemetry

    async def get_segments(self, device_id):
        self.read_calls += 1
        return list(self.slots)

    async def set_segments(self, device_id, segments):
        if self.write_error:
            raise self.write_error
        self.writes.append(list(segments))
        if self.drop_writes:
            return
        slots = list(segments)
        if self.reorder:
            # Firmware moves enabled groups behind the empty ones
            slots = [s for s in slots if not s.enabled] + [s for s in slots if s.enabled]
        self.slots = slots

    async def set_export_limit(self, device_id, watts):
        if self.write_error:
            raise self.write_error
        self.export_limits.append(watts)

    @property
    def active_slots(self) -> List[ScheduleSegment]:
        return [s for s in self.slots if s.enabled]


class FakePrices:
    def __init__(self):
        self.current = CurrentPrice(import_per_unit=25.0, export_per_unit=32.5)
        self.forecast: List[PriceInterval] = []
        self.error: Optional[Exception] = None
        self.calls = 0

    def site_key(self, site_id):
        return site_id

    async def get_prices(self, site_id):
        self.calls += 1
        if self.error:
            raise self.error
        return self.current, self.forecast


class FakeWeather:
    def __init__(self):
        self.forecast = WeatherForecast(timezone='Australia/Sydney', hourly=[])
        self.calls = 0

    async def get_forecast(self, location, days=None):
        self.calls += 1
        return self.forecast


def make_rule(rule_id: str, priority: int = 1, conditions: Optional[dict] = None,
              action: Optional[dict] = None, **fields) -> Rule:
    data = {
        'id': rule_id,
        'name': fields.pop('name', rule_id),
        'priority': priority,
        'conditions': conditions if conditions is not None else {'feedInPrice': {'op': '>', 'value': 30}},
        'action': action or {'workMode': 'ForceDischarge', 'durationMinutes': 30},
    }
    data.update(fields)
    return Rule.from_dict(data)


def setup_user(storage: MemoryStorage, rules: List[Rule], user_id: str = USER, enabled: bool = True,
               state: Optional[AutomationState] = None, **settings) -> str:
    settings.setdefault('device_id', 'SN123')
    settings.setdefault('site_id', 'site-1')
    storage.save_settings(user_id, UserSettings(**settings))
    storage.save_rules(user_id, rules)
    storage.save_state(user_id, state or AutomationState(enabled=enabled))
    return user_id


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def prices():
    return FakePrices()


@pytest.fixture
def weather():
    return FakeWeather()


@pytest.fixture
def orchestrator(storage, device, prices, weather):
    """Orchestrator over fakes with no read-back delay"""
    return Orchestrator(storage, device, prices, weather,
                        AutomationSettings(verify_delay_seconds=0), clock=lambda: NOW)
