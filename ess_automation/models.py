"""Data models for the automation cycle"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

SLOT_COUNT = 8
MINUTES_PER_DAY = 24 * 60
LAST_MINUTE_OF_DAY = MINUTES_PER_DAY - 1  # 23:59

T = TypeVar('T')


def dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def dt_from_str(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (snake_case or legacy camelCase)"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


class WorkMode(str, Enum):
    """Device operating modes"""
    SELF_USE = 'SelfUse'
    FORCE_DISCHARGE = 'ForceDischarge'
    FORCE_CHARGE = 'ForceCharge'
    BACKUP = 'Backup'


class SkipReason(str, Enum):
    """Why a cycle did not evaluate rules"""
    NOT_INITIALIZED = 'not-initialized'
    TOO_SOON = 'too-soon'
    DISABLED = 'disabled'
    BLACKOUT = 'blackout'
    ERROR_BLACKOUT = 'error-blackout'
    NOTHING_TO_DO = 'nothing-to-do'


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


@dataclass
class Telemetry:
    """Live inverter readings"""
    soc: Optional[float] = None
    battery_temperature: Optional[float] = None
    ambient_temperature: Optional[float] = None
    inverter_temperature: Optional[float] = None
    pv_power: Optional[float] = None
    load_power: Optional[float] = None
    grid_power: Optional[float] = None
    feed_in_power: Optional[float] = None
    timestamp: Optional[datetime] = None

    def temperature(self, source: str) -> Optional[float]:
        return {
            'battery': self.battery_temperature,
            'ambient': self.ambient_temperature,
            'inverter': self.inverter_temperature,
        }.get(source)


@dataclass
class CurrentPrice:
    """Current interval prices, per unit (c/kWh for Amber, EUR/MWh for OTE)"""
    import_per_unit: Optional[float] = None
    export_per_unit: Optional[float] = None


@dataclass
class PriceInterval:
    """A forecast price interval"""
    start: datetime
    end: datetime
    import_per_unit: Optional[float] = None
    export_per_unit: Optional[float] = None

    def price(self, channel: str) -> Optional[float]:
        return self.export_per_unit if channel == 'export' else self.import_per_unit


@dataclass
class HourlyWeather:
    time: datetime
    solar_radiation: Optional[float] = None
    cloud_cover: Optional[float] = None
    temperature: Optional[float] = None


@dataclass
class WeatherForecast:
    """Hourly forecast for a location, with the location's resolved timezone"""
    timezone: Optional[str] = None
    hourly: List[HourlyWeather] = field(default_factory=list)
    daily: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SignalSnapshot:
    """Everything a rule can be evaluated against during one cycle"""
    now: datetime
    telemetry: Optional[Telemetry] = None
    price: Optional[CurrentPrice] = None
    forecast_prices: Optional[List[PriceInterval]] = None
    weather: Optional[WeatherForecast] = None
    gaps: Dict[str, str] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        """Compact view for audit entries"""
        return {
            'now': dt_to_str(self.now),
            'soc': self.telemetry.soc if self.telemetry else None,
            'battery_temperature': self.telemetry.battery_temperature if self.telemetry else None,
            'import_price': self.price.import_per_unit if self.price else None,
            'export_price': self.price.export_per_unit if self.price else None,
            'forecast_intervals': len(self.forecast_prices) if self.forecast_prices is not None else None,
            'weather_hours': len(self.weather.hourly) if self.weather else None,
            'gaps': dict(self.gaps),
        }


@dataclass
class CacheEntry(Generic[T]):
    value: T
    fetched_at: datetime
    ttl: timedelta

    def is_valid(self, now: datetime) -> bool:
        return now - self.fetched_at < self.ttl


# ---------------------------------------------------------------------------
# Actions and device segments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Action:
    """What a matched rule asks the device to do"""
    work_mode: WorkMode
    duration_minutes: int = 30
    power_watts: Optional[int] = None
    min_soc_on_grid: Optional[int] = None
    max_soc: Optional[int] = None
    force_discharge_soc: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Action':
        power = pick(data, 'power_watts', 'powerWatts', 'fdPwr')
        min_soc = pick(data, 'min_soc_on_grid', 'minSocOnGrid', 'minSoCOnGrid')
        max_soc = pick(data, 'max_soc', 'maxSoc', 'maxSoC')
        fd_soc = pick(data, 'force_discharge_soc', 'forceDischargeSoC', 'fdSoc')
        return cls(
            work_mode=WorkMode(pick(data, 'work_mode', 'workMode', default=WorkMode.SELF_USE.value)),
            duration_minutes=int(pick(data, 'duration_minutes', 'durationMinutes', default=30)),
            power_watts=int(power) if power is not None else None,
            min_soc_on_grid=int(min_soc) if min_soc is not None else None,
            max_soc=int(max_soc) if max_soc is not None else None,
            force_discharge_soc=int(fd_soc) if fd_soc is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['work_mode'] = self.work_mode.value
        return data


@dataclass(frozen=True)
class ScheduleSegment:
    """One device scheduler slot"""
    enabled: bool
    work_mode: WorkMode
    start_hour: int
    start_minute: int
    end_hour: int
    end_minute: int
    power_watts: int = 0
    min_soc_on_grid: int = 10
    force_discharge_soc: int = 10
    max_soc: int = 100

    @classmethod
    def disabled(cls) -> 'ScheduleSegment':
        """The reset state every slot is returned to on clear"""
        return cls(enabled=False, work_mode=WorkMode.SELF_USE,
                   start_hour=0, start_minute=0, end_hour=0, end_minute=0)

    @property
    def start_minutes(self) -> int:
        return self.start_hour * 60 + self.start_minute

    @property
    def end_minutes(self) -> int:
        return self.end_hour * 60 + self.end_minute

    @property
    def start_time(self) -> str:
        return f"{self.start_hour:02d}:{self.start_minute:02d}"

    @property
    def end_time(self) -> str:
        return f"{self.end_hour:02d}:{self.end_minute:02d}"

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes

    def content_key(self) -> tuple:
        """Fields that identify a segment regardless of which slot holds it"""
        return (self.work_mode, self.start_hour, self.start_minute, self.end_hour, self.end_minute,
                self.power_watts, self.min_soc_on_grid, self.force_discharge_soc, self.max_soc)

    def to_device(self) -> Dict[str, Any]:
        """Scheduler group payload as the device API expects it"""
        return {
            'enable': 1 if self.enabled else 0,
            'workMode': self.work_mode.value,
            'startHour': self.start_hour,
            'startMinute': self.start_minute,
            'endHour': self.end_hour,
            'endMinute': self.end_minute,
            'fdPwr': self.power_watts,
            'minSocOnGrid': self.min_soc_on_grid,
            'fdSoc': self.force_discharge_soc,
            'maxSoc': self.max_soc,
        }

    @classmethod
    def from_device(cls, group: Dict[str, Any]) -> 'ScheduleSegment':
        try:
            work_mode = WorkMode(group.get('workMode', WorkMode.SELF_USE.value))
        except ValueError:
            # Modes the automation never writes (e.g. Feedin) still occupy a slot
            work_mode = WorkMode.SELF_USE
        return cls(
            enabled=int(group.get('enable', 0)) == 1,
            work_mode=work_mode,
            start_hour=int(group.get('startHour', 0)),
            start_minute=int(group.get('startMinute', 0)),
            end_hour=int(group.get('endHour', 0)),
            end_minute=int(group.get('endMinute', 0)),
            power_watts=int(group.get('fdPwr', 0) or 0),
            min_soc_on_grid=int(group.get('minSocOnGrid', 10) or 0),
            force_discharge_soc=int(group.get('fdSoc', 10) or 0),
            max_soc=int(group.get('maxSoc', 100) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['work_mode'] = self.work_mode.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleSegment':
        data = dict(data)
        data['work_mode'] = WorkMode(data['work_mode'])
        return cls(**data)

    def __repr__(self):
        state = 'ON' if self.enabled else 'off'
        return f"{self.work_mode.value} {self.start_time}-{self.end_time} [{state}]"


# ---------------------------------------------------------------------------
# Per-user settings and state
# ---------------------------------------------------------------------------


@dataclass
class BlackoutWindow:
    """Daily time range with no automation; days uses Monday=0"""
    start: str
    end: str
    enabled: bool = True
    days: List[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlackoutWindow':
        return cls(
            start=str(data.get('start', '00:00')),
            end=str(data.get('end', '23:59')),
            enabled=bool(data.get('enabled', True)),
            days=[int(d) for d in data.get('days') or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CurtailmentConfig:
    enabled: bool = False
    price_threshold: float = 0.0
    restore_power_watts: int = 12000

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CurtailmentConfig':
        data = data or {}
        return cls(
            enabled=bool(data.get('enabled', False)),
            price_threshold=float(pick(data, 'price_threshold', 'priceThreshold', default=0.0)),
            restore_power_watts=int(pick(data, 'restore_power_watts', 'restorePowerWatts', default=12000)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UserSettings:
    """Per-user configuration owned by the settings collaborator"""
    device_id: Optional[str] = None
    site_id: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None
    interval_seconds: Optional[int] = None
    blackout_windows: List[BlackoutWindow] = field(default_factory=list)
    curtailment: CurtailmentConfig = field(default_factory=CurtailmentConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'UserSettings':
        data = data or {}
        interval = pick(data, 'interval_seconds', 'intervalSeconds')
        return cls(
            device_id=pick(data, 'device_id', 'deviceSn'),
            site_id=pick(data, 'site_id', 'amberSiteId'),
            location=data.get('location'),
            timezone=data.get('timezone'),
            interval_seconds=int(interval) if interval is not None else None,
            blackout_windows=[BlackoutWindow.from_dict(w)
                              for w in pick(data, 'blackout_windows', 'blackoutWindows', default=[])],
            curtailment=CurtailmentConfig.from_dict(data.get('curtailment')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'site_id': self.site_id,
            'location': self.location,
            'timezone': self.timezone,
            'interval_seconds': self.interval_seconds,
            'blackout_windows': [w.to_dict() for w in self.blackout_windows],
            'curtailment': self.curtailment.to_dict(),
        }


@dataclass(frozen=True)
class AutomationState:
    """Per-user automation state, mutated only through state_machine transitions"""
    enabled: bool = False
    last_check: Optional[datetime] = None
    active_rule_id: Optional[str] = None
    active_rule_name: Optional[str] = None
    active_until: Optional[datetime] = None
    active_segment: Optional[ScheduleSegment] = None
    in_blackout: bool = False
    blackout_until: Optional[datetime] = None
    blackout_reason: Optional[str] = None
    timezone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'last_check': dt_to_str(self.last_check),
            'active_rule_id': self.active_rule_id,
            'active_rule_name': self.active_rule_name,
            'active_until': dt_to_str(self.active_until),
            'active_segment': self.active_segment.to_dict() if self.active_segment else None,
            'in_blackout': self.in_blackout,
            'blackout_until': dt_to_str(self.blackout_until),
            'blackout_reason': self.blackout_reason,
            'timezone': self.timezone,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AutomationState':
        segment = data.get('active_segment')
        return cls(
            enabled=bool(data.get('enabled', False)),
            last_check=dt_from_str(data.get('last_check')),
            active_rule_id=data.get('active_rule_id'),
            active_rule_name=data.get('active_rule_name'),
            active_until=dt_from_str(data.get('active_until')),
            active_segment=ScheduleSegment.from_dict(segment) if segment else None,
            in_blackout=bool(data.get('in_blackout', False)),
            blackout_until=dt_from_str(data.get('blackout_until')),
            blackout_reason=data.get('blackout_reason'),
            timezone=data.get('timezone'),
        )


@dataclass(frozen=True)
class CooldownRecord:
    rule_id: str
    last_triggered: datetime
    cooldown_minutes: int

    @property
    def ready_at(self) -> datetime:
        return self.last_triggered + timedelta(minutes=self.cooldown_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {'rule_id': self.rule_id, 'last_triggered': dt_to_str(self.last_triggered),
                'cooldown_minutes': self.cooldown_minutes}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CooldownRecord':
        return cls(rule_id=data['rule_id'], last_triggered=dt_from_str(data['last_triggered']),
                   cooldown_minutes=int(data['cooldown_minutes']))


@dataclass(frozen=True)
class CurtailmentState:
    active: bool = False
    last_price: Optional[float] = None
    last_transition_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'active': self.active, 'last_price': self.last_price,
                'last_transition_at': dt_to_str(self.last_transition_at)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CurtailmentState':
        data = data or {}
        return cls(active=bool(data.get('active', False)), last_price=data.get('last_price'),
                   last_transition_at=dt_from_str(data.get('last_transition_at')))


# ---------------------------------------------------------------------------
# Cycle outputs
# ---------------------------------------------------------------------------


@dataclass
class CycleResult:
    """Outcome of one run_cycle call"""
    user_id: str
    skipped: Optional[SkipReason] = None
    triggered: bool = False
    matched_rule: Optional[str] = None
    rule_id: Optional[str] = None
    action: Optional[Action] = None
    segment: Optional[ScheduleSegment] = None
    error: Optional[str] = None
    detail: Optional[str] = None
    evaluations: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    gaps: Dict[str, str] = field(default_factory=dict)
    incomplete: bool = False
    curtailment: Optional[str] = None

    @property
    def outcome(self) -> str:
        if self.skipped:
            return f"skipped:{self.skipped.value}"
        if self.error:
            return 'error'
        return 'triggered' if self.triggered else 'no-match'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'outcome': self.outcome,
            'skipped': self.skipped.value if self.skipped else None,
            'triggered': self.triggered,
            'matched_rule': self.matched_rule,
            'rule_id': self.rule_id,
            'action': self.action.to_dict() if self.action else None,
            'segment': self.segment.to_dict() if self.segment else None,
            'error': self.error,
            'detail': self.detail,
            'evaluations': self.evaluations,
            'warnings': self.warnings,
            'gaps': self.gaps,
            'incomplete': self.incomplete,
            'curtailment': self.curtailment,
        }


@dataclass
class AuditEntry:
    """Append-only record of one cycle"""
    user_id: str
    timestamp: datetime
    outcome: str
    evaluations: List[Dict[str, Any]] = field(default_factory=list)
    matched_rule: Optional[str] = None
    action_result: Optional[Dict[str, Any]] = None
    snapshot: Optional[Dict[str, Any]] = None
    incomplete: bool = False

    @classmethod
    def from_result(cls, result: CycleResult, timestamp: datetime,
                    snapshot: Optional[SignalSnapshot] = None) -> 'AuditEntry':
        action_result = None
        if result.triggered or result.error:
            action_result = {
                'segment': result.segment.to_dict() if result.segment else None,
                'error': result.error,
                'warnings': result.warnings,
            }
        return cls(
            user_id=result.user_id,
            timestamp=timestamp,
            outcome=result.outcome,
            evaluations=result.evaluations,
            matched_rule=result.matched_rule,
            action_result=action_result,
            snapshot=snapshot.summary() if snapshot else None,
            incomplete=result.incomplete,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = dt_to_str(self.timestamp)
        return data
