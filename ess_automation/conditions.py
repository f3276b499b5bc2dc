"""Rule condition kinds

Every kind shares one capability, ``evaluate(snapshot) -> ConditionResult``,
so the evaluator never has to probe fields to find out what a condition is.
Missing signal data always yields ``met=False`` with a reason, never an error.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from .clock import add_minutes, in_daily_window, look_ahead_minutes, minutes_of_day, next_hour_boundary, parse_hhmm
from .errors import ConfigurationError
from .models import SignalSnapshot, pick

logger = logging.getLogger(__name__)


class Operator(str, Enum):
    GT = '>'
    GTE = '>='
    LT = '<'
    LTE = '<='
    BETWEEN = 'between'


class CheckType(str, Enum):
    AVERAGE = 'average'
    MIN = 'min'
    MAX = 'max'
    ANY = 'any'  # price forecast only


def compare(actual: Optional[float], operator: Operator, value: Optional[float],
            value2: Optional[float] = None) -> bool:
    """Threshold comparison; ``between`` is inclusive at both ends, bounds in either order"""
    if actual is None or value is None:
        return False
    if operator is Operator.BETWEEN:
        if value2 is None:
            return False
        low, high = sorted((value, value2))
        return low <= actual <= high
    if operator is Operator.GT:
        return actual > value
    if operator is Operator.GTE:
        return actual >= value
    if operator is Operator.LT:
        return actual < value
    if operator is Operator.LTE:
        return actual <= value
    return False


def aggregate(values: List[float], check_type: CheckType) -> Optional[float]:
    if not values:
        return None
    if check_type is CheckType.MIN:
        return min(values)
    if check_type is CheckType.MAX:
        return max(values)
    return sum(values) / len(values)


@dataclass
class ConditionResult:
    kind: str
    met: bool
    actual: Any = None
    target: Any = None
    operator: Optional[str] = None
    reason: Optional[str] = None
    incomplete: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind, 'met': self.met, 'actual': self.actual, 'target': self.target}
        if self.operator:
            data['operator'] = self.operator
        if self.reason:
            data['reason'] = self.reason
        if self.incomplete:
            data['incomplete'] = True
        data.update(self.details)
        return data


# ---------------------------------------------------------------------------
# Base kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Condition:
    kind: ClassVar[str] = ''
    enabled: bool = True

    def evaluate(self, snapshot: SignalSnapshot) -> ConditionResult:
        raise NotImplementedError

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Condition':
        raise NotImplementedError


@dataclass(frozen=True)
class ThresholdCondition(Condition):
    """A live reading compared against one or two thresholds"""
    operator: Operator = Operator.GT
    value: Optional[float] = None
    value2: Optional[float] = None

    missing_reason: ClassVar[str] = 'No data'

    def actual(self, snapshot: SignalSnapshot) -> Optional[float]:
        raise NotImplementedError

    def target(self) -> Any:
        if self.operator is Operator.BETWEEN:
            return [self.value, self.value2]
        return self.value

    def evaluate(self, snapshot: SignalSnapshot) -> ConditionResult:
        actual = self.actual(snapshot)
        if actual is None:
            return ConditionResult(self.kind, False, None, self.target(), self.operator.value,
                                   reason=self.missing_reason)
        met = compare(actual, self.operator, self.value, self.value2)
        return ConditionResult(self.kind, met, actual, self.target(), self.operator.value)

    @classmethod
    def _threshold_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        value = pick(data, 'value', 'threshold')
        value2 = pick(data, 'value2', 'max')
        return {
            'enabled': bool(data.get('enabled', True)),
            'operator': parse_operator(pick(data, 'operator', 'op', default='>')),
            'value': float(value) if value is not None else None,
            'value2': float(value2) if value2 is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ThresholdCondition':
        return cls(**cls._threshold_fields(data))


def parse_operator(raw: Any) -> Operator:
    try:
        return Operator(str(raw).strip())
    except ValueError:
        raise ConfigurationError(f"Unsupported operator: {raw!r}")


def parse_check_type(raw: Any, allow_any: bool = False) -> CheckType:
    try:
        check_type = CheckType(str(raw or 'average').strip())
    except ValueError:
        raise ConfigurationError(f"Unsupported check type: {raw!r}")
    if check_type is CheckType.ANY and not allow_any:
        raise ConfigurationError("check type 'any' is only supported for price forecasts")
    return check_type


# ---------------------------------------------------------------------------
# Live readings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceImportCondition(ThresholdCondition):
    kind: ClassVar[str] = 'price_import'
    missing_reason: ClassVar[str] = 'No import price data'

    def actual(self, snapshot: SignalSnapshot) -> Optional[float]:
        return snapshot.price.import_per_unit if snapshot.price else None


@dataclass(frozen=True)
class PriceExportCondition(ThresholdCondition):
    kind: ClassVar[str] = 'price_export'
    missing_reason: ClassVar[str] = 'No feed-in price data'

    def actual(self, snapshot: SignalSnapshot) -> Optional[float]:
        return snapshot.price.export_per_unit if snapshot.price else None


@dataclass(frozen=True)
class BatterySoCCondition(ThresholdCondition):
    kind: ClassVar[str] = 'battery_soc'
    missing_reason: ClassVar[str] = 'No SoC data'

    def actual(self, snapshot: SignalSnapshot) -> Optional[float]:
        return snapshot.telemetry.soc if snapshot.telemetry else None


@dataclass(frozen=True)
class TemperatureCondition(ThresholdCondition):
    kind: ClassVar[str] = 'temperature'
    source: str = 'battery'

    def actual(self, snapshot: SignalSnapshot) -> Optional[float]:
        return snapshot.telemetry.temperature(self.source) if snapshot.telemetry else None

    def evaluate(self, snapshot: SignalSnapshot) -> ConditionResult:
        result = super().evaluate(snapshot)
        if result.reason:
            result.reason = f"No {self.source} temperature data"
        result.details['source'] = self.source
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemperatureCondition':
        source = str(pick(data, 'source', 'type', default='battery'))
        if source not in ('battery', 'ambient', 'inverter'):
            raise ConfigurationError(f"Unsupported temperature source: {source!r}")
        return cls(source=source, **cls._threshold_fields(data))


@dataclass(frozen=True)
class TimeWindowCondition(Condition):
    kind: ClassVar[str] = 'time_window'
    start_time: str = '00:00'
    end_time: str = '23:59'

    def evaluate(self, snapshot: SignalSnapshot) -> ConditionResult:
        current = minutes_of_day(snapshot.now)
        met = in_daily_window(current, parse_hhmm(self.start_time), parse_hhmm(self.end_time))
        return ConditionResult(self.kind, met, snapshot.now.strftime('%H:%M'),
                               f"{self.start_time}-{self.end_time}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeWindowCondition':
        start = str(pick(data, 'start_time', 'startTime', 'start', default='00:00'))
        end = str(pick(data, 'end_time', 'endTime', 'end', default='23:59'))
        try:
            parse_hhmm(start)
            parse_hhmm(end)
        except ValueError as e:
            raise ConfigurationError(str(e))
        return cls(enabled=bool(data.get('enabled', True)), start_time=start, end_time=end)


# ---------------------------------------------------------------------------
# Look-ahead (forecast) kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LookAheadCondition(ThresholdCondition):
    """Aggregates a forecast series over a window that opens at the next full hour"""
    look_ahead: float = 6
    look_ahead_unit: str = 'hours'
    check_type: CheckType = CheckType.AVERAGE

    allow_any: ClassVar[bool] = False
    default_look_ahead: ClassVar[float] = 6
    default_unit: ClassVar[str] = 'hours'

    @property
    def look_ahead_minutes(self) -> int:
        return look_ahead_minutes(self.look_ahead, self.look_ahead_unit)

    def window(self, snapshot: SignalSnapshot):
        start = next_hour_boundary(snapshot.now)
        return start, add_minutes(start, self.look_ahead_minutes)

    def _result(self, values: List[float], incomplete: bool, details: Dict[str, Any]) -> ConditionResult:
        if not values:
            return ConditionResult(self.kind, False, None, self.target(), self.operator.value,
                                   reason='No forecast data for look-ahead window', incomplete=True,
                                   details=details)
        if self.check_type is CheckType.ANY:
            matching = [v for v in values if compare(v, self.operator, self.value, self.value2)]
            met = bool(matching)
            actual = matching[0] if matching else None
        else:
            actual = aggregate(values, self.check_type)
            met = compare(actual, self.operator, self.value, self.value2)
        details['check_type'] = self.check_type.value
        return ConditionResult(self.kind, met, round(actual, 2) if actual is not None else None,
                               self.target(), self.operator.value, incomplete=incomplete, details=details)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LookAheadCondition':
        fields = cls._threshold_fields(data)
        unit = str(pick(data, 'look_ahead_unit', 'lookAheadUnit', default=cls.default_unit))
        if unit not in ('minutes', 'hours', 'days'):
            raise ConfigurationError(f"Unsupported look-ahead unit: {unit!r}")
        return cls(
            look_ahead=float(pick(data, 'look_ahead', 'lookAhead', default=cls.default_look_ahead)),
            look_ahead_unit=unit,
            check_type=parse_check_type(pick(data, 'check_type', 'checkType'), allow_any=cls.allow_any),
            **fields,
            **cls._extra_fields(data),
        )

    @classmethod
    def _extra_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class WeatherLookAheadCondition(LookAheadCondition):
    attribute: ClassVar[str] = ''

    def evaluate(self, snapshot: SignalSnapshot) -> ConditionResult:
        if snapshot.weather is None or not snapshot.weather.hourly:
            return ConditionResult(self.kind, False, None, self.target(), self.operator.value,
                                   reason='No hourly weather data')
        start, end = self.window(snapshot)
        lo, hi = start.astimezone(timezone.utc), end.astimezone(timezone.utc)
        values = [getattr(hour, self.attribute) for hour in snapshot.weather.hourly
                  if lo <= hour.time < hi and getattr(hour, self.attribute) is not None]
        hours_requested = math.ceil(self.look_ahead_minutes / 60)
        details = {
            'window_start': start.strftime('%Y-%m-%d %H:%M'),
            'hours_requested': hours_requested,
            'hours_checked': len(values),
        }
        return self._result(values, len(values) < hours_requested, details)


@dataclass(frozen=True)
class SolarRadiationForecastCondition(WeatherLookAheadCondition):
    kind: ClassVar[str] = 'solar_radiation_forecast'
    attribute: ClassVar[str] = 'solar_radiation'


@dataclass(frozen=True)
class CloudCoverForecastCondition(WeatherLookAheadCondition):
    kind: ClassVar[str] = 'cloud_cover_forecast'
    attribute: ClassVar[str] = 'cloud_cover'


@dataclass(frozen=True)
class PriceForecastCondition(LookAheadCondition):
    kind: ClassVar[str] = 'price_forecast'
    look_ahead: float = 30
    look_ahead_unit: str = 'minutes'
    channel: str = 'import'

    allow_any: ClassVar[bool] = True
    default_look_ahead: ClassVar[float] = 30
    default_unit: ClassVar[str] = 'minutes'

    def evaluate(self, snapshot: SignalSnapshot) -> ConditionResult:
        if snapshot.forecast_prices is None:
            return ConditionResult(self.kind, False, None, self.target(), self.operator.value,
                                   reason='No price forecast data')
        start, end = self.window(snapshot)
        lo, hi = start.astimezone(timezone.utc), end.astimezone(timezone.utc)
        in_window = [i for i in snapshot.forecast_prices if lo <= i.start < hi]
        values = [i.price(self.channel) for i in in_window if i.price(self.channel) is not None]
        covered_until = max((i.end for i in in_window), default=lo)
        details = {
            'channel': self.channel,
            'window_start': start.strftime('%Y-%m-%d %H:%M'),
            'look_ahead_minutes': self.look_ahead_minutes,
            'intervals_checked': len(values),
            'intervals_available': len(snapshot.forecast_prices),
        }
        return self._result(values, covered_until < hi, details)

    @classmethod
    def _extra_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        raw = str(pick(data, 'channel', 'type', default='import'))
        return {'channel': 'export' if raw in ('export', 'feedIn') else 'import'}


# ---------------------------------------------------------------------------
# Condition sets
# ---------------------------------------------------------------------------

CONDITION_KINDS: Dict[str, Type[Condition]] = {
    cls.kind: cls for cls in (
        PriceImportCondition,
        PriceExportCondition,
        BatterySoCCondition,
        TemperatureCondition,
        SolarRadiationForecastCondition,
        CloudCoverForecastCondition,
        PriceForecastCondition,
        TimeWindowCondition,
    )
}

KIND_ALIASES = {
    'priceImport': 'price_import',
    'buyPrice': 'price_import',
    'priceExport': 'price_export',
    'feedInPrice': 'price_export',
    'soc': 'battery_soc',
    'batterySoC': 'battery_soc',
    'temp': 'temperature',
    'solarRadiation': 'solar_radiation_forecast',
    'solarRadiationForecast': 'solar_radiation_forecast',
    'cloudCover': 'cloud_cover_forecast',
    'cloudCoverForecast': 'cloud_cover_forecast',
    'forecastPrice': 'price_forecast',
    'priceForecast': 'price_forecast',
    'time': 'time_window',
    'timeWindow': 'time_window',
}

WEATHER_KINDS = frozenset({'solar_radiation_forecast', 'cloud_cover_forecast'})
TELEMETRY_KINDS = frozenset({'battery_soc', 'temperature'})
PRICE_KINDS = frozenset({'price_import', 'price_export'})


@dataclass(frozen=True)
class ConditionSet:
    """Condition kind -> condition; at most one condition per kind"""
    conditions: Dict[str, Condition] = field(default_factory=dict)

    def enabled(self) -> List[Condition]:
        return [c for kind, c in self.conditions.items() if c.enabled]

    def enabled_kinds(self) -> List[str]:
        return [c.kind for c in self.enabled()]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ConditionSet':
        conditions: Dict[str, Condition] = {}
        for raw_kind, doc in (data or {}).items():
            if not isinstance(doc, dict):
                continue
            kind = KIND_ALIASES.get(raw_kind, raw_kind)
            if raw_kind == 'price':
                # Combined price condition: type selects the channel
                kind = 'price_export' if doc.get('type') == 'feedIn' else 'price_import'
            condition_cls = CONDITION_KINDS.get(kind)
            if condition_cls is None:
                if doc.get('enabled'):
                    raise ConfigurationError(f"Unsupported condition kind: {raw_kind!r}")
                logger.debug(f"conditions.from_dict ignored=true kind={raw_kind}")
                continue
            conditions[kind] = condition_cls.from_dict(doc)
        return cls(conditions)
