"""
Tests for condition kinds and the evaluator
Run with: uv run pytest tests/test_conditions.py -v
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from ess_automation.conditions import BatterySoCCondition, CheckType, ConditionSet, Operator, \
    PriceForecastCondition, SolarRadiationForecastCondition, TemperatureCondition, TimeWindowCondition, compare
from ess_automation.errors import ConfigurationError
from ess_automation.evaluator import evaluate
from ess_automation.models import CurrentPrice, HourlyWeather, PriceInterval, SignalSnapshot, Telemetry, \
    WeatherForecast

SYD = ZoneInfo('Australia/Sydney')


def local(hour, minute=0):
    return datetime(2025, 6, 16, hour, minute, tzinfo=SYD)


def hourly_weather(values_by_hour):
    return WeatherForecast(timezone='Australia/Sydney', hourly=[
        HourlyWeather(time=local(h), solar_radiation=v, cloud_cover=100 - v / 10)
        for h, v in values_by_hour.items()
    ])


class TestCompare:
    """Test operator semantics"""

    def test_basic_operators(self):
        assert compare(31, Operator.GT, 30)
        assert not compare(30, Operator.GT, 30)
        assert compare(30, Operator.GTE, 30)
        assert compare(29.9, Operator.LT, 30)
        assert compare(30, Operator.LTE, 30)

    def test_between_is_inclusive_at_both_ends(self):
        assert compare(10, Operator.BETWEEN, 10, 20)
        assert compare(20, Operator.BETWEEN, 10, 20)
        assert not compare(20.01, Operator.BETWEEN, 10, 20)

    def test_between_accepts_bounds_in_either_order(self):
        assert compare(15, Operator.BETWEEN, 20, 10)

    def test_between_without_second_bound_is_not_met(self):
        assert not compare(15, Operator.BETWEEN, 10, None)

    def test_missing_actual_is_not_met(self):
        assert not compare(None, Operator.GT, 0)


class TestLiveConditions:
    """Test conditions on current readings"""

    def test_missing_telemetry_is_not_met_with_reason(self):
        result = BatterySoCCondition(operator=Operator.GT, value=50).evaluate(SignalSnapshot(now=local(12)))
        assert result.met is False
        assert result.reason == 'No SoC data'

    def test_temperature_uses_selected_source(self):
        snapshot = SignalSnapshot(now=local(12), telemetry=Telemetry(battery_temperature=30, ambient_temperature=5))
        result = TemperatureCondition(operator=Operator.LT, value=10, source='ambient').evaluate(snapshot)
        assert result.met is True
        assert result.actual == 5
        assert result.details['source'] == 'ambient'

    def test_overnight_time_window(self):
        condition = TimeWindowCondition(start_time='22:00', end_time='06:00')
        assert condition.evaluate(SignalSnapshot(now=local(23, 30))).met
        assert condition.evaluate(SignalSnapshot(now=local(5, 59))).met
        assert not condition.evaluate(SignalSnapshot(now=local(6, 0))).met
        assert not condition.evaluate(SignalSnapshot(now=local(12, 0))).met

    def test_same_day_time_window_is_half_open(self):
        condition = TimeWindowCondition(start_time='09:00', end_time='17:00')
        assert condition.evaluate(SignalSnapshot(now=local(9, 0))).met
        assert not condition.evaluate(SignalSnapshot(now=local(17, 0))).met


class TestLookAhead:
    """Test forecast aggregation windows"""

    def test_window_starts_at_next_full_hour(self):
        """A 6 hour look-ahead at 14:23 aggregates from 15:00, not 14:00"""
        forecast = hourly_weather({h: (900 if h == 14 else 100) for h in range(24)})
        condition = SolarRadiationForecastCondition(operator=Operator.GT, value=500, look_ahead=6,
                                                    look_ahead_unit='hours')
        result = condition.evaluate(SignalSnapshot(now=local(14, 23), weather=forecast))

        assert result.details['window_start'] == '2025-06-16 15:00'
        assert result.details['hours_checked'] == 6
        assert result.actual == 100
        assert result.met is False
        assert result.incomplete is False

    def test_evaluation_exactly_on_the_hour_starts_at_that_hour(self):
        forecast = hourly_weather({h: (900 if h == 14 else 100) for h in range(24)})
        condition = SolarRadiationForecastCondition(operator=Operator.GT, value=100, look_ahead=1,
                                                    check_type=CheckType.MAX)
        result = condition.evaluate(SignalSnapshot(now=local(14, 0), weather=forecast))
        assert result.details['window_start'] == '2025-06-16 14:00'
        assert result.actual == 900

    def test_short_weather_series_is_incomplete(self):
        forecast = hourly_weather({h: 300 for h in range(15, 18)})
        condition = SolarRadiationForecastCondition(operator=Operator.GT, value=200, look_ahead=6)
        result = condition.evaluate(SignalSnapshot(now=local(14, 23), weather=forecast))
        assert result.met is True
        assert result.incomplete is True
        assert result.details['hours_checked'] == 3

    def test_truncated_price_forecast_evaluates_and_flags_incomplete(self):
        """Three days requested, one hour of intervals available"""
        start = local(14)
        forecast = [PriceInterval(start + timedelta(minutes=5 * i), start + timedelta(minutes=5 * (i + 1)),
                                  import_per_unit=40.0, export_per_unit=8.0) for i in range(12)]
        condition = PriceForecastCondition(operator=Operator.GT, value=30, look_ahead=3, look_ahead_unit='days')
        result = condition.evaluate(SignalSnapshot(now=start, forecast_prices=forecast))

        assert result.met is True
        assert result.actual == 40.0
        assert result.incomplete is True
        assert result.details['intervals_checked'] == 12

    def test_price_forecast_any_matches_a_single_interval(self):
        start = local(15)
        forecast = [PriceInterval(start + timedelta(minutes=30 * i), start + timedelta(minutes=30 * (i + 1)),
                                  import_per_unit=p) for i, p in enumerate([10.0, 50.0, 20.0, 15.0])]
        condition = PriceForecastCondition(operator=Operator.GT, value=40, look_ahead=2, look_ahead_unit='hours',
                                           check_type=CheckType.ANY)
        result = condition.evaluate(SignalSnapshot(now=local(14, 30), forecast_prices=forecast))
        assert result.met is True
        assert result.actual == 50.0
        assert result.incomplete is False

    def test_no_data_in_window_is_not_met(self):
        old = [PriceInterval(local(10), local(10, 30), import_per_unit=99.0)]
        condition = PriceForecastCondition(operator=Operator.GT, value=1)
        result = condition.evaluate(SignalSnapshot(now=local(14, 10), forecast_prices=old))
        assert result.met is False
        assert result.incomplete is True

    def test_any_is_rejected_for_weather(self):
        with pytest.raises(ConfigurationError):
            SolarRadiationForecastCondition.from_dict({'enabled': True, 'op': '>', 'value': 1, 'checkType': 'any'})


class TestConditionSet:
    """Test loading and conjunction"""

    def test_aliases_map_to_kinds(self):
        conditions = ConditionSet.from_dict({
            'feedInPrice': {'enabled': True, 'op': '>', 'value': 30},
            'soc': {'enabled': True, 'op': '>=', 'value': 50},
            'time': {'enabled': True, 'startTime': '14:00', 'endTime': '20:00'},
            'cloudCover': {'enabled': False, 'op': '<', 'value': 50},
        })
        assert conditions.enabled_kinds() == ['price_export', 'battery_soc', 'time_window']
        assert 'cloud_cover_forecast' in conditions.conditions

    def test_combined_price_condition_selects_channel(self):
        conditions = ConditionSet.from_dict({'price': {'enabled': True, 'type': 'feedIn', 'op': '<', 'value': 0}})
        assert conditions.enabled_kinds() == ['price_export']

    def test_unknown_enabled_kind_is_rejected(self):
        with pytest.raises(ConfigurationError):
            ConditionSet.from_dict({'moonPhase': {'enabled': True}})

    def test_unknown_disabled_kind_is_ignored(self):
        assert ConditionSet.from_dict({'moonPhase': {'enabled': False}}).conditions == {}

    def test_every_enabled_condition_must_hold(self):
        conditions = ConditionSet.from_dict({
            'feedInPrice': {'enabled': True, 'op': '>', 'value': 30},
            'soc': {'enabled': True, 'op': '>', 'value': 80},
        })
        snapshot = SignalSnapshot(now=local(14), price=CurrentPrice(20.0, 32.5), telemetry=Telemetry(soc=70))
        result = evaluate(conditions, snapshot)
        assert result.all_met is False
        assert [r.kind for r in result.unmet] == ['battery_soc']

        snapshot.telemetry = Telemetry(soc=90)
        assert evaluate(conditions, snapshot).all_met is True

    def test_no_enabled_conditions_never_matches(self):
        conditions = ConditionSet.from_dict({'soc': {'enabled': False, 'op': '>', 'value': 0}})
        result = evaluate(conditions, SignalSnapshot(now=local(14), telemetry=Telemetry(soc=50)))
        assert result.all_met is False
        assert result.per_condition == []
