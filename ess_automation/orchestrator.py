"""Automation cycle orchestrator

One ``run_cycle`` call walks the gates in order (initialized, throttle,
enabled, expiry, error blackout, time-window blackout, configuration), gathers
signals, selects a rule, builds and dispatches its segment, runs curtailment,
then persists state and appends an audit entry.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import state_machine as sm
from .clock import DEFAULT_TIMEZONE, resolve_timezone, to_local, utc_now
from .curtailment import decide as decide_curtailment
from .errors import AmbiguousWriteResult, ConfigurationError, DeviceWriteFailure, InvalidSegment, \
    RateLimited, SignalUnavailable
from .models import AuditEntry, AutomationState, CooldownRecord, CycleResult, SignalSnapshot, SkipReason, \
    UserSettings
from .rules import Rule
from .scheduler_adapter import SchedulerAdapter
from .segments import SegmentDefaults, build_segment
from .selector import select_match
from .signal_cache import SignalCache
from .throttle import CycleThrottle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutomationSettings:
    interval_seconds: int = 60
    default_timezone: str = DEFAULT_TIMEZONE
    error_blackout_minutes: int = 5
    fetch_timeout_seconds: float = 8
    device_timeout_seconds: float = 10
    verify_delay_seconds: float = 2
    telemetry_ttl_seconds: int = 300
    price_ttl_seconds: int = 60
    weather_ttl_seconds: int = 1800
    forecast_days: int = 2

    @classmethod
    def from_config(cls, config) -> 'AutomationSettings':
        automation = config.section('automation')
        cache = config.section('cache')
        return cls(
            interval_seconds=int(automation.get('interval_seconds', 60)),
            default_timezone=automation.get('default_timezone', DEFAULT_TIMEZONE),
            error_blackout_minutes=int(automation.get('error_blackout_minutes', 5)),
            fetch_timeout_seconds=float(automation.get('fetch_timeout_seconds', 8)),
            device_timeout_seconds=float(automation.get('device_timeout_seconds', 10)),
            verify_delay_seconds=float(automation.get('verify_delay_seconds', 2)),
            telemetry_ttl_seconds=int(cache.get('telemetry_ttl_seconds', 300)),
            price_ttl_seconds=int(cache.get('price_ttl_seconds', 60)),
            weather_ttl_seconds=int(cache.get('weather_ttl_seconds', 1800)),
            forecast_days=int(config.section('weather').get('forecast_days', 2)),
        )


class Orchestrator:
    """Runs automation cycles for users against one device API and one price source"""

    def __init__(self, storage, device, prices, weather=None,
                 settings: AutomationSettings = AutomationSettings(),
                 segment_defaults: SegmentDefaults = SegmentDefaults(),
                 cache: Optional[SignalCache] = None,
                 clock: Callable[[], datetime] = utc_now,
                 sleep=asyncio.sleep):
        self.storage = storage
        self.device = device
        self.prices = prices
        self.weather = weather
        self.settings = settings
        self.segment_defaults = segment_defaults
        self.cache = cache or SignalCache(clock)
        self.adapter = SchedulerAdapter(device, settings.device_timeout_seconds,
                                        settings.verify_delay_seconds, sleep)
        self.throttle = CycleThrottle(settings.interval_seconds)
        self._clock = clock

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, user_id: str, now: Optional[datetime] = None, dry_run: bool = False) -> CycleResult:
        """Run one automation cycle; dry runs evaluate and report without writing anything"""
        now = now or self._clock()
        result = CycleResult(user_id)

        state = self.storage.load_state(user_id)
        if state is None:
            logger.info(f"User {user_id} not initialized, skipping")
            result.skipped = SkipReason.NOT_INITIALIZED
            return result

        settings = self.storage.load_settings(user_id)
        if not dry_run:
            if not self.throttle.is_due(state, now, settings.interval_seconds):
                remaining = self.throttle.remaining(state, now, settings.interval_seconds)
                logger.debug(f"orchestrator.skip user={user_id} reason=too-soon remaining={remaining.total_seconds():.0f}s")
                result.skipped = SkipReason.TOO_SOON
                return result
            state = self.throttle.claim(state, now)
            self.storage.save_state(user_id, state)

        if not state.enabled:
            result.skipped = SkipReason.DISABLED
            return self._finish(user_id, result, state, now, dry_run)

        state = sm.expire_active(state, now)
        state = sm.clear_error_blackout(state, now)
        if sm.in_error_blackout(state, now):
            result.skipped = SkipReason.ERROR_BLACKOUT
            result.detail = (f"{state.blackout_reason} (until {state.blackout_until.isoformat()}, "
                             f"clears automatically)")
            return self._finish(user_id, result, state, now, dry_run)

        local_now = to_local(now, self._timezone(settings, state))
        window = sm.find_blackout_window(settings.blackout_windows, local_now)
        if window is not None:
            logger.info(f"⏸  In blackout window {window.start}-{window.end}, skipping automation")
            result.skipped = SkipReason.BLACKOUT
            result.detail = f"{window.start}-{window.end}"
            return self._finish(user_id, result, state, now, dry_run)

        try:
            rules = self.storage.load_rules(user_id)
            if not settings.device_id:
                raise ConfigurationError("No device configured")
        except ConfigurationError as e:
            result.skipped = SkipReason.NOTHING_TO_DO
            result.detail = str(e)
            return self._finish(user_id, result, state, now, dry_run)

        cooldowns = self.storage.load_cooldowns(user_id)
        try:
            state, cooldowns = await self._clear_orphaned_rule(user_id, settings, state, cooldowns, rules,
                                                               result, dry_run)
        except DeviceWriteFailure as e:
            return self._device_failure(user_id, result, state, cooldowns, now, e, dry_run)

        enabled_rules = []
        for rule in rules:
            if not rule.enabled:
                continue
            if not rule.conditions.enabled():
                logger.warning(f"Rule '{rule.name}' has no enabled conditions, skipping")
                result.warnings.append(f"Rule {rule.id} has no enabled conditions")
                continue
            enabled_rules.append(rule)
        if not enabled_rules and not settings.curtailment.enabled:
            result.skipped = SkipReason.NOTHING_TO_DO
            result.detail = 'No enabled rules with conditions'
            return self._finish(user_id, result, state, now, dry_run, cooldowns=cooldowns)

        snapshot, rate_limited = await self._gather(user_id, settings, state, enabled_rules, now)
        if snapshot.weather and snapshot.weather.timezone and snapshot.weather.timezone != state.timezone:
            state = replace(state, timezone=snapshot.weather.timezone)
        result.gaps = dict(snapshot.gaps)

        selection = select_match(enabled_rules, snapshot, cooldowns, now)
        result.evaluations = [d.to_dict() for d in selection.diagnostics]
        result.incomplete = selection.incomplete

        if selection.match is not None:
            rule = selection.match.rule
            result.matched_rule = rule.name
            result.rule_id = rule.id
            result.action = rule.action
            logger.info(f"✅ Rule '{rule.name}' triggered (priority {rule.priority})")
            try:
                state, cooldowns = await self._dispatch(settings, state, cooldowns, rule, snapshot, now,
                                                        result, dry_run)
            except DeviceWriteFailure as e:
                return self._device_failure(user_id, result, state, cooldowns, now, e, dry_run, snapshot)
        else:
            logger.info("No rules triggered this cycle")

        try:
            await self._curtail(user_id, settings, snapshot, now, result, dry_run)
        except DeviceWriteFailure as e:
            return self._device_failure(user_id, result, state, cooldowns, now, e, dry_run, snapshot)

        if rate_limited and not dry_run:
            state = sm.engage_error_blackout(state, now, self.settings.error_blackout_minutes,
                                             f"rate limited: {', '.join(rate_limited)}")

        return self._finish(user_id, result, state, now, dry_run, cooldowns=cooldowns, snapshot=snapshot)

    def _timezone(self, settings: UserSettings, state: AutomationState):
        return resolve_timezone(settings.timezone or state.timezone, self.settings.default_timezone)

    async def _clear_orphaned_rule(self, user_id: str, settings: UserSettings, state: AutomationState,
                                   cooldowns: Dict[str, CooldownRecord], rules: List[Rule],
                                   result: CycleResult, dry_run: bool) -> Tuple[AutomationState, Dict[str, CooldownRecord]]:
        """An active rule that was disabled or deleted since it fired no longer owns the device"""
        if not state.active_rule_id:
            return state, cooldowns
        active = next((r for r in rules if r.id == state.active_rule_id), None)
        if active is not None and active.enabled:
            return state, cooldowns

        logger.info(f"Active rule '{state.active_rule_id}' no longer exists or disabled - clearing segment")
        result.warnings.append(f"Active rule {state.active_rule_id} disabled or deleted; device cleared")
        if not dry_run:
            try:
                await self.adapter.clear_all(settings.device_id)
            except AmbiguousWriteResult as e:
                result.warnings.append(str(e))
        return sm.cancel(state), sm.clear_cooldown(cooldowns, state.active_rule_id)

    async def _gather(self, user_id: str, settings: UserSettings, state: AutomationState,
                      rules: List[Rule], now: datetime) -> Tuple[SignalSnapshot, List[str]]:
        """Fetch the signals the rules need, concurrently; failures become gaps"""
        gaps: Dict[str, str] = {}
        rate_limited: List[str] = []

        async def fetch(source: str, key, ttl: int, fetch_fn):
            try:
                return await asyncio.wait_for(self.cache.get_or_fetch(key, ttl, fetch_fn),
                                              self.settings.fetch_timeout_seconds)
            except RateLimited:
                gaps[source] = 'rate-limited'
                rate_limited.append(source)
            except SignalUnavailable as e:
                gaps[source] = e.reason
            except asyncio.TimeoutError:
                gaps[source] = 'timeout'
            logger.warning(f"Signal '{source}' unavailable: {gaps[source]}")
            return None

        async def missing(source: str, reason: str):
            gaps[source] = reason
            return None

        need_prices = any(r.needs_prices for r in rules) or settings.curtailment.enabled
        need_forecast = any(r.needs_forecast_prices for r in rules)
        need_telemetry = any(r.needs_telemetry for r in rules)
        need_weather = any(r.needs_weather for r in rules)
        device_id = settings.device_id
        site = self.prices.site_key(settings.site_id)
        s = self.settings

        tasks = {}
        if need_telemetry:
            tasks['telemetry'] = fetch('telemetry', ('telemetry', user_id), s.telemetry_ttl_seconds,
                                       lambda: self.device.get_telemetry(device_id))
        if need_prices or need_forecast:
            # Current interval and forecast come from one price document per site
            tasks['price'] = (fetch('price', ('price', site), s.price_ttl_seconds,
                                    lambda: self.prices.get_prices(site))
                              if site else missing('price', 'no site configured'))
        if need_weather:
            if self.weather is None or not settings.location:
                tasks['weather'] = missing('weather', 'no location configured')
            else:
                tasks['weather'] = fetch('weather', ('weather', user_id), s.weather_ttl_seconds,
                                         lambda: self.weather.get_forecast(settings.location, s.forecast_days))

        values = dict(zip(tasks, await asyncio.gather(*tasks.values())))
        weather = values.get('weather')
        current, intervals = values.get('price') or (None, None)
        if need_prices and values.get('price') and current is None:
            gaps['price'] = 'no current interval'

        # A freshly detected timezone applies as soon as it is known
        tz_name = settings.timezone or (weather.timezone if weather else None) or state.timezone
        snapshot = SignalSnapshot(
            now=to_local(now, resolve_timezone(tz_name, self.settings.default_timezone)),
            telemetry=values.get('telemetry'),
            price=current,
            forecast_prices=intervals if need_forecast else None,
            weather=weather,
            gaps=gaps,
        )
        logger.debug(f"orchestrator.gather user={user_id} sources={','.join(tasks) or 'none'} "
                     f"gaps={','.join(gaps) or 'none'}")
        return snapshot, rate_limited

    async def _dispatch(self, settings: UserSettings, state: AutomationState, cooldowns: Dict[str, CooldownRecord],
                        rule: Rule, snapshot: SignalSnapshot, now: datetime, result: CycleResult,
                        dry_run: bool) -> Tuple[AutomationState, Dict[str, CooldownRecord]]:
        try:
            build = build_segment(snapshot.now, rule.action, self.segment_defaults)
        except InvalidSegment as e:
            logger.error(f"Invalid segment for rule '{rule.name}': {e}")
            result.error = f"invalid segment: {e}"
            return state, cooldowns

        result.segment = build.segment
        if build.warning:
            result.warnings.append(build.warning)
        if dry_run:
            logger.info(f"[DRY RUN] Would write segment {build.segment!r}")
            result.triggered = True
            result.detail = 'dry-run'
            return state, cooldowns

        try:
            await self.adapter.apply_segment(settings.device_id, build.segment)
        except AmbiguousWriteResult as e:
            logger.warning(f"Segment write not confirmed, will retry next cycle: {e}")
            result.error = f"ambiguous write: {e}"
            return state, cooldowns

        result.triggered = True
        return (sm.activate(state, rule, build.segment, now, build.effective_minutes),
                sm.start_cooldown(cooldowns, rule, now))

    async def _curtail(self, user_id: str, settings: UserSettings, snapshot: SignalSnapshot, now: datetime,
                       result: CycleResult, dry_run: bool) -> None:
        current = self.storage.load_curtailment(user_id)
        if not settings.curtailment.enabled and not current.active:
            return
        export_price = snapshot.price.export_per_unit if snapshot.price else None
        decision = decide_curtailment(settings.curtailment, current, export_price, now)
        result.curtailment = decision.action.value
        if dry_run:
            return
        if decision.needs_write:
            try:
                await asyncio.wait_for(self.device.set_export_limit(settings.device_id, decision.export_limit_watts),
                                       self.settings.device_timeout_seconds)
            except asyncio.TimeoutError:
                # Unknown outcome: keep the old state so the transition is retried
                result.warnings.append('export limit write timed out')
                return
        self.storage.save_curtailment(user_id, decision.state)

    def _device_failure(self, user_id: str, result: CycleResult, state: AutomationState,
                        cooldowns: Dict[str, CooldownRecord], now: datetime, error: DeviceWriteFailure,
                        dry_run: bool, snapshot: Optional[SignalSnapshot] = None) -> CycleResult:
        kind = 'rate limited' if isinstance(error, RateLimited) else 'device write failed'
        logger.error(f"{kind.capitalize()}: {error}")
        result.error = f"{kind}: {error}"
        result.triggered = False
        if not dry_run:
            state = sm.engage_error_blackout(state, now, self.settings.error_blackout_minutes, result.error)
            result.detail = f"error blackout until {state.blackout_until.isoformat()} (clears automatically)"
        return self._finish(user_id, result, state, now, dry_run, cooldowns=cooldowns, snapshot=snapshot)

    def _finish(self, user_id: str, result: CycleResult, state: AutomationState, now: datetime, dry_run: bool,
                cooldowns: Optional[Dict[str, CooldownRecord]] = None,
                snapshot: Optional[SignalSnapshot] = None) -> CycleResult:
        if dry_run:
            return result
        self.storage.save_state(user_id, state)
        if cooldowns is not None:
            self.storage.save_cooldowns(user_id, cooldowns)
        self.storage.append_audit(user_id, AuditEntry.from_result(result, now, snapshot))
        logger.debug(f"orchestrator.finish user={user_id} outcome={result.outcome}")
        return result

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def initialize_user(self, user_id: str, settings: Optional[UserSettings] = None) -> AutomationState:
        """Create automation state for a new user (disabled until switched on)"""
        if settings is not None:
            self.storage.save_settings(user_id, settings)
        state = self.storage.load_state(user_id)
        if state is None:
            state = AutomationState(enabled=False)
            self.storage.save_state(user_id, state)
            logger.info(f"Initialized automation for {user_id}")
        return state

    async def cancel(self, user_id: str) -> AutomationState:
        """Manual cancel: clear every slot and the active rule's cooldown"""
        state = self._require_state(user_id)
        settings = self.storage.load_settings(user_id)
        if not settings.device_id:
            raise ConfigurationError("No device configured")
        await self.adapter.clear_all(settings.device_id)
        cooldowns = sm.clear_cooldown(self.storage.load_cooldowns(user_id), state.active_rule_id)
        logger.info(f"Cancelled active rule {state.active_rule_id or '-'} for {user_id}")
        state = sm.cancel(state)
        self.storage.save_state(user_id, state)
        self.storage.save_cooldowns(user_id, cooldowns)
        return state

    async def set_enabled(self, user_id: str, enabled: bool) -> AutomationState:
        """Switch automation on or off; switching off clears the device and every cooldown"""
        state = self._require_state(user_id)
        if not enabled:
            settings = self.storage.load_settings(user_id)
            if settings.device_id:
                await self.adapter.clear_all(settings.device_id)
            self.storage.save_cooldowns(user_id, {})
        state = sm.set_enabled(state, enabled)
        self.storage.save_state(user_id, state)
        logger.info(f"Automation {'enabled' if enabled else 'disabled'} for {user_id}")
        return state

    def status(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        state = self._require_state(user_id)
        cooldowns = {}
        for rule_id, record in self.storage.load_cooldowns(user_id).items():
            remaining = sm.cooldown_remaining(record, now)
            if remaining is not None:
                cooldowns[rule_id] = int(remaining.total_seconds())
        return {'phase': sm.phase(state, now).value, 'state': state.to_dict(), 'cooldowns': cooldowns}

    def _require_state(self, user_id: str) -> AutomationState:
        state = self.storage.load_state(user_id)
        if state is None:
            raise ConfigurationError(f"User {user_id} is not initialized")
        return state

    async def close(self):
        for client in (self.device, self.prices, self.weather):
            close = getattr(client, 'close', None)
            if close is not None:
                await close()
