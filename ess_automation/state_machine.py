"""Per-user automation state transitions

Every function here is pure: it takes the current AutomationState (or cooldown
map) and returns a new one. The orchestrator is the only caller that persists.

    Disabled -> Idle <-> RuleActive -> Idle, with Blackout orthogonal to both.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional

from .clock import in_daily_window, minutes_of_day, parse_hhmm
from .models import AutomationState, BlackoutWindow, CooldownRecord, ScheduleSegment

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    DISABLED = 'disabled'
    IDLE = 'idle'
    RULE_ACTIVE = 'rule-active'
    BLACKOUT = 'blackout'


def phase(state: AutomationState, now: datetime) -> Phase:
    if not state.enabled:
        return Phase.DISABLED
    if in_error_blackout(state, now):
        return Phase.BLACKOUT
    if state.active_rule_id and state.active_until and now < state.active_until:
        return Phase.RULE_ACTIVE
    return Phase.IDLE


# ---------------------------------------------------------------------------
# Active rule
# ---------------------------------------------------------------------------


def activate(state: AutomationState, rule, segment: ScheduleSegment, now: datetime,
             effective_minutes: int) -> AutomationState:
    """Record a confirmed segment as the active rule for its effective duration"""
    return replace(
        state,
        active_rule_id=rule.id,
        active_rule_name=rule.name,
        active_until=now + timedelta(minutes=effective_minutes),
        active_segment=segment,
    )


def has_expired(state: AutomationState, now: datetime) -> bool:
    return bool(state.active_rule_id and state.active_until and now >= state.active_until)


def expire_active(state: AutomationState, now: datetime) -> AutomationState:
    """Natural expiry clears the active fields; cooldowns are left alone"""
    if not has_expired(state, now):
        return state
    logger.debug(f"state.expire rule={state.active_rule_id} until={state.active_until}")
    return clear_active(state)


def clear_active(state: AutomationState) -> AutomationState:
    return replace(state, active_rule_id=None, active_rule_name=None,
                   active_until=None, active_segment=None)


def cancel(state: AutomationState) -> AutomationState:
    """Manual cancel; callers also clear the cancelled rule's cooldown"""
    return clear_active(state)


def set_enabled(state: AutomationState, enabled: bool) -> AutomationState:
    if enabled:
        return replace(state, enabled=True)
    return replace(clear_active(state), enabled=False)


# ---------------------------------------------------------------------------
# Blackouts
# ---------------------------------------------------------------------------


def engage_error_blackout(state: AutomationState, now: datetime, minutes: int,
                          reason: str) -> AutomationState:
    until = now + timedelta(minutes=minutes)
    logger.warning(f"Error blackout engaged until {until.strftime('%H:%M:%S')}: {reason}")
    return replace(state, in_blackout=True, blackout_until=until, blackout_reason=reason)


def in_error_blackout(state: AutomationState, now: datetime) -> bool:
    return bool(state.in_blackout and state.blackout_until and now < state.blackout_until)


def clear_error_blackout(state: AutomationState, now: datetime) -> AutomationState:
    """Self-clearing: lifts the blackout once its deadline has passed"""
    if not state.in_blackout or in_error_blackout(state, now):
        return state
    logger.info("Error blackout cleared")
    return replace(state, in_blackout=False, blackout_until=None, blackout_reason=None)


def find_blackout_window(windows: Iterable[BlackoutWindow], local_now: datetime) -> Optional[BlackoutWindow]:
    """First enabled window covering the local time (overnight ranges and day filters supported)"""
    current = minutes_of_day(local_now)
    weekday = local_now.weekday()
    for window in windows:
        if not window.enabled:
            continue
        if window.days and weekday not in window.days:
            continue
        try:
            start, end = parse_hhmm(window.start), parse_hhmm(window.end)
        except ValueError:
            logger.warning(f"Ignoring blackout window with invalid times: {window.start}-{window.end}")
            continue
        if in_daily_window(current, start, end):
            return window
    return None


# ---------------------------------------------------------------------------
# Cooldowns
# ---------------------------------------------------------------------------


def start_cooldown(cooldowns: Dict[str, CooldownRecord], rule, now: datetime) -> Dict[str, CooldownRecord]:
    updated = dict(cooldowns)
    updated[rule.id] = CooldownRecord(rule.id, now, rule.cooldown_minutes)
    return updated


def clear_cooldown(cooldowns: Dict[str, CooldownRecord], rule_id: Optional[str]) -> Dict[str, CooldownRecord]:
    updated = dict(cooldowns)
    if rule_id:
        updated.pop(rule_id, None)
    return updated


def cooldown_remaining(record: Optional[CooldownRecord], now: datetime) -> Optional[timedelta]:
    """Time left before the rule may fire again, or None when eligible"""
    if record is None:
        return None
    remaining = record.ready_at - now
    return remaining if remaining > timedelta(0) else None


def is_in_cooldown(record: Optional[CooldownRecord], now: datetime) -> bool:
    return cooldown_remaining(record, now) is not None
