"""Optimistic last-check throttle shared by every trigger source

The user-session timer and the periodic trigger both call run_cycle. Whoever
arrives first writes ``last_check`` before doing any work; the other sees a
recent timestamp and skips. There is no lock: two triggers landing within the
same instant may both run, which the content-matching device adapter tolerates.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from .models import AutomationState

logger = logging.getLogger(__name__)


class CycleThrottle:
    def __init__(self, interval_seconds: int = 60):
        self.interval = timedelta(seconds=interval_seconds)

    def interval_for(self, interval_seconds: Optional[int] = None) -> timedelta:
        return timedelta(seconds=interval_seconds) if interval_seconds else self.interval

    def remaining(self, state: AutomationState, now: datetime,
                  interval_seconds: Optional[int] = None) -> timedelta:
        if state.last_check is None:
            return timedelta(0)
        remaining = state.last_check + self.interval_for(interval_seconds) - now
        return max(remaining, timedelta(0))

    def is_due(self, state: AutomationState, now: datetime, interval_seconds: Optional[int] = None) -> bool:
        """True when at least one interval has passed since the last claimed check"""
        if state.last_check is None:
            return True
        return now - state.last_check >= self.interval_for(interval_seconds)

    def claim(self, state: AutomationState, now: datetime) -> AutomationState:
        """Take the slot for this cycle; the caller persists the result immediately"""
        logger.debug(f"throttle.claim last_check={now.isoformat()}")
        return replace(state, last_check=now)
