"""Solar curtailment: limit grid export while the feed-in price is below a threshold"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .models import CurtailmentConfig, CurtailmentState

logger = logging.getLogger(__name__)

CURTAILED_EXPORT_WATTS = 0


class CurtailmentAction(str, Enum):
    ACTIVATE = 'activate'
    DEACTIVATE = 'deactivate'
    ALREADY_ACTIVE = 'already_active'
    ALREADY_INACTIVE = 'already_inactive'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class CurtailmentDecision:
    action: CurtailmentAction
    state: CurtailmentState
    export_limit_watts: Optional[int] = None

    @property
    def needs_write(self) -> bool:
        return self.export_limit_watts is not None


def decide(config: CurtailmentConfig, state: CurtailmentState, export_price: Optional[float],
           now: datetime) -> CurtailmentDecision:
    """Compare the feed-in price against the threshold; only transitions touch the device"""
    if not config.enabled:
        if state.active:
            # Switched off while curtailed: give the export limit back
            return CurtailmentDecision(CurtailmentAction.DEACTIVATE,
                                       CurtailmentState(False, export_price, now),
                                       config.restore_power_watts)
        return CurtailmentDecision(CurtailmentAction.SKIPPED, state)
    if export_price is None:
        logger.debug("curtailment.decide skipped=true reason=no_feed_in_price")
        return CurtailmentDecision(CurtailmentAction.SKIPPED, state)

    should_curtail = export_price < config.price_threshold
    if should_curtail and not state.active:
        logger.info(f"☀️  Curtailing export: feed-in {export_price:.2f} below {config.price_threshold:.2f}")
        return CurtailmentDecision(CurtailmentAction.ACTIVATE, CurtailmentState(True, export_price, now),
                                   CURTAILED_EXPORT_WATTS)
    if not should_curtail and state.active:
        logger.info(f"☀️  Restoring export: feed-in {export_price:.2f} at or above {config.price_threshold:.2f}")
        return CurtailmentDecision(CurtailmentAction.DEACTIVATE, CurtailmentState(False, export_price, now),
                                   config.restore_power_watts)

    action = CurtailmentAction.ALREADY_ACTIVE if state.active else CurtailmentAction.ALREADY_INACTIVE
    return CurtailmentDecision(action, CurtailmentState(state.active, export_price, state.last_transition_at))
