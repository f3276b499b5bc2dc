"""Build device scheduler segments from rule actions

The device rejects segments that cross midnight, so a segment that would run
past 23:59 is capped there and the shortened duration is reported.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import InvalidSegment
from .models import LAST_MINUTE_OF_DAY, Action, ScheduleSegment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentDefaults:
    """Values used when an action leaves a segment field unset"""
    power_watts: int = 5000
    min_soc_on_grid: int = 20
    force_discharge_soc: int = 35
    max_soc: int = 90

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SegmentDefaults':
        data = data or {}
        return cls(
            power_watts=int(data.get('power_watts', 5000)),
            min_soc_on_grid=int(data.get('min_soc_on_grid', 20)),
            force_discharge_soc=int(data.get('force_discharge_soc', 35)),
            max_soc=int(data.get('max_soc', 90)),
        )


@dataclass(frozen=True)
class SegmentBuild:
    segment: ScheduleSegment
    requested_minutes: int
    effective_minutes: int
    capped: bool = False
    warning: Optional[str] = None


def build_segment(start: datetime, action: Action,
                  defaults: SegmentDefaults = SegmentDefaults()) -> SegmentBuild:
    """Segment starting at the local minute of ``start`` for the action's duration"""
    requested = int(action.duration_minutes)
    if requested <= 0:
        raise InvalidSegment(f"Duration must be positive, got {requested} minutes")

    start_minutes = start.hour * 60 + start.minute
    end_minutes = (start_minutes + requested) % (LAST_MINUTE_OF_DAY + 1)
    capped = False
    warning = None

    if start_minutes + requested > LAST_MINUTE_OF_DAY:
        # Would cross midnight: stop at 23:59 instead
        capped = True
        end_minutes = LAST_MINUTE_OF_DAY
        effective = LAST_MINUTE_OF_DAY - start_minutes
        warning = (f"Segment capped at 23:59: requested {requested} min from "
                   f"{start_minutes // 60:02d}:{start_minutes % 60:02d}, running {effective} min")
        logger.warning(f"⚠️  {warning}")

    if end_minutes <= start_minutes:
        raise InvalidSegment(
            f"Segment end {end_minutes // 60:02d}:{end_minutes % 60:02d} is not after start "
            f"{start_minutes // 60:02d}:{start_minutes % 60:02d}")

    segment = ScheduleSegment(
        enabled=True,
        work_mode=action.work_mode,
        start_hour=start_minutes // 60,
        start_minute=start_minutes % 60,
        end_hour=end_minutes // 60,
        end_minute=end_minutes % 60,
        power_watts=_or(action.power_watts, defaults.power_watts),
        min_soc_on_grid=_or(action.min_soc_on_grid, defaults.min_soc_on_grid),
        force_discharge_soc=_or(action.force_discharge_soc, defaults.force_discharge_soc),
        max_soc=_or(action.max_soc, defaults.max_soc),
    )
    logger.debug(f"segments.build segment={segment!r} requested={requested} "
                 f"effective={segment.duration_minutes} capped={str(capped).lower()}")
    return SegmentBuild(segment, requested, segment.duration_minutes, capped, warning)


def _or(value: Optional[int], default: int) -> int:
    return default if value is None else int(value)
