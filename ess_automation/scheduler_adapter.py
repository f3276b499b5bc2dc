"""Device scheduler adapter

The device exposes eight scheduler slots and may silently reorder them after
a write (sorting by start time, for instance). A segment is therefore always
located by its content, never by the slot it was written to.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol

from .errors import AmbiguousWriteResult, SignalUnavailable
from .models import SLOT_COUNT, ScheduleSegment

logger = logging.getLogger(__name__)


class SchedulerDevice(Protocol):
    async def get_segments(self, device_id: str) -> List[ScheduleSegment]: ...

    async def set_segments(self, device_id: str, segments: List[ScheduleSegment]) -> None: ...


@dataclass
class ApplyResult:
    segment: ScheduleSegment
    slot_index: int
    slots: List[ScheduleSegment]


def find_segment(slots: List[ScheduleSegment], target: ScheduleSegment) -> Optional[int]:
    """Index of the enabled slot whose content matches target, scanning every slot"""
    key = target.content_key()
    for index, slot in enumerate(slots):
        if slot.enabled and slot.content_key() == key:
            return index
    return None


def disabled_slots() -> List[ScheduleSegment]:
    return [ScheduleSegment.disabled() for _ in range(SLOT_COUNT)]


class SchedulerAdapter:
    """Writes segments to the device scheduler and confirms them by content"""

    def __init__(self, device: SchedulerDevice, timeout_seconds: float = 10,
                 verify_delay_seconds: float = 2,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.device = device
        self.timeout = timeout_seconds
        self.verify_delay = verify_delay_seconds
        self._sleep = sleep

    async def read_slots(self, device_id: str) -> List[ScheduleSegment]:
        try:
            slots = await asyncio.wait_for(self.device.get_segments(device_id), self.timeout)
        except asyncio.TimeoutError:
            raise SignalUnavailable('scheduler', 'timeout')
        return list(slots)

    async def apply_segment(self, device_id: str, segment: ScheduleSegment) -> ApplyResult:
        """Replace the whole schedule with a single segment and confirm it landed

        Raises DeviceWriteFailure when the device rejects the write and
        AmbiguousWriteResult when the write returned but the segment cannot be
        found on read-back.
        """
        slots = disabled_slots()
        slots[0] = segment
        logger.info(f"Writing segment {segment!r} to {device_id}")
        try:
            await asyncio.wait_for(self.device.set_segments(device_id, slots), self.timeout)
        except asyncio.TimeoutError:
            raise AmbiguousWriteResult(f"Scheduler write to {device_id} timed out after {self.timeout}s")

        if self.verify_delay:
            await self._sleep(self.verify_delay)

        try:
            current = await self.read_slots(device_id)
        except SignalUnavailable as e:
            raise AmbiguousWriteResult(f"Could not read back scheduler from {device_id}: {e.reason}")

        index = find_segment(current, segment)
        if index is None:
            logger.error(f"Segment {segment!r} not found on {device_id} after write: {current}")
            raise AmbiguousWriteResult(f"Segment {segment!r} not confirmed on device {device_id}")
        if index != 0:
            logger.debug(f"scheduler.verify reordered=true slot={index + 1}")
        logger.info(f"  ✓ Segment confirmed in slot {index + 1}")
        return ApplyResult(segment, index, current)

    async def is_segment_active(self, device_id: str, segment: ScheduleSegment) -> bool:
        return find_segment(await self.read_slots(device_id), segment) is not None

    async def clear_all(self, device_id: str) -> None:
        """Reset all eight slots to the disabled default in one write"""
        logger.info(f"Clearing all scheduler slots on {device_id}")
        try:
            await asyncio.wait_for(self.device.set_segments(device_id, disabled_slots()), self.timeout)
        except asyncio.TimeoutError:
            raise AmbiguousWriteResult(f"Scheduler clear on {device_id} timed out after {self.timeout}s")
