"""
Tests for the device scheduler adapter (content matching, ambiguous writes)
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from ess_automation.errors import AmbiguousWriteResult, DeviceWriteFailure
from ess_automation.models import SLOT_COUNT, ScheduleSegment, WorkMode
from ess_automation.scheduler_adapter import SchedulerAdapter, find_segment

SEGMENT = ScheduleSegment(enabled=True, work_mode=WorkMode.FORCE_DISCHARGE, start_hour=14, start_minute=5,
                          end_hour=14, end_minute=35, power_watts=5000, min_soc_on_grid=20,
                          force_discharge_soc=35, max_soc=90)


@pytest.fixture
def adapter(device):
    return SchedulerAdapter(device, timeout_seconds=1, verify_delay_seconds=0)


class TestFindSegment:
    """Segments are located by content in any slot"""

    def test_found_in_any_slot(self):
        slots = [ScheduleSegment.disabled() for _ in range(SLOT_COUNT)]
        slots[5] = SEGMENT
        assert find_segment(slots, SEGMENT) == 5

    def test_different_content_does_not_match(self):
        other = ScheduleSegment(**{**SEGMENT.to_dict(), 'work_mode': WorkMode.FORCE_CHARGE})
        assert find_segment([other], SEGMENT) is None

    def test_disabled_slot_does_not_match(self):
        disabled = ScheduleSegment(**{**SEGMENT.to_dict(), 'work_mode': SEGMENT.work_mode, 'enabled': False})
        assert find_segment([disabled], SEGMENT) is None

    def test_device_round_trip_preserves_content(self):
        assert ScheduleSegment.from_device(SEGMENT.to_device()).content_key() == SEGMENT.content_key()


@pytest.mark.asyncio
class TestApplySegment:
    """Test write, read-back and verification"""

    async def test_writes_all_slots_with_segment_first(self, adapter, device):
        result = await adapter.apply_segment('SN123', SEGMENT)
        written = device.writes[-1]
        assert len(written) == SLOT_COUNT
        assert written[0] == SEGMENT
        assert all(not s.enabled for s in written[1:])
        assert result.slot_index == 0

    async def test_reordered_slots_are_still_confirmed(self, adapter, device):
        device.reorder = True
        result = await adapter.apply_segment('SN123', SEGMENT)
        assert result.slot_index == SLOT_COUNT - 1
        assert device.slots[SLOT_COUNT - 1] == SEGMENT

    async def test_missing_after_write_is_ambiguous(self, adapter, device):
        device.drop_writes = True
        with pytest.raises(AmbiguousWriteResult):
            await adapter.apply_segment('SN123', SEGMENT)

    async def test_write_timeout_is_ambiguous(self, device):
        async def hang(device_id, segments):
            await asyncio.sleep(10)

        device.set_segments = hang
        adapter = SchedulerAdapter(device, timeout_seconds=0.01, verify_delay_seconds=0)
        with pytest.raises(AmbiguousWriteResult):
            await adapter.apply_segment('SN123', SEGMENT)

    async def test_rejected_write_propagates(self, adapter, device):
        device.write_error = DeviceWriteFailure('rejected', errno=41000)
        with pytest.raises(DeviceWriteFailure):
            await adapter.apply_segment('SN123', SEGMENT)

    async def test_waits_before_reading_back(self, device):
        sleep = AsyncMock()
        adapter = SchedulerAdapter(device, verify_delay_seconds=2, sleep=sleep)
        await adapter.apply_segment('SN123', SEGMENT)
        sleep.assert_awaited_once_with(2)

    async def test_is_segment_active(self, adapter, device):
        assert await adapter.is_segment_active('SN123', SEGMENT) is False
        await adapter.apply_segment('SN123', SEGMENT)
        assert await adapter.is_segment_active('SN123', SEGMENT) is True


@pytest.mark.asyncio
class TestClearAll:
    async def test_clears_every_slot_in_one_write(self, adapter, device):
        device.reorder = True
        await adapter.apply_segment('SN123', SEGMENT)
        await adapter.clear_all('SN123')
        assert len(device.writes) == 2
        assert device.writes[-1] == [ScheduleSegment.disabled()] * SLOT_COUNT
        assert device.active_slots == []
