"""
Tests for PreciseTime, the offset register and the PreciseClock read path.
"""

from datetime import datetime, timezone

import pytest

from microtempo.errors import ClockNotSyncedError
from microtempo.timing.precise_clock import OffsetRegister, PreciseClock, PreciseTime


class TestPreciseTime:

    def test_split_components(self):
        t = PreciseTime.from_total_nanos(1_700_000_000_123_456_789)
        assert t.epoch_millis == 1_700_000_000_123
        assert t.sub_millis_micros == 456
        assert t.sub_micro_nanos == 789
        assert t.total_nanos == 1_700_000_000_123_456_789

    def test_plus_nanos_carries(self):
        t = PreciseTime(epoch_millis=10, sub_millis_micros=999, sub_micro_nanos=999)
        later = t.plus_nanos(1)
        assert later == PreciseTime(epoch_millis=11, sub_millis_micros=0, sub_micro_nanos=0)

    def test_to_datetime(self):
        t = PreciseTime.from_total_nanos(1_700_000_000_123_456_789)
        assert t.to_datetime() == datetime(2023, 11, 14, 22, 13, 20, 123456, tzinfo=timezone.utc)

    def test_isoformat_keeps_nanoseconds(self):
        t = PreciseTime.from_total_nanos(1_700_000_000_000_000_007)
        assert t.isoformat() == "2023-11-14T22:13:20.000000007Z"


class TestOffsetRegister:

    def test_starts_unsynced(self):
        register = OffsetRegister()
        assert not register.is_synced
        assert register.offset_nanos is None
        assert register.last_result is None
        assert register.snapshot() is None

    def test_commit_replaces_snapshot(self):
        register = OffsetRegister()
        register.commit(100, "first")
        before = register.snapshot()
        register.commit(200, "second")

        assert before == (100, "first")
        assert register.snapshot() == (200, "second")
        assert register.offset_nanos == 200
        assert register.last_result == "second"


class TestPreciseClock:

    def test_now_before_sync_raises(self):
        clock = PreciseClock(OffsetRegister(), monotonic_ns=lambda: 0)
        with pytest.raises(ClockNotSyncedError, match="not synced"):
            clock.now()
        assert clock.now_or_none() is None
        assert not clock.is_synced()

    def test_not_synced_is_a_runtime_error(self):
        assert issubclass(ClockNotSyncedError, RuntimeError)

    def test_now_adds_offset(self):
        register = OffsetRegister()
        register.commit(1_700_000_000_000_000_000)
        clock = PreciseClock(register, monotonic_ns=lambda: 5_123_456_789)

        now = clock.now()
        assert now.total_nanos == 1_700_000_005_123_456_789
        assert clock.now_or_none() == now
        assert clock.is_synced()

    def test_offset_update_visible_immediately(self):
        register = OffsetRegister()
        clock = PreciseClock(register, monotonic_ns=lambda: 0)
        register.commit(10)
        assert clock.now().total_nanos == 10
        register.commit(-4)
        assert clock.now().total_nanos == -4
