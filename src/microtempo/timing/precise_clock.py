"""
Precise clock read path.

The offset register holds one immutable snapshot ``(offset_nanos, result)``
and is replaced by a single reference assignment, so readers never take a
lock and never observe an offset paired with the wrong SyncResult.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, NamedTuple, Optional, TYPE_CHECKING

from ..errors import ClockNotSyncedError

if TYPE_CHECKING:
    from .sync_engine import SyncResult


@dataclass(frozen=True)
class PreciseTime:
    """Wall-clock instant split into millisecond / microsecond / nanosecond parts."""
    epoch_millis: int
    sub_millis_micros: int  # 0-999
    sub_micro_nanos: int    # 0-999

    @property
    def total_nanos(self) -> int:
        return self.epoch_millis * 1_000_000 + self.sub_millis_micros * 1_000 + self.sub_micro_nanos

    @classmethod
    def from_total_nanos(cls, total_nanos: int) -> "PreciseTime":
        millis, rest = divmod(total_nanos, 1_000_000)
        micros, nanos = divmod(rest, 1_000)
        return cls(epoch_millis=millis, sub_millis_micros=micros, sub_micro_nanos=nanos)

    def plus_nanos(self, nanos: int) -> "PreciseTime":
        return PreciseTime.from_total_nanos(self.total_nanos + nanos)

    def to_datetime(self) -> datetime:
        """UTC datetime (microsecond resolution, nanoseconds dropped)."""
        seconds, millis = divmod(self.epoch_millis, 1000)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(
            microsecond=millis * 1000 + self.sub_millis_micros
        )

    def isoformat(self) -> str:
        """ISO-8601 UTC string with nanosecond digits."""
        base = self.to_datetime().strftime("%Y-%m-%dT%H:%M:%S")
        frac = self.total_nanos % 1_000_000_000
        return f"{base}.{frac:09d}Z"


class CommittedOffset(NamedTuple):
    offset_nanos: int
    result: Optional["SyncResult"]


class OffsetRegister:
    """
    Single-writer / many-reader holder of the committed clock offset.

    One instance is owned by the composition root and shared between the
    SyncEngine (writer) and any number of PreciseClock readers.
    """

    def __init__(self):
        self._committed: Optional[CommittedOffset] = None

    def commit(self, offset_nanos: int, result: Optional["SyncResult"] = None) -> None:
        self._committed = CommittedOffset(offset_nanos, result)

    def snapshot(self) -> Optional[CommittedOffset]:
        return self._committed

    @property
    def offset_nanos(self) -> Optional[int]:
        committed = self._committed
        return committed.offset_nanos if committed is not None else None

    @property
    def last_result(self) -> Optional["SyncResult"]:
        committed = self._committed
        return committed.result if committed is not None else None

    @property
    def is_synced(self) -> bool:
        return self._committed is not None


class PreciseClock:
    """
    Monotonic clock reading plus the committed offset.

    Performs no I/O and takes no locks; safe to call on every rendered frame.
    """

    def __init__(self, register: OffsetRegister, monotonic_ns: Callable[[], int] = time.monotonic_ns):
        self.register = register
        self._monotonic_ns = monotonic_ns

    def now(self) -> PreciseTime:
        """
        Current true time.

        Raises:
            ClockNotSyncedError: If no offset has been committed yet
        """
        committed = self.register.snapshot()
        if committed is None:
            raise ClockNotSyncedError()
        return PreciseTime.from_total_nanos(self._monotonic_ns() + committed.offset_nanos)

    def now_or_none(self) -> Optional[PreciseTime]:
        """Current true time, or None if the clock has never been synced."""
        committed = self.register.snapshot()
        if committed is None:
            return None
        return PreciseTime.from_total_nanos(self._monotonic_ns() + committed.offset_nanos)

    def is_synced(self) -> bool:
        return self.register.is_synced
