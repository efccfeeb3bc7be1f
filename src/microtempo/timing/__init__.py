"""
MicroTempo Timing

SNTP burst synchronization and the lock-free precise clock read path.
"""

from .ntp_codec import ntp_to_unix_nanos, unix_nanos_to_ntp
from .precise_clock import PreciseTime, OffsetRegister, PreciseClock
from .sync_engine import NtpServer, NTPConfig, SyncSample, SyncResult, SyncEngine, DEFAULT_SERVERS
from .auto_sync import AutoSyncScheduler

__all__ = [
    "ntp_to_unix_nanos",
    "unix_nanos_to_ntp",
    "PreciseTime",
    "OffsetRegister",
    "PreciseClock",
    "NtpServer",
    "NTPConfig",
    "SyncSample",
    "SyncResult",
    "SyncEngine",
    "DEFAULT_SERVERS",
    "AutoSyncScheduler",
]
