"""
MicroTempo - Latency-Compensated Precise Time

Burst SNTP synchronization against a monotonic clock, plus camera-based
display latency calibration, combined into a single compensated timestamp.
"""

__version__ = "0.1.0"
__author__ = "MicroTempo Team"

from .timing.precise_clock import PreciseTime, OffsetRegister, PreciseClock
from .timing.sync_engine import NtpServer, SyncEngine, SyncResult
from .calibration.analyzer import CalibrationResult, CalibrationSample, analyze_samples
from .calibration.compensation import CompensationStore
from .service import MicroTempo

__all__ = [
    "PreciseTime",
    "NtpServer",
    "SyncEngine",
    "SyncResult",
    "OffsetRegister",
    "PreciseClock",
    "CalibrationResult",
    "CalibrationSample",
    "analyze_samples",
    "CompensationStore",
    "MicroTempo",
    "__version__"
]
