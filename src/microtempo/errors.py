"""
Exception types for MicroTempo.

Network problems inside a sync burst never surface as exceptions; they are
absorbed per attempt and reported as a ``None`` result. Everything here is
recoverable by retrying the operation that raised it.
"""


class MicroTempoError(Exception):
    """Base class for all MicroTempo errors."""


class ConfigError(MicroTempoError):
    """Configuration file could not be loaded or holds invalid values."""


class ClockNotSyncedError(MicroTempoError, RuntimeError):
    """Raised by PreciseClock.now() before any offset has been committed."""

    def __init__(self, message: str = "Clock not synced. Call sync() first."):
        super().__init__(message)


class CalibrationError(MicroTempoError):
    """Calibration run or analysis could not produce a result."""

    def __init__(self, message: str, sample_count: int = 0):
        super().__init__(message)
        self.sample_count = sample_count


class NoSamplesError(CalibrationError):
    def __init__(self):
        super().__init__("No samples collected", sample_count=0)


class AllSamplesRejectedError(CalibrationError):
    def __init__(self, sample_count: int):
        super().__init__("All samples rejected as outliers", sample_count=sample_count)


class InsufficientSamplesError(CalibrationError):
    def __init__(self, sample_count: int, minimum: int):
        super().__init__(f"Not enough samples collected ({sample_count})", sample_count=sample_count)
        self.minimum = minimum


__all__ = [
    "MicroTempoError",
    "ConfigError",
    "ClockNotSyncedError",
    "CalibrationError",
    "NoSamplesError",
    "AllSamplesRejectedError",
    "InsufficientSamplesError",
]
