"""
MicroTempo Calibration

Camera flash correlation, robust delay statistics and the persisted display
latency compensation.
"""

from .analyzer import CalibrationSample, CalibrationResult, analyze_samples, analyze_delays
from .params import CalibrationParams, CalibrationTier, estimate_precision
from .state import (
    CalibrationState, Idle, Initializing, Recording, Analyzing, Completed, Error
)
from .capture import FrameSource, ReplayFrameSource, luma_brightness
from .sampler import CalibrationSampler
from .flash import FlashScheduler
from .compensation import (
    CompensationStore, CompensationState, JsonFileBackend, MemoryBackend
)

__all__ = [
    "CalibrationSample",
    "CalibrationResult",
    "analyze_samples",
    "analyze_delays",
    "CalibrationParams",
    "CalibrationTier",
    "estimate_precision",
    "CalibrationState",
    "Idle",
    "Initializing",
    "Recording",
    "Analyzing",
    "Completed",
    "Error",
    "FrameSource",
    "ReplayFrameSource",
    "luma_brightness",
    "CalibrationSampler",
    "FlashScheduler",
    "CompensationStore",
    "CompensationState",
    "JsonFileBackend",
    "MemoryBackend",
]
