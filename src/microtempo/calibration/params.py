"""
Calibration parameters, selected once per run from the camera frame rate.
"""

import math
from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class CalibrationParams:
    """Constants for one calibration run"""
    flash_duration_ms: int
    flash_period_ms: int
    run_duration_seconds: int
    target_sample_count: int
    expected_precision_ms: float
    brightness_threshold: float = 0.7
    outlier_sigma: float = 3.0

    @property
    def sample_interval_ms(self) -> float:
        """Average time between collected samples if the target is met."""
        return 1000.0 / self.target_sample_count * self.run_duration_seconds

    @classmethod
    def for_fps(cls, max_fps: int) -> "CalibrationParams":
        if max_fps >= 960:
            return cls(flash_duration_ms=5, flash_period_ms=50, run_duration_seconds=5,
                       target_sample_count=100, expected_precision_ms=0.05)
        if max_fps >= 240:
            return cls(flash_duration_ms=15, flash_period_ms=33, run_duration_seconds=15,
                       target_sample_count=450, expected_precision_ms=0.10)
        if max_fps >= 120:
            return cls(flash_duration_ms=25, flash_period_ms=50, run_duration_seconds=20,
                       target_sample_count=400, expected_precision_ms=0.20)
        return cls(flash_duration_ms=50, flash_period_ms=100, run_duration_seconds=30,
                   target_sample_count=300, expected_precision_ms=0.50)


def estimate_precision(max_fps: int, sample_count: int) -> float:
    """Statistical precision in ms: (frame_interval / 2) / sqrt(N)."""
    frame_interval_ms = 1000.0 / max_fps
    return (frame_interval_ms / 2.0) / math.sqrt(sample_count)


class CalibrationTier(Enum):
    ULTRA_HIGH = (960, "Ultra High (960fps)", "Professional-grade ~0.05ms precision")
    HIGH = (240, "High (240fps)", "Excellent ~0.1ms precision")
    MEDIUM = (120, "Medium (120fps)", "Good ~0.2ms precision")
    STANDARD = (30, "Standard (30fps)", "Basic ~0.5ms precision")

    def __init__(self, min_fps: int, label: str, description: str):
        self.min_fps = min_fps
        self.label = label
        self.description = description

    @classmethod
    def for_fps(cls, fps: int) -> "CalibrationTier":
        for tier in cls:
            if fps >= tier.min_fps:
                return tier
        return cls.STANDARD

    @property
    def params(self) -> CalibrationParams:
        return CalibrationParams.for_fps(self.min_fps)
