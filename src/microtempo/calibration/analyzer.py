"""
Robust statistics over flash-correlation samples.

The analyzer is a pure function: it never touches persisted state. Its
result is handed to the CompensationStore, which decides what to keep.

Median convention: the median of N values is element ``N // 2`` of the
stably sorted list. For even N that is the second of the two middle
elements; the pair is not averaged.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from ..errors import AllSamplesRejectedError, NoSamplesError
from ..logging.debug_logger import debug_log_call, debug_log_metrics

logger = logging.getLogger(__name__)

# Scales MAD to a standard deviation estimate under a normal distribution
MAD_TO_SIGMA = 1.4826


@dataclass(frozen=True)
class CalibrationSample:
    """One flash paired with the camera frame that observed it"""
    flash_timestamp_nanos: int
    camera_timestamp_nanos: int
    brightness: float

    @property
    def delay_nanos(self) -> int:
        return self.camera_timestamp_nanos - self.flash_timestamp_nanos

    @property
    def delay_ms(self) -> float:
        return self.delay_nanos / 1_000_000.0


@dataclass(frozen=True)
class CalibrationResult:
    median_delay_ms: float
    mean_delay_ms: float
    std_dev_ms: float
    sample_count: int
    outlier_count: int
    estimated_precision_ms: float


def middle_element(values: np.ndarray) -> float:
    """Element N//2 of the stably sorted values."""
    ordered = np.sort(values, kind="stable")
    return float(ordered[ordered.size // 2])


@debug_log_call
def analyze_delays(delays_ms: Sequence[float], outlier_sigma: float = 3.0) -> CalibrationResult:
    """
    Median / MAD outlier rejection, then summary statistics.

    Args:
        delays_ms: Per-sample display delay in milliseconds
        outlier_sigma: Rejection threshold in MAD-derived standard deviations

    Raises:
        NoSamplesError: If ``delays_ms`` is empty
        AllSamplesRejectedError: If no value survives outlier rejection
    """
    delays = np.asarray(delays_ms, dtype=np.float64)
    if delays.size == 0:
        raise NoSamplesError()

    median = middle_element(delays)
    deviations = np.abs(delays - median)
    mad = middle_element(deviations)
    mad_sigma = mad * MAD_TO_SIGMA

    # Boundary is inclusive: a value exactly at the threshold is kept
    threshold = outlier_sigma * mad_sigma
    filtered = delays[deviations <= threshold]
    outlier_count = int(delays.size - filtered.size)

    if filtered.size == 0:
        raise AllSamplesRejectedError(int(delays.size))

    final_median = middle_element(filtered)
    mean = float(np.mean(filtered))
    std_dev = float(np.std(filtered))  # population
    precision = std_dev / float(np.sqrt(filtered.size))

    debug_log_metrics({
        'median_ms': median,
        'mad_ms': mad,
        'threshold_ms': threshold,
        'rejected': outlier_count,
    })

    if outlier_count:
        logger.info(f"[CALIBRATION] Rejected {outlier_count}/{delays.size} outliers "
                    f"(|delay - {median:.3f}ms| > {threshold:.3f}ms)")

    return CalibrationResult(
        median_delay_ms=final_median,
        mean_delay_ms=mean,
        std_dev_ms=std_dev,
        sample_count=int(filtered.size),
        outlier_count=outlier_count,
        estimated_precision_ms=precision
    )


def analyze_samples(samples: Sequence[CalibrationSample], outlier_sigma: float = 3.0) -> CalibrationResult:
    """Analyze collected samples; see analyze_delays for the statistics."""
    return analyze_delays([s.delay_ms for s in samples], outlier_sigma=outlier_sigma)
