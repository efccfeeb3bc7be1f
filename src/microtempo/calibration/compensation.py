"""
Display latency compensation store.

Holds the persisted (delay, precision, calibrated-at) triple and produces
the compensated timestamp the rendering layer displays:

    compensated = PreciseClock.now() + delay

The triple lives in one immutable CompensationState that is swapped by a
single assignment, and it is persisted as one JSON document replaced
atomically, so neither in-memory readers nor a restarted process can see a
mix of old and new fields.
"""

import json
import math
import os
import tempfile
import threading
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .analyzer import CalibrationResult
from ..timing.precise_clock import PreciseClock, PreciseTime

logger = logging.getLogger(__name__)

DEFAULT_DELAY_NANOS = 35_000_000   # typical device before any estimate
MIN_DELAY_NANOS = 0
MAX_DELAY_NANOS = 100_000_000      # cap to prevent over-correction
UNKNOWN_PRECISION_MS = -1.0        # manual override, precision not measured
DEFAULT_REFRESH_RATE_HZ = 60.0


@dataclass(frozen=True)
class CompensationState:
    delay_nanos: int
    precision_ms: float
    calibrated_at_epoch_millis: Optional[int] = None

    @property
    def is_calibrated(self) -> bool:
        return bool(self.calibrated_at_epoch_millis)

    def to_dict(self) -> dict:
        return {
            "delay_nanos": int(self.delay_nanos),
            "precision_ms": float(self.precision_ms),
            "calibrated_at_epoch_millis": int(self.calibrated_at_epoch_millis or 0),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompensationState":
        calibrated_at = int(data.get("calibrated_at_epoch_millis", 0) or 0)
        return cls(
            delay_nanos=clamp_delay_nanos(int(data.get("delay_nanos", DEFAULT_DELAY_NANOS))),
            precision_ms=float(data.get("precision_ms", 0.0)),
            calibrated_at_epoch_millis=calibrated_at or None,
        )


def clamp_delay_nanos(delay_nanos: int) -> int:
    return max(MIN_DELAY_NANOS, min(MAX_DELAY_NANOS, delay_nanos))


def delay_ms_to_nanos(delay_ms: float) -> int:
    """Milliseconds to clamped nanoseconds (truncating toward zero)."""
    if not math.isfinite(delay_ms):
        raise ValueError(f"Delay must be finite, got {delay_ms}")
    return clamp_delay_nanos(int(delay_ms * 1_000_000))


def heuristic_delay_nanos(refresh_rate_hz: float) -> int:
    """Two frames at the display refresh rate plus ~10ms for GPU/composition."""
    if not refresh_rate_hz or refresh_rate_hz <= 0 or not math.isfinite(refresh_rate_hz):
        return DEFAULT_DELAY_NANOS
    frame_time_ms = 1000.0 / refresh_rate_hz
    return delay_ms_to_nanos(frame_time_ms * 2 + 10.0)


class CompensationBackend(ABC):
    """Persistence for the compensation triple."""

    @abstractmethod
    def load(self) -> Optional[CompensationState]:
        """Stored state, or None if nothing (valid) is stored."""

    @abstractmethod
    def save(self, state: CompensationState) -> None:
        """Persist all three fields in one write."""

    @abstractmethod
    def clear(self) -> None:
        """Remove stored state."""


class MemoryBackend(CompensationBackend):
    """Process-local backend; nothing survives a restart."""

    def __init__(self, initial: Optional[CompensationState] = None):
        self._data = initial.to_dict() if initial is not None else None

    def load(self) -> Optional[CompensationState]:
        return CompensationState.from_dict(self._data) if self._data is not None else None

    def save(self, state: CompensationState) -> None:
        self._data = state.to_dict()

    def clear(self) -> None:
        self._data = None


class JsonFileBackend(CompensationBackend):
    """JSON file written via temp file + os.replace."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[CompensationState]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return CompensationState.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[COMPENSATION] Ignoring unreadable state file {self.path}: {e}")
            return None

    def save(self, state: CompensationState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".compensation-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(state.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def _wall_clock_millis() -> int:
    return time.time_ns() // 1_000_000


class CompensationStore:
    """
    Owner of the display delay. The calibration analyzer only produces
    results; this store decides what is kept and persisted.
    """

    def __init__(self, clock: PreciseClock,
                 backend: Optional[CompensationBackend] = None,
                 refresh_rate_provider: Optional[Callable[[], float]] = None,
                 default_refresh_rate_hz: float = DEFAULT_REFRESH_RATE_HZ,
                 wall_clock_ms: Callable[[], int] = _wall_clock_millis):
        self.clock = clock
        self.backend = backend or MemoryBackend()
        self.refresh_rate_provider = refresh_rate_provider
        self.default_refresh_rate_hz = default_refresh_rate_hz
        self._wall_clock_ms = wall_clock_ms
        self._write_lock = threading.Lock()

        stored = self.backend.load()
        if stored is not None and stored.is_calibrated:
            self._state = stored
            logger.info(f"[COMPENSATION] Loaded calibrated delay {stored.delay_nanos / 1e6:.2f}ms")
        else:
            self._state = self._heuristic_state()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> CompensationState:
        return self._state

    @property
    def delay_nanos(self) -> int:
        return self._state.delay_nanos

    @property
    def delay_ms(self) -> float:
        return self._state.delay_nanos / 1_000_000.0

    @property
    def precision_ms(self) -> float:
        return self._state.precision_ms

    @property
    def precision_known(self) -> bool:
        return self._state.precision_ms != UNKNOWN_PRECISION_MS

    @property
    def is_calibrated(self) -> bool:
        return self._state.is_calibrated

    def compensated_now(self) -> Optional[PreciseTime]:
        """True time plus display delay, or None if the clock is not synced."""
        raw = self.clock.now_or_none()
        if raw is None:
            return None
        return raw.plus_nanos(self._state.delay_nanos)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def accept(self, result: CalibrationResult) -> CompensationState:
        """Store a calibration result's median delay (clamped to 0-100ms)."""
        state = CompensationState(
            delay_nanos=delay_ms_to_nanos(result.median_delay_ms),
            precision_ms=result.estimated_precision_ms,
            calibrated_at_epoch_millis=self._wall_clock_ms()
        )
        self._commit(state)
        logger.info(f"[COMPENSATION] Calibrated delay {state.delay_nanos / 1e6:.3f}ms "
                    f"(measured {result.median_delay_ms:.3f}ms, "
                    f"precision {result.estimated_precision_ms:.3f}ms)")
        return state

    def set_manual(self, delay_ms: float) -> CompensationState:
        """Manual override; precision is marked unknown."""
        state = CompensationState(
            delay_nanos=delay_ms_to_nanos(delay_ms),
            precision_ms=UNKNOWN_PRECISION_MS,
            calibrated_at_epoch_millis=self._wall_clock_ms()
        )
        self._commit(state)
        logger.info(f"[COMPENSATION] Manual delay {state.delay_nanos / 1e6:.3f}ms")
        return state

    def reset(self) -> CompensationState:
        """Forget the calibration and fall back to the refresh-rate heuristic."""
        with self._write_lock:
            self.backend.clear()
            self._state = self._heuristic_state()
        logger.info(f"[COMPENSATION] Reset to heuristic delay {self._state.delay_nanos / 1e6:.2f}ms")
        return self._state

    def _commit(self, state: CompensationState) -> None:
        with self._write_lock:
            self._state = state
            self.backend.save(state)

    def _heuristic_state(self) -> CompensationState:
        refresh_hz = self.default_refresh_rate_hz
        if self.refresh_rate_provider is not None:
            try:
                refresh_hz = float(self.refresh_rate_provider())
            except Exception as e:
                logger.warning(f"[COMPENSATION] Refresh rate unavailable ({e}), "
                               f"assuming {self.default_refresh_rate_hz}Hz")
        return CompensationState(
            delay_nanos=heuristic_delay_nanos(refresh_hz),
            precision_ms=0.0,
            calibrated_at_epoch_millis=None
        )
