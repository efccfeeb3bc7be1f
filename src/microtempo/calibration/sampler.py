"""
Flash/frame correlation sampler.

Two producers feed the sampler from different threads:

* the flash scheduler calls ``on_flash_emitted`` just before the screen turns
  white; timestamps go into a bounded FIFO with non-blocking put/get,
* the camera worker calls ``on_capture_timestamp`` and then ``on_frame`` for
  every frame.

A dark-to-bright transition (brightness above the threshold after a frame
below half the threshold) dequeues the oldest flash timestamp. That flash is
paired with the capture timestamp of the *following* frame, which keeps the
camera exposure pipeline delay constant across samples.
"""

import queue
import threading
import logging
from typing import Callable, List, Optional

from .analyzer import CalibrationSample, analyze_samples
from .capture import FrameSource
from .params import CalibrationParams
from .state import (
    Analyzing, CalibrationState, Completed, Error, Idle, Initializing, Recording
)
from ..errors import CalibrationError, InsufficientSamplesError
from ..logging.debug_logger import DebugTimer, debug_log_section

logger = logging.getLogger(__name__)

MIN_SAMPLES = 10

StateListener = Callable[[CalibrationState], None]


class CalibrationSampler:
    """
    Collects CalibrationSamples for one run and analyzes them on stop.

    State machine: Idle -> Initializing -> Recording -> Analyzing ->
    Completed | Error. A terminal run can be restarted with start().
    """

    def __init__(self, params: CalibrationParams,
                 frame_source: Optional[FrameSource] = None,
                 min_samples: int = MIN_SAMPLES,
                 flash_queue_size: int = 256,
                 stop_join_timeout_seconds: float = 2.0,
                 stop_grace_seconds: float = 1.0,
                 auto_stop: bool = True,
                 sample_sink: Optional[Callable[[CalibrationSample], None]] = None):
        self.params = params
        self.frame_source = frame_source
        self.min_samples = min_samples
        self.stop_join_timeout_seconds = stop_join_timeout_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.auto_stop = auto_stop
        self.sample_sink = sample_sink

        self._flash_queue: "queue.Queue[int]" = queue.Queue(maxsize=flash_queue_size)
        self._lock = threading.Lock()
        self._stop_lock = threading.RLock()
        self._state_lock = threading.RLock()
        self._listeners: List[StateListener] = []
        self._timer: Optional[threading.Timer] = None

        self._state: CalibrationState = Idle()
        self._accepting = False
        self._samples: List[CalibrationSample] = []
        self._last_brightness = 0.0
        self._flash_detected = False
        self._pending_flash: Optional[int] = None

        self.dropped_flashes = 0
        self.unmatched_detections = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CalibrationState:
        return self._state

    @property
    def samples(self) -> List[CalibrationSample]:
        with self._lock:
            return list(self._samples)

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, (Initializing, Recording))

    def add_listener(self, listener: StateListener) -> None:
        """Listeners run on the publishing thread, in publication order."""
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: CalibrationState) -> None:
        with self._state_lock:
            self._state = state
            for listener in list(self._listeners):
                try:
                    listener(state)
                except Exception as e:
                    logger.error(f"[CALIBRATION] State listener failed: {e}")

    def _close_intake(self) -> None:
        # Progress updates check _accepting under the same lock, so none can
        # land after this returns
        with self._state_lock:
            self._accepting = False

    def _publish_progress(self, count: int) -> None:
        with self._state_lock:
            if self._accepting and isinstance(self._state, Recording):
                self._set_state(Recording(self._progress(count), count))

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    def start(self, frame_source: Optional[FrameSource] = None) -> None:
        """
        Reset collected data and start capturing frames.

        Without a frame source the sampler runs in push mode: the host feeds
        frames through on_camera_frame().
        """
        with self._stop_lock:
            if self.is_running:
                logger.warning("[CALIBRATION] Run already in progress")
                return

            if frame_source is not None:
                self.frame_source = frame_source

            self._reset()
            self._set_state(Initializing())

            self._accepting = True
            try:
                if self.frame_source is not None:
                    self.frame_source.start_capture(self.on_frame, self.on_capture_timestamp)
            except Exception as e:
                self._accepting = False
                logger.error(f"[CALIBRATION] Capture failed to start: {e}")
                self._set_state(Error(f"Failed to start calibration: {e}"))
                return

            # Frames may already have produced samples
            count = len(self._samples)
            if isinstance(self._state, Initializing):
                self._set_state(Recording(self._progress(count), count))

            if self.auto_stop:
                delay = self.params.run_duration_seconds + self.stop_grace_seconds
                self._timer = threading.Timer(delay, self.stop)
                self._timer.daemon = True
                self._timer.start()

            logger.info(f"[CALIBRATION] Recording for {self.params.run_duration_seconds}s, "
                        f"target {self.params.target_sample_count} samples")

    def stop(self) -> CalibrationState:
        """
        Stop capture, then analyze if enough samples were collected.

        Idempotent; a concurrent caller blocks until analysis has finished,
        so no partial result is ever published.
        """
        self._close_intake()
        with self._stop_lock:
            if not self.is_running:
                return self._state

            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            # A concurrent start() may have reopened intake
            self._close_intake()
            if self.frame_source is not None:
                try:
                    self.frame_source.stop(timeout=self.stop_join_timeout_seconds)
                except Exception as e:
                    logger.error(f"[CALIBRATION] Error stopping capture: {e}")

            samples = self.samples
            if len(samples) < self.min_samples:
                error = InsufficientSamplesError(len(samples), self.min_samples)
                logger.warning(f"[CALIBRATION] {error}")
                self._set_state(Error(str(error)))
                return self._state

            self._set_state(Analyzing(0.0))
            debug_log_section(f"Calibration analysis ({len(samples)} samples)")
            try:
                with DebugTimer("Outlier rejection"):
                    result = analyze_samples(samples, outlier_sigma=self.params.outlier_sigma)
            except CalibrationError as e:
                logger.warning(f"[CALIBRATION] Analysis failed: {e}")
                self._set_state(Error(str(e)))
                return self._state

            self._set_state(Analyzing(1.0))
            logger.info(f"[CALIBRATION] Completed: median={result.median_delay_ms:.3f}ms, "
                        f"std={result.std_dev_ms:.3f}ms, n={result.sample_count}, "
                        f"outliers={result.outlier_count}")
            self._set_state(Completed(result))
            return self._state

    def fail(self, message: str) -> None:
        """Abort the run with an error, e.g. when the camera disconnects."""
        self._close_intake()
        with self._stop_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._close_intake()
            self._set_state(Error(message))

    def _reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._last_brightness = 0.0
            self._flash_detected = False
            self._pending_flash = None
        while True:
            try:
                self._flash_queue.get_nowait()
            except queue.Empty:
                break
        self.dropped_flashes = 0
        self.unmatched_detections = 0

    def _progress(self, count: int) -> float:
        return min(count / self.params.target_sample_count, 1.0)

    # ------------------------------------------------------------------
    # Producer callbacks
    # ------------------------------------------------------------------

    def on_flash_emitted(self, timestamp_nanos: int) -> None:
        """Record a flash timestamp. Never blocks; drops when the queue is full."""
        if not self._accepting:
            return
        try:
            self._flash_queue.put_nowait(timestamp_nanos)
        except queue.Full:
            self.dropped_flashes += 1
            logger.debug("[CALIBRATION] Flash queue full, dropping timestamp")

    def on_capture_timestamp(self, timestamp_nanos: int) -> None:
        """Capture timestamp of a frame; completes a pending flash pairing."""
        if not self._accepting:
            return

        sample = None
        with self._lock:
            if self._pending_flash is not None and self._flash_detected:
                sample = CalibrationSample(
                    flash_timestamp_nanos=self._pending_flash,
                    camera_timestamp_nanos=timestamp_nanos,
                    brightness=self._last_brightness
                )
                self._samples.append(sample)
                self._pending_flash = None
                count = len(self._samples)

        if sample is not None:
            if self.sample_sink is not None:
                self.sample_sink(sample)
            self._publish_progress(count)

    def on_frame(self, brightness: float) -> None:
        """Brightness of a frame; detects dark-to-bright flash transitions."""
        if not self._accepting:
            return

        threshold = self.params.brightness_threshold
        with self._lock:
            is_bright = brightness > threshold
            was_dark = self._last_brightness < threshold * 0.5

            if is_bright and was_dark and not self._flash_detected:
                self._flash_detected = True
                try:
                    self._pending_flash = self._flash_queue.get_nowait()
                except queue.Empty:
                    self._pending_flash = None
                    self.unmatched_detections += 1
            elif not is_bright:
                self._flash_detected = False

            self._last_brightness = brightness

    def on_camera_frame(self, brightness: float, capture_timestamp_nanos: int) -> None:
        """Combined per-frame input: timestamp first, then brightness."""
        self.on_capture_timestamp(capture_timestamp_nanos)
        self.on_frame(brightness)
