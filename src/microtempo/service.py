"""
MicroTempo service.

Composition root that wires the offset register, sync engine, precise clock,
compensation store and calibration sampler together. The rendering layer
talks only to this object: it reads compensated time, triggers syncs and
submits calibration results.

Each instance owns its own register, so several isolated services can
coexist (one per test, for example).
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, List, Optional, Union

from .calibration.analyzer import CalibrationResult
from .calibration.capture import FrameSource
from .calibration.compensation import CompensationBackend, CompensationStore, JsonFileBackend
from .calibration.flash import FlashScheduler
from .calibration.params import CalibrationParams
from .calibration.sampler import CalibrationSampler
from .calibration.state import CalibrationState, Completed, Idle, Initializing, Recording, is_terminal
from .config import MicroTempoConfig, load_config
from .loggers.sample_logger import CalibrationSampleLogger
from .timing.auto_sync import AutoSyncScheduler
from .timing.precise_clock import OffsetRegister, PreciseClock, PreciseTime
from .timing.sync_engine import NtpServer, SyncEngine, SyncResult

logger = logging.getLogger(__name__)

SYNC_LOG_LINES = 20
AUTO_PREFIX = "[auto] "


class MicroTempo:
    """True compensated time: synced clock plus measured display delay."""

    def __init__(self, config: Optional[MicroTempoConfig] = None,
                 backend: Optional[CompensationBackend] = None,
                 refresh_rate_provider: Optional[Callable[[], float]] = None,
                 monotonic_ns: Callable[[], int] = time.monotonic_ns,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or MicroTempoConfig()
        self._monotonic_ns = monotonic_ns

        if backend is None and self.config.compensation.state_path:
            backend = JsonFileBackend(self.config.compensation.state_path)

        self.register = OffsetRegister()
        self.engine = SyncEngine(self.config.ntp, self.register,
                                 monotonic_ns=monotonic_ns, sleep=sleep)
        self.clock = PreciseClock(self.register, monotonic_ns=monotonic_ns)
        self.store = CompensationStore(
            self.clock,
            backend=backend,
            refresh_rate_provider=refresh_rate_provider,
            default_refresh_rate_hz=self.config.compensation.refresh_rate_hz
        )

        self._servers: List[NtpServer] = list(self.config.ntp.servers)
        self._server_index = 0
        self._log_lock = threading.Lock()
        self._sync_log = deque(maxlen=SYNC_LOG_LINES)

        self.scheduler = AutoSyncScheduler(
            self.engine,
            interval_seconds=self.config.auto_sync.interval_seconds,
            server_provider=lambda: self.current_server,
            on_result=self._on_auto_result
        )

        self._sampler: Optional[CalibrationSampler] = None
        self._sample_logger: Optional[CalibrationSampleLogger] = None
        self._apply_result = False
        self._flash: Optional[FlashScheduler] = None
        self._apply_error: Optional[OSError] = None

    @classmethod
    def from_config(cls, config_path: Optional[str] = None, **kwargs) -> "MicroTempo":
        return cls(load_config(config_path), **kwargs)

    # ------------------------------------------------------------------
    # Time reads (rendering thread)
    # ------------------------------------------------------------------

    def compensated_now(self) -> Optional[PreciseTime]:
        return self.store.compensated_now()

    def now(self) -> PreciseTime:
        """Uncompensated true time. Raises ClockNotSyncedError before the first sync."""
        return self.clock.now()

    @property
    def is_synced(self) -> bool:
        return self.clock.is_synced()

    @property
    def last_sync(self) -> Optional[SyncResult]:
        return self.engine.last_result

    @property
    def syncing(self) -> bool:
        return self.engine.is_syncing

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    @property
    def servers(self) -> List[NtpServer]:
        return list(self._servers)

    @property
    def current_server(self) -> NtpServer:
        return self._servers[self._server_index]

    def select_server(self, server: NtpServer) -> None:
        if server not in self._servers:
            self._servers.append(server)
        self._server_index = self._servers.index(server)
        logger.info(f"[SYNC] Selected server {server.name} ({server.host})")

    def toggle_server(self) -> Optional[SyncResult]:
        """Switch to the next configured server and re-sync against it."""
        self._server_index = (self._server_index + 1) % len(self._servers)
        logger.info(f"[SYNC] Switched to {self.current_server.name}")
        return self.trigger_sync()

    def trigger_sync(self) -> Optional[SyncResult]:
        """Blocking burst sync; call it off the rendering thread."""
        server = self.current_server
        result = self.engine.sync(server)
        self._record_sync(server, result)
        return result

    @property
    def sync_log(self) -> List[str]:
        with self._log_lock:
            return list(self._sync_log)

    def _on_auto_result(self, result: Optional[SyncResult]) -> None:
        self._record_sync(self.current_server, result, prefix=AUTO_PREFIX)

    def _record_sync(self, server: NtpServer, result: Optional[SyncResult], prefix: str = "") -> None:
        if result is None:
            line = f"{prefix}Sync failed: {server.name}"
        else:
            line = prefix + result.to_log_string(self.config.ntp.burst_samples)
        with self._log_lock:
            self._sync_log.append(line)

    def start_auto_sync(self) -> None:
        self.scheduler.start()

    def stop_auto_sync(self) -> None:
        self.scheduler.stop()

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    def current_delay_ms(self) -> float:
        return self.store.delay_ms

    def is_calibrated(self) -> bool:
        return self.store.is_calibrated

    def submit_calibration_result(self, result: CalibrationResult) -> None:
        self.store.accept(result)

    def submit_manual_delay(self, delay_ms: float) -> None:
        self.store.set_manual(delay_ms)

    def reset_compensation(self) -> None:
        self.store.reset()

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    @property
    def calibration_state(self) -> CalibrationState:
        if self._sampler is None:
            return Idle()
        return self._sampler.state

    @property
    def sampler(self) -> Optional[CalibrationSampler]:
        return self._sampler

    def start_calibration(self, params: Union[CalibrationParams, float],
                          frame_source: Optional[FrameSource] = None,
                          on_state: Optional[Callable[[CalibrationState], None]] = None,
                          apply_result: bool = False,
                          on_flash_toggle: Optional[Callable[[bool], None]] = None) -> CalibrationSampler:
        """
        Start a calibration run.

        Args:
            params: Tier parameters, or the camera's max FPS to pick them from
            frame_source: Capture backend delivering (brightness, timestamp)
            on_state: Listener called on every state transition
            apply_result: Submit the result to the store when the run completes
            on_flash_toggle: If given, a FlashScheduler drives the flash through
                this callback and feeds emission timestamps to the sampler

        Returns:
            The sampler driving this run. Flash and frame events can also be
            pushed through on_flash_emitted() / on_camera_frame().
        """
        if self._sampler is not None and self._sampler.is_running:
            self._sampler.stop()

        if not isinstance(params, CalibrationParams):
            params = CalibrationParams.for_fps(params)

        cal = self.config.calibration
        sink = None
        if cal.sample_log_path:
            self._sample_logger = CalibrationSampleLogger(cal.sample_log_path)
            sink = self._sample_logger.log_sample

        sampler = CalibrationSampler(
            params,
            frame_source=frame_source,
            min_samples=cal.min_samples,
            flash_queue_size=cal.flash_queue_size,
            stop_join_timeout_seconds=cal.stop_join_timeout_seconds,
            stop_grace_seconds=cal.stop_grace_seconds,
            sample_sink=sink
        )
        sampler.add_listener(self._on_calibration_state)
        if on_state is not None:
            sampler.add_listener(on_state)
        self._apply_result = apply_result
        self._apply_error = None
        self._sampler = sampler

        sampler.start()
        if on_flash_toggle is not None and sampler.is_running:
            self._flash = FlashScheduler(params, sampler.on_flash_emitted, on_flash_toggle,
                                         monotonic_ns=self._monotonic_ns)
            self._flash.start()
        return sampler

    def on_flash_emitted(self, timestamp_nanos: int) -> None:
        if self._sampler is not None:
            self._sampler.on_flash_emitted(timestamp_nanos)

    def on_camera_frame(self, brightness: float, capture_timestamp_nanos: int) -> None:
        if self._sampler is not None:
            self._sampler.on_camera_frame(brightness, capture_timestamp_nanos)

    def stop_calibration(self) -> CalibrationState:
        """
        Stop the current run and return its final state.

        Raises:
            OSError: If the run was started with apply_result and persisting
                its result failed. The delay is still applied in memory.
        """
        if self._sampler is None:
            return Idle()
        state = self._sampler.stop()
        if self._apply_error is not None:
            error, self._apply_error = self._apply_error, None
            raise error
        return state

    def _on_calibration_state(self, state: CalibrationState) -> None:
        if self._flash is not None and not isinstance(state, (Initializing, Recording)):
            self._flash.stop()
            self._flash = None
        if not is_terminal(state):
            return
        if isinstance(state, Completed) and self._apply_result:
            try:
                self.store.accept(state.result)
            except OSError as e:
                # Runs on the sampler's thread; stop_calibration() re-raises it
                logger.error(f"[COMPENSATION] Could not persist calibration result: {e}")
                self._apply_error = e
        if self._sample_logger is not None:
            self._sample_logger.close()
            self._sample_logger = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start background services according to the configuration."""
        if self.config.auto_sync.enabled:
            self.start_auto_sync()

    def close(self) -> None:
        self.stop_auto_sync()
        if self._sampler is not None and self._sampler.is_running:
            self._sampler.stop()
        if self._sample_logger is not None:
            self._sample_logger.close()
            self._sample_logger = None

    def __enter__(self) -> "MicroTempo":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
