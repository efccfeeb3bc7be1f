"""
Flash scheduler: drives the on-screen flash and reports each emission.
"""

import threading
import time
import logging
from typing import Callable, Optional

from .params import CalibrationParams

logger = logging.getLogger(__name__)


class FlashScheduler:
    """
    Toggles the flash on a fixed period on its own thread.

    The emission timestamp is recorded *before* the visual toggle is applied.
    Recording is a non-blocking hand-off, so a slow consumer never delays the
    flash timing.
    """

    def __init__(self, params: CalibrationParams,
                 record_flash: Callable[[int], None],
                 on_toggle: Callable[[bool], None],
                 monotonic_ns: Callable[[], int] = time.monotonic_ns):
        self.params = params
        self.record_flash = record_flash
        self.on_toggle = on_toggle
        self._monotonic_ns = monotonic_ns

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.flash_count = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self.flash_count = 0
        self._thread = threading.Thread(target=self._loop, name="microtempo-flash", daemon=True)
        self._thread.start()
        logger.info(f"[FLASH] Started: {self.params.flash_duration_ms}ms every {self.params.flash_period_ms}ms")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info(f"[FLASH] Stopped after {self.flash_count} flashes")

    def _loop(self) -> None:
        on_seconds = self.params.flash_duration_ms / 1000.0
        off_seconds = max(self.params.flash_period_ms - self.params.flash_duration_ms, 0) / 1000.0

        try:
            while not self._stop_event.is_set():
                self.record_flash(self._monotonic_ns())
                self.on_toggle(True)
                self.flash_count += 1
                if self._stop_event.wait(on_seconds):
                    break
                self.on_toggle(False)
                if self._stop_event.wait(off_seconds):
                    break
        finally:
            # Always leave the screen dark
            self.on_toggle(False)
