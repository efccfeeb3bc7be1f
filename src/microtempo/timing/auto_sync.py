"""
Periodic re-sync to compensate for local oscillator drift.
"""

import threading
import logging
from typing import Callable, Optional

from .sync_engine import NtpServer, SyncEngine, SyncResult

logger = logging.getLogger(__name__)


class AutoSyncScheduler:
    """
    Background thread that re-runs SyncEngine.sync() on a fixed interval.

    A tick is skipped when a sync is already in flight, so slow bursts never
    pile up behind each other.
    """

    def __init__(self, engine: SyncEngine, interval_seconds: float = 60.0,
                 server_provider: Optional[Callable[[], NtpServer]] = None,
                 on_result: Optional[Callable[[Optional[SyncResult]], None]] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.server_provider = server_provider
        self.on_result = on_result

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("[AUTO_SYNC] Scheduler already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="microtempo-auto-sync", daemon=True)
        self._thread.start()
        logger.info(f"[AUTO_SYNC] Started, interval={self.interval_seconds}s")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"[AUTO_SYNC] Worker did not exit within {timeout}s")
            self._thread = None
        logger.info("[AUTO_SYNC] Stopped")

    def tick(self) -> Optional[SyncResult]:
        """Run one scheduled sync unless another one is in flight."""
        self.ticks += 1
        if self.engine.is_syncing:
            self.skipped += 1
            logger.debug("[AUTO_SYNC] Previous sync still running, skipping tick")
            return None

        server = self.server_provider() if self.server_provider else None
        result = self.engine.sync(server, wait=False)
        if self.on_result:
            self.on_result(result)
        return result

    def _loop(self) -> None:
        # Event.wait doubles as an interruptible sleep
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"[AUTO_SYNC] Tick failed: {e}")
