"""
Camera capture seam.

The calibration algorithm only needs two callbacks per frame: the capture
timestamp (same monotonic clock as the flash timestamps) and a brightness
scalar. Platform capture code implements FrameSource; ReplayFrameSource
replays a recorded sequence on its own worker thread.
"""

import threading
import time
import logging
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

FrameCallback = Callable[[float], None]
TimestampCallback = Callable[[int], None]

# Every 16th luma byte is enough for a whole-frame brightness estimate
LUMA_STRIDE = 16


def luma_brightness(plane: Union[bytes, bytearray, memoryview, np.ndarray], step: int = LUMA_STRIDE) -> float:
    """
    Mean brightness in [0, 1] of a strided subsample of an 8-bit luma plane.
    """
    data = np.frombuffer(plane, dtype=np.uint8) if not isinstance(plane, np.ndarray) else plane.ravel()
    sampled = data[::step]
    if sampled.size == 0:
        return 0.0
    return float(sampled.astype(np.float64).sum() / (sampled.size * 255.0))


class FrameSource(ABC):
    """
    Capability interface for a frame-producing camera pipeline.

    For each frame, implementations call ``on_timestamp`` with the capture
    timestamp and then ``on_frame`` with the frame brightness.
    """

    @abstractmethod
    def start_capture(self, on_frame: FrameCallback, on_timestamp: TimestampCallback) -> None:
        """Begin delivering frames. May raise if the camera cannot be opened."""

    @abstractmethod
    def stop(self, timeout: float = 2.0) -> None:
        """Stop delivering frames and release the worker within ``timeout``."""


Frame = Tuple[Union[float, bytes, np.ndarray], int]


class ReplayFrameSource(FrameSource):
    """
    Replays recorded ``(brightness_or_luma_plane, capture_timestamp_ns)``
    frames on a dedicated worker thread.
    """

    def __init__(self, frames: Iterable[Frame], frame_interval_seconds: float = 0.0):
        self.frames = list(frames)
        self.frame_interval_seconds = frame_interval_seconds
        self.frames_delivered = 0

        self._stop_event = threading.Event()
        self._done_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start_capture(self, on_frame: FrameCallback, on_timestamp: TimestampCallback) -> None:
        if self._thread is not None:
            raise RuntimeError("Replay already started")

        self._stop_event.clear()
        self._done_event.clear()
        self._thread = threading.Thread(
            target=self._replay, args=(on_frame, on_timestamp),
            name="microtempo-frame-replay", daemon=True
        )
        self._thread.start()
        logger.debug(f"Replaying {len(self.frames)} frames")

    def wait_until_done(self, timeout: Optional[float] = None) -> bool:
        return self._done_event.wait(timeout)

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Frame replay worker did not exit within {timeout}s")
            self._thread = None

    def _replay(self, on_frame: FrameCallback, on_timestamp: TimestampCallback) -> None:
        try:
            for frame, timestamp in self.frames:
                if self._stop_event.is_set():
                    break
                on_timestamp(int(timestamp))
                brightness = frame if isinstance(frame, (int, float)) else luma_brightness(frame)
                on_frame(float(brightness))
                self.frames_delivered += 1
                if self.frame_interval_seconds > 0:
                    time.sleep(self.frame_interval_seconds)
        except Exception as e:
            logger.error(f"Frame replay failed: {e}")
        finally:
            self._done_event.set()
