"""
Tests for brightness reduction and the replay frame source.
"""

import threading

import numpy as np
import pytest

from microtempo.calibration.capture import LUMA_STRIDE, ReplayFrameSource, luma_brightness


class TestLumaBrightness:

    def test_black_and_white(self):
        assert luma_brightness(bytes(640)) == 0.0
        assert luma_brightness(b"\xff" * 640) == 1.0

    def test_strided_subsample(self):
        plane = np.zeros(64, dtype=np.uint8)
        plane[::LUMA_STRIDE] = 255
        # Only the sampled bytes are bright
        assert luma_brightness(plane) == 1.0
        assert luma_brightness(plane, step=1) == pytest.approx(0.0625)

    def test_two_dimensional_plane(self):
        plane = np.full((48, 64), 128, dtype=np.uint8)
        assert luma_brightness(plane) == pytest.approx(128 / 255)

    def test_empty_plane(self):
        assert luma_brightness(b"") == 0.0


class TestReplayFrameSource:

    def test_timestamp_delivered_before_brightness(self):
        events = []
        source = ReplayFrameSource([(0.1, 100), (0.9, 200), (b"\xff" * 32, 300)])
        source.start_capture(lambda b: events.append(("frame", b)),
                             lambda ts: events.append(("ts", ts)))
        assert source.wait_until_done(timeout=2.0)
        source.stop()

        assert events == [
            ("ts", 100), ("frame", 0.1),
            ("ts", 200), ("frame", 0.9),
            ("ts", 300), ("frame", 1.0),
        ]
        assert source.frames_delivered == 3

    def test_runs_on_worker_thread(self):
        threads = set()
        source = ReplayFrameSource([(0.5, 1)])
        source.start_capture(lambda b: threads.add(threading.current_thread().name), lambda ts: None)
        source.wait_until_done(timeout=2.0)
        source.stop()
        assert threads == {"microtempo-frame-replay"}

    def test_stop_interrupts_replay(self):
        frames = [(0.1, i) for i in range(1000)]
        source = ReplayFrameSource(frames, frame_interval_seconds=0.01)
        source.start_capture(lambda b: None, lambda ts: None)
        source.stop(timeout=1.0)
        assert source.frames_delivered < len(frames)

    def test_cannot_start_twice(self):
        source = ReplayFrameSource([(0.1, 1)], frame_interval_seconds=0.05)
        source.start_capture(lambda b: None, lambda ts: None)
        try:
            with pytest.raises(RuntimeError):
                source.start_capture(lambda b: None, lambda ts: None)
        finally:
            source.stop()
