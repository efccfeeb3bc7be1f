#!/usr/bin/env python3
"""
Calibration Sample Logger

Asynchronously writes raw calibration samples to CSV so a run can be
re-analyzed offline (``microtempo analyze samples.csv``). Writing happens on
a background thread; the frame callback only does a non-blocking enqueue.

Usage:
    sample_log = CalibrationSampleLogger("samples.csv")
    sample_log.log_sample(sample)
    sample_log.close()
"""

import csv
import threading
import queue
import logging
from pathlib import Path
from typing import List

from ..calibration.analyzer import CalibrationSample

logger = logging.getLogger(__name__)

CSV_HEADER = ['flash_timestamp_ns', 'camera_timestamp_ns', 'brightness', 'delay_ms']


class CalibrationSampleLogger:
    """Background CSV writer for CalibrationSample rows."""

    def __init__(self, csv_path: str, enabled: bool = True, max_queue_size: int = 1000):
        """
        Args:
            csv_path: Path to CSV file for logging
            enabled: If False, logging is disabled (no overhead)
            max_queue_size: Maximum number of queued rows before dropping
        """
        self.enabled = enabled
        self.dropped = 0
        if not enabled:
            return

        self.csv_path = Path(csv_path)
        self.csv_path.parent.mkdir(parents=True, exist_ok=True)

        self.log_queue = queue.Queue(maxsize=max_queue_size)
        self.stop_event = threading.Event()

        self.log_thread = threading.Thread(target=self._logging_worker, name="microtempo-sample-log", daemon=True)
        self.log_thread.start()

        logger.info(f"Calibration sample logger started: {csv_path}")

    def _logging_worker(self):
        """Background thread that writes rows as they arrive"""
        try:
            with open(self.csv_path, 'w', newline='') as f:
                writer = csv.writer(f)
                writer.writerow(CSV_HEADER)
                f.flush()

                while not self.stop_event.is_set():
                    try:
                        row = self.log_queue.get(timeout=0.1)
                    except queue.Empty:
                        continue
                    writer.writerow(row)
                    f.flush()
                    self.log_queue.task_done()

                # Drain remaining queue
                while True:
                    try:
                        row = self.log_queue.get_nowait()
                    except queue.Empty:
                        break
                    writer.writerow(row)
                    self.log_queue.task_done()
                f.flush()

        except OSError as e:
            logger.error(f"Calibration sample logger error: {e}")

    def log_sample(self, sample: CalibrationSample) -> None:
        """Queue one sample (non-blocking; dropped if the queue is full)."""
        if not self.enabled:
            return

        row = [
            sample.flash_timestamp_nanos,
            sample.camera_timestamp_nanos,
            f"{sample.brightness:.4f}",
            f"{sample.delay_ms:.6f}",
        ]
        try:
            self.log_queue.put_nowait(row)
        except queue.Full:
            self.dropped += 1
            logger.warning("Calibration sample log queue full, dropping row")

    def close(self, timeout: float = 5.0):
        """Stop the logging thread and flush remaining rows"""
        if not self.enabled:
            return

        self.stop_event.set()
        if self.log_thread.is_alive():
            self.log_thread.join(timeout=timeout)

        logger.info("Calibration sample logger stopped")


def read_samples_csv(csv_path: str) -> List[CalibrationSample]:
    """Load samples written by CalibrationSampleLogger."""
    samples = []
    with open(csv_path, 'r', newline='') as f:
        reader = csv.DictReader(f)
        for row in reader:
            samples.append(CalibrationSample(
                flash_timestamp_nanos=int(row['flash_timestamp_ns']),
                camera_timestamp_nanos=int(row['camera_timestamp_ns']),
                brightness=float(row.get('brightness') or 0.0),
            ))
    return samples
