"""
MicroTempo Data Loggers

Asynchronous CSV loggers for calibration data.
"""

from .sample_logger import CalibrationSampleLogger, read_samples_csv

__all__ = [
    'CalibrationSampleLogger',
    'read_samples_csv'
]
