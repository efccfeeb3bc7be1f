"""
Call tracing for sync bursts and calibration analysis.

Tracing is off unless MICROTEMPO_DEBUG=true is set in the environment or
enable_debug() is called. When off, traced functions run with a single
flag check of overhead.
"""

import dataclasses
import functools
import logging
import os
import time
from typing import Any, Callable, Dict

import numpy as np

DEBUG_ENABLED = os.environ.get('MICROTEMPO_DEBUG', 'false').lower() == 'true'

logger = logging.getLogger('microtempo.debug')
logger.setLevel(logging.DEBUG if DEBUG_ENABLED else logging.INFO)

# Sequences longer than this are summarised
SUMMARY_THRESHOLD = 10


def _set_debug(enabled: bool) -> None:
    global DEBUG_ENABLED
    DEBUG_ENABLED = enabled
    logger.setLevel(logging.DEBUG if enabled else logging.INFO)
    logger.info(f"[TRACE] Debug tracing {'enabled' if enabled else 'disabled'}")


def enable_debug():
    """Turn call tracing on for the whole process."""
    _set_debug(True)


def disable_debug():
    _set_debug(False)


def is_debug_enabled() -> bool:
    return DEBUG_ENABLED


def format_value(value: Any, max_len: int = 100) -> str:
    """
    Short printable form of a traced value.

    numpy arrays report shape and range, long sequences report length and
    endpoints, and dataclasses (SyncSample, CalibrationResult, ...) print
    their fields.
    """
    if isinstance(value, np.ndarray):
        if value.size == 0:
            return f"array([], dtype={value.dtype})"
        if value.size <= SUMMARY_THRESHOLD:
            return f"array({value.tolist()}, shape={value.shape}, dtype={value.dtype})"
        return (f"array(shape={value.shape}, dtype={value.dtype}, "
                f"min={value.min():.4f}, max={value.max():.4f}, mean={value.mean():.4f})")

    if isinstance(value, (list, tuple)) and len(value) > SUMMARY_THRESHOLD:
        return f"{type(value).__name__}(len={len(value)}, first={value[0]}, last={value[-1]})"

    if isinstance(value, dict) and len(value) > 5:
        return f"dict(keys={list(value.keys())}, len={len(value)})"

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = ", ".join(f"{f.name}={getattr(value, f.name)}" for f in dataclasses.fields(value))
        text = f"{type(value).__name__}({fields})"
    else:
        text = str(value)

    return text if len(text) <= max_len else text[:max_len] + "..."


def _describe_call(args: tuple, kwargs: Dict[str, Any]) -> str:
    parts = [format_value(a) for a in args]
    parts += [f"{k}={format_value(v)}" for k, v in kwargs.items()]
    return ", ".join(parts)


def debug_log_call(func: Callable) -> Callable:
    """
    Trace calls to ``func``: arguments on entry, result (or exception) and
    elapsed milliseconds on exit.
    """
    name = func.__qualname__

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if not DEBUG_ENABLED:
            return func(*args, **kwargs)

        logger.debug(f"[TRACE] -> {name}({_describe_call(args, kwargs)})")
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            logger.debug(f"[TRACE] x {name} raised {type(e).__name__}: {e} after {elapsed_ms:.3f}ms")
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.debug(f"[TRACE] <- {name} = {format_value(result)} in {elapsed_ms:.3f}ms")
        return result

    return wrapper


def debug_log_section(section_name: str):
    if DEBUG_ENABLED:
        logger.debug(f"[TRACE] ---- {section_name} ----")


def debug_log_variable(name: str, value: Any):
    if DEBUG_ENABLED:
        logger.debug(f"[TRACE]   {name} = {format_value(value)}")


def debug_log_metrics(metrics: dict):
    """One line per metric, floats with 6 significant digits."""
    if not DEBUG_ENABLED:
        return
    for key, value in metrics.items():
        shown = f"{value:.6g}" if isinstance(value, float) else format_value(value)
        logger.debug(f"[TRACE]   {key}: {shown}")


class DebugTimer:
    """
    Times a block; ``elapsed`` (seconds) is set on exit whether or not
    tracing is on.

        with DebugTimer("Outlier rejection"):
            ...
    """

    def __init__(self, label: str):
        self.label = label
        self.elapsed = 0.0
        self._started = 0.0

    def __enter__(self) -> "DebugTimer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed = time.perf_counter() - self._started
        if DEBUG_ENABLED:
            outcome = "done" if exc_type is None else f"failed ({exc_type.__name__})"
            logger.debug(f"[TRACE] {self.label} {outcome} in {self.elapsed * 1000.0:.3f}ms")
