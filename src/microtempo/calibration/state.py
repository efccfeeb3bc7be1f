"""
Calibration run states.

Each variant is a small frozen dataclass; consumers dispatch with
isinstance() over the ``CalibrationState`` union.
"""

from dataclasses import dataclass
from typing import Union

from .analyzer import CalibrationResult


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Initializing:
    pass


@dataclass(frozen=True)
class Recording:
    progress: float
    samples_collected: int


@dataclass(frozen=True)
class Analyzing:
    progress: float


@dataclass(frozen=True)
class Completed:
    result: CalibrationResult


@dataclass(frozen=True)
class Error:
    message: str


CalibrationState = Union[Idle, Initializing, Recording, Analyzing, Completed, Error]

TERMINAL_STATES = (Completed, Error)


def is_terminal(state: CalibrationState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def describe(state: CalibrationState) -> str:
    """Short human readable status line."""
    if isinstance(state, Idle):
        return "idle"
    if isinstance(state, Initializing):
        return "initializing camera"
    if isinstance(state, Recording):
        return f"recording {state.progress * 100:.0f}% ({state.samples_collected} samples)"
    if isinstance(state, Analyzing):
        return f"analyzing {state.progress * 100:.0f}%"
    if isinstance(state, Completed):
        return f"completed: {state.result.median_delay_ms:.2f}ms"
    if isinstance(state, Error):
        return f"error: {state.message}"
    raise TypeError(f"Unknown calibration state: {state!r}")
