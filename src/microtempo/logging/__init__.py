"""
MicroTempo Logging

Logging setup and debug tracing utilities.
"""

import logging
from typing import Optional

from .debug_logger import (
    enable_debug,
    disable_debug,
    is_debug_enabled,
    debug_log_call,
    debug_log_section,
    debug_log_variable,
    debug_log_metrics,
    DebugTimer,
    format_value,
)

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", fmt: str = DEFAULT_FORMAT, log_file: Optional[str] = None) -> None:
    """Configure the root logger for command-line use."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        handlers=handlers,
        force=True
    )


__all__ = [
    'setup_logging',
    'enable_debug',
    'disable_debug',
    'is_debug_enabled',
    'debug_log_call',
    'debug_log_section',
    'debug_log_variable',
    'debug_log_metrics',
    'DebugTimer',
    'format_value',
]
