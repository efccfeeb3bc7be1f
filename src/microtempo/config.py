"""
MicroTempo configuration loading.

YAML sections map onto small dataclasses; any missing key falls back to the
dataclass default, so partial files are fine.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .logging import DEFAULT_FORMAT
from .timing.ntp_codec import NTP_PORT
from .timing.sync_engine import NTPConfig, NtpServer

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "configs" / "default.yaml"


@dataclass
class AutoSyncConfig:
    enabled: bool = True
    interval_seconds: float = 60.0


@dataclass
class CalibrationConfig:
    min_samples: int = 10
    flash_queue_size: int = 256
    stop_join_timeout_seconds: float = 2.0
    stop_grace_seconds: float = 1.0
    sample_log_path: Optional[str] = None


@dataclass
class CompensationConfig:
    state_path: Optional[str] = None
    refresh_rate_hz: float = 60.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = DEFAULT_FORMAT
    file: Optional[str] = None


@dataclass
class MicroTempoConfig:
    ntp: NTPConfig = field(default_factory=NTPConfig)
    auto_sync: AutoSyncConfig = field(default_factory=AutoSyncConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    compensation: CompensationConfig = field(default_factory=CompensationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def _parse_ntp(section: Dict[str, Any]) -> NTPConfig:
    defaults = NTPConfig()
    port = int(section.get('port', NTP_PORT))

    servers = defaults.servers
    if 'servers' in section:
        servers = []
        for entry in section['servers'] or []:
            if isinstance(entry, str):
                servers.append(NtpServer(host=entry, name=entry, port=port))
            elif isinstance(entry, dict) and entry.get('host'):
                servers.append(NtpServer(host=entry['host'], name=entry.get('name', entry['host']),
                                         port=int(entry.get('port', port))))
            else:
                raise ConfigError(f"Invalid NTP server entry: {entry!r}")
    elif port != NTP_PORT:
        servers = [NtpServer(s.host, s.name, port) for s in servers]

    config = NTPConfig(
        servers=servers,
        timeout_seconds=float(section.get('timeout_seconds', defaults.timeout_seconds)),
        burst_samples=int(section.get('burst_samples', defaults.burst_samples)),
        burst_delay_ms=int(section.get('burst_delay_ms', defaults.burst_delay_ms)),
    )

    if not config.servers:
        raise ConfigError("At least one NTP server is required")
    if config.timeout_seconds <= 0:
        raise ConfigError(f"ntp.timeout_seconds must be positive, got {config.timeout_seconds}")
    if config.burst_samples < 1:
        raise ConfigError(f"ntp.burst_samples must be >= 1, got {config.burst_samples}")
    if config.burst_delay_ms < 0:
        raise ConfigError(f"ntp.burst_delay_ms must be >= 0, got {config.burst_delay_ms}")
    return config


def parse_config(raw: Optional[Dict[str, Any]]) -> MicroTempoConfig:
    """Build a MicroTempoConfig from an already-loaded mapping."""
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping")

    try:
        auto = _section(raw, 'auto_sync')
        cal = _section(raw, 'calibration')
        comp = _section(raw, 'compensation')
        log = _section(raw, 'logging')

        config = MicroTempoConfig(
            ntp=_parse_ntp(_section(raw, 'ntp')),
            auto_sync=AutoSyncConfig(
                enabled=bool(auto.get('enabled', True)),
                interval_seconds=float(auto.get('interval_seconds', 60.0)),
            ),
            calibration=CalibrationConfig(
                min_samples=int(cal.get('min_samples', 10)),
                flash_queue_size=int(cal.get('flash_queue_size', 256)),
                stop_join_timeout_seconds=float(cal.get('stop_join_timeout_seconds', 2.0)),
                stop_grace_seconds=float(cal.get('stop_grace_seconds', 1.0)),
                sample_log_path=cal.get('sample_log_path'),
            ),
            compensation=CompensationConfig(
                state_path=comp.get('state_path'),
                refresh_rate_hz=float(comp.get('refresh_rate_hz', 60.0)),
            ),
            logging=LoggingConfig(
                level=str(log.get('level', 'INFO')),
                format=str(log.get('format', DEFAULT_FORMAT)),
                file=log.get('file'),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    if config.auto_sync.interval_seconds <= 0:
        raise ConfigError("auto_sync.interval_seconds must be positive")
    if config.calibration.min_samples < 1:
        raise ConfigError("calibration.min_samples must be >= 1")
    if config.calibration.flash_queue_size < 1:
        raise ConfigError("calibration.flash_queue_size must be >= 1")
    return config


def load_config(config_path: Optional[str] = None) -> MicroTempoConfig:
    """Load configuration from a YAML file (packaged defaults if None)."""
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    try:
        with open(path, 'r') as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to load config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    logger.debug(f"Loaded config from {path}: sections={list((raw or {}).keys())}")
    return parse_config(raw)
