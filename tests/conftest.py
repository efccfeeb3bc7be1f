"""
Pytest configuration and shared fixtures for MicroTempo tests.
"""

import itertools
import struct
import sys
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
import yaml

# Run against the source tree without installing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from microtempo.timing.ntp_codec import NTP_EPOCH_OFFSET, NTP_PACKET_FORMAT  # noqa: E402
from microtempo.calibration.analyzer import CalibrationSample  # noqa: E402
from microtempo.calibration.params import CalibrationParams  # noqa: E402

# 2023-11-14T22:13:20Z
BASE_UNIX_SECONDS = 1_700_000_000


def build_ntp_response(unix_seconds: int, fraction: int = 0) -> bytes:
    """48-byte server response with the given transmit timestamp."""
    words = [0] * 12
    words[0] = (0 << 30) | (3 << 27) | (4 << 24) | (1 << 16)  # LI=0, VN=3, mode=server, stratum 1
    words[10] = unix_seconds + NTP_EPOCH_OFFSET
    words[11] = fraction
    return struct.pack(NTP_PACKET_FORMAT, *words)


@pytest.fixture
def mock_ntp_response():
    """Factory for synthetic NTP response packets."""
    return build_ntp_response


class SyntheticClock:
    """Monotonic clock that returns scripted readings, then keeps counting."""

    def __init__(self, readings=()):
        self._scripted = iter(readings)
        self._fallback = itertools.count(10_000_000_000, 1_000_000)
        self.calls = 0

    def __call__(self) -> int:
        self.calls += 1
        try:
            return next(self._scripted)
        except StopIteration:
            return next(self._fallback)


@pytest.fixture
def synthetic_clock():
    return SyntheticClock


def echo_request(sock, packet: bytes) -> bytes:
    """Copy the last request's transmit field into the reply's originate field."""
    request = sock.sendto.call_args[0][0]
    return packet[:24] + request[40:48] + packet[32:]


@pytest.fixture
def mock_socket_factory():
    """
    Returns (factory_mock, socket_mock) for patching socket.socket.

    Full-size replies echo the most recent request like a real server does,
    unless echo=False.
    """
    def make(recv_side_effect, echo=True):
        sock = MagicMock()
        factory = MagicMock(return_value=sock)
        if isinstance(recv_side_effect, BaseException) or not echo:
            sock.recvfrom.side_effect = recv_side_effect
            return factory, sock

        if callable(recv_side_effect):
            next_reply = recv_side_effect
        else:
            replies = iter(recv_side_effect)
            next_reply = lambda *args: next(replies)  # noqa: E731

        def recvfrom(*args):
            reply = next_reply(*args)
            if isinstance(reply, BaseException):
                raise reply
            packet, address = reply
            if len(packet) >= 48 and sock.sendto.call_args is not None:
                packet = echo_request(sock, packet)
            return packet, address

        sock.recvfrom.side_effect = recvfrom
        return factory, sock
    return make


@pytest.fixture
def fast_params():
    """Tiny calibration parameters for quick runs."""
    return CalibrationParams(
        flash_duration_ms=5,
        flash_period_ms=10,
        run_duration_seconds=0,
        target_sample_count=20,
        expected_precision_ms=0.5,
    )


@pytest.fixture
def sample_delays():
    """Realistic display delays: ~32ms with 0.3ms jitter and a few spikes."""
    rng = np.random.default_rng(42)
    delays = rng.normal(32.0, 0.3, 200)
    delays[[17, 88, 140]] = [55.0, 61.2, 4.0]
    return delays


@pytest.fixture
def sample_set(sample_delays):
    """CalibrationSamples built from sample_delays, one flash every 100ms."""
    samples = []
    for i, delay_ms in enumerate(sample_delays):
        flash = 1_000_000_000 + i * 100_000_000
        samples.append(CalibrationSample(
            flash_timestamp_nanos=flash,
            camera_timestamp_nanos=flash + int(round(delay_ms * 1_000_000)),
            brightness=0.9,
        ))
    return samples


@pytest.fixture
def temp_config_file(tmp_path):
    """Write a YAML config into tmp_path and return its path."""
    def write(config: dict) -> str:
        path = tmp_path / "microtempo.yaml"
        with open(path, "w") as f:
            yaml.dump(config, f)
        return str(path)
    return write


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests (may take several seconds)")
    config.addinivalue_line("markers", "network: Tests that require a real NTP server")
