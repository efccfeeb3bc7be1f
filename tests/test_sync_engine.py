"""
Tests for the burst SNTP sync engine.

No test touches the network: socket.socket is patched and the monotonic
clock is scripted so every RTT and offset is exact.
"""

import socket
from unittest.mock import MagicMock, patch

import pytest

from microtempo.timing.ntp_codec import nanos_to_fraction
from microtempo.timing.precise_clock import OffsetRegister
from microtempo.timing.sync_engine import (
    DEFAULT_SERVERS,
    NTPConfig,
    NtpServer,
    SyncEngine,
    SyncResult,
    SyncSample,
)
from tests.conftest import BASE_UNIX_SECONDS, build_ntp_response, echo_request

MS = 1_000_000
SEC = 1_000_000_000


def scripted_burst(rtts_ms, first_t1=5 * SEC):
    """
    Monotonic readings (t1, t4 per attempt) and matching server replies.

    Server time runs 1ms per attempt faster than the local clock, so every
    attempt yields a distinct offset.
    """
    readings, replies, expected = [], [], []
    for i, rtt_ms in enumerate(rtts_ms):
        t1 = first_t1 + i * SEC
        t4 = t1 + rtt_ms * MS
        readings += [t1, t4]
        t3 = (BASE_UNIX_SECONDS + i) * SEC + i * MS
        replies.append((build_ntp_response(BASE_UNIX_SECONDS + i, nanos_to_fraction(i * MS)),
                        ("192.0.2.1", 123)))
        expected.append(SyncSample.from_timestamps(t1, t3, t4))
    return readings, replies, expected


@pytest.fixture
def engine_factory(synthetic_clock):
    def make(readings=(), register=None, **config_kwargs):
        register = register or OffsetRegister()
        engine = SyncEngine(
            NTPConfig(**config_kwargs),
            register,
            monotonic_ns=synthetic_clock(readings),
            wall_clock_ms=lambda: 1_700_000_000_000,
            sleep=MagicMock(),
        )
        return engine
    return make


class TestSyncSample:

    def test_offset_assumes_symmetric_path(self):
        sample = SyncSample.from_timestamps(t1=100 * MS, t3=5 * SEC, t4=110 * MS)
        assert sample.rtt_nanos == 10 * MS
        assert sample.offset_nanos == 5 * SEC + 5 * MS - 110 * MS

    def test_odd_rtt_halves_by_floor(self):
        sample = SyncSample.from_timestamps(t1=0, t3=1000, t4=3)
        assert sample.offset_nanos == 1000 + 1 - 3


class TestSyncResult:

    def test_log_string(self):
        result = SyncResult(offset_nanos=1_234_000, rtt_nanos=4_500_000,
                            server=DEFAULT_SERVERS[0], timestamp=0, samples_used=2)
        assert result.to_log_string() == "Cloudflare: +1.23ms RTT:4.5ms (2/5)"

    def test_negative_offset_has_no_plus(self):
        result = SyncResult(offset_nanos=-2_000_000, rtt_nanos=1_000_000,
                            server=DEFAULT_SERVERS[1], timestamp=0)
        assert result.to_log_string(3) == "Google: -2.00ms RTT:1.0ms (1/3)"


class TestBurstSelection:

    def test_keeps_first_lowest_rtt(self, engine_factory, mock_socket_factory):
        readings, replies, expected = scripted_burst([12, 3, 30, 3, 9])
        engine = engine_factory(readings)
        factory, sock = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            result = engine.sync()

        assert result is not None
        assert result.rtt_nanos == 3 * MS
        assert result.offset_nanos == expected[1].offset_nanos
        assert result.offset_nanos != expected[3].offset_nanos
        assert result.samples_used == 2
        assert result.server == DEFAULT_SERVERS[0]
        assert result.timestamp == 1_700_000_000_000

    def test_commits_to_register(self, engine_factory, mock_socket_factory):
        readings, replies, expected = scripted_burst([7, 5, 6, 8, 9])
        engine = engine_factory(readings)
        factory, _ = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            result = engine.sync()

        assert engine.register.offset_nanos == expected[1].offset_nanos
        assert engine.register.last_result is result
        assert engine.last_result is result

    def test_one_socket_per_burst(self, engine_factory, mock_socket_factory):
        readings, replies, _ = scripted_burst([5, 5, 5, 5, 5])
        engine = engine_factory(readings)
        factory, sock = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            engine.sync()

        factory.assert_called_once_with(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout.assert_called_once_with(3.0)
        assert sock.sendto.call_count == 5
        sock.close.assert_called_once()

        request, address = sock.sendto.call_args[0]
        assert request[0] == 0x1B and len(request) == 48
        assert address == ("time.cloudflare.com", 123)

    def test_pauses_between_attempts(self, engine_factory, mock_socket_factory):
        readings, replies, _ = scripted_burst([5, 5, 5, 5, 5])
        engine = engine_factory(readings)
        factory, _ = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            engine.sync()

        assert engine._sleep.call_count == 4
        engine._sleep.assert_called_with(0.05)

    def test_explicit_server(self, engine_factory, mock_socket_factory):
        readings, replies, _ = scripted_burst([5, 5, 5, 5, 5])
        engine = engine_factory(readings)
        factory, sock = mock_socket_factory(replies)
        server = NtpServer("ntp.example.org", "Example", 1123)

        with patch("socket.socket", factory):
            result = engine.sync(server)

        assert result.server == server
        assert sock.sendto.call_args[0][1] == ("ntp.example.org", 1123)

    def test_burst_statistics(self, engine_factory, mock_socket_factory):
        readings, replies, _ = scripted_burst([4, 2, 6])
        engine = engine_factory(readings, burst_samples=3)
        factory, _ = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            engine.sync()

        stats = engine.get_burst_statistics()
        assert stats["attempts"] == 3
        assert stats["successful"] == 3
        assert stats["rtt_ms"]["min"] == pytest.approx(2.0)


class TestFailures:

    def test_all_attempts_fail_keeps_prior_offset(self, engine_factory, mock_socket_factory):
        register = OffsetRegister()
        register.commit(123_456)
        engine = engine_factory(register=register)
        factory, sock = mock_socket_factory(socket.timeout("timed out"))

        with patch("socket.socket", factory):
            result = engine.sync()

        assert result is None
        assert register.offset_nanos == 123_456
        assert sock.recvfrom.call_count == 5
        sock.close.assert_called_once()

    def test_failed_attempts_are_skipped(self, engine_factory, mock_socket_factory):
        readings, replies, expected = scripted_burst([9, 9, 9, 4, 9])
        # Attempt 2 times out before t4 is read, attempt 3 gets a truncated packet
        readings = readings[:2] + [readings[2]] + readings[4:]
        replies[1] = socket.timeout("timed out")
        replies[2] = (b"\x00" * 12, ("192.0.2.1", 123))
        engine = engine_factory(readings)
        factory, _ = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            result = engine.sync()

        assert result is not None
        assert result.samples_used == 4
        assert result.rtt_nanos == 4 * MS

    def test_late_reply_to_earlier_attempt_is_discarded(self, engine_factory, mock_socket_factory):
        # Attempt 1 times out; its reply turns up 1ms into attempt 2
        readings = [5 * SEC, 6 * SEC, 6 * SEC + 1 * MS, 6 * SEC + 4 * MS]
        for i in range(2, 5):
            t1 = 5 * SEC + i * SEC
            readings += [t1, t1 + 9 * MS]
        engine = engine_factory(readings)
        actions = iter(["timeout", "late", "reply", "reply", "reply", "reply"])

        def recvfrom(*args):
            action = next(actions)
            if action == "timeout":
                raise socket.timeout("timed out")
            packet = build_ntp_response(BASE_UNIX_SECONDS)
            if action == "late":
                first_request = sock.sendto.call_args_list[0][0][0]
                return packet[:24] + first_request[40:48] + packet[32:], ("192.0.2.1", 123)
            return echo_request(sock, packet), ("192.0.2.1", 123)

        factory, sock = mock_socket_factory(recvfrom, echo=False)

        with patch("socket.socket", factory):
            result = engine.sync()

        assert sock.recvfrom.call_count == 6
        assert result.samples_used == 2
        assert result.rtt_nanos == 4 * MS
        assert result.offset_nanos == BASE_UNIX_SECONDS * SEC + 2 * MS - (6 * SEC + 4 * MS)

    def test_each_request_carries_its_own_nonce(self, engine_factory, mock_socket_factory):
        readings, replies, _ = scripted_burst([5, 5, 5, 5, 5])
        engine = engine_factory(readings)
        factory, sock = mock_socket_factory(replies)

        with patch("socket.socket", factory):
            engine.sync()

        nonces = {call[0][0][40:48] for call in sock.sendto.call_args_list}
        assert len(nonces) == 5

    def test_dns_failure(self, engine_factory, mock_socket_factory):
        engine = engine_factory()
        factory, sock = mock_socket_factory([])
        sock.sendto.side_effect = socket.gaierror("Name or service not known")

        with patch("socket.socket", factory):
            assert engine.sync() is None
        assert not engine.register.is_synced

    def test_socket_creation_failure(self, engine_factory):
        engine = engine_factory()
        with patch("socket.socket", side_effect=OSError("no sockets")):
            assert engine.sync() is None


class TestConcurrency:

    def test_non_waiting_sync_skips_when_busy(self, engine_factory):
        engine = engine_factory()
        engine._sync_lock.acquire()
        try:
            assert engine.is_syncing
            assert engine.sync(wait=False) is None
        finally:
            engine._sync_lock.release()
        assert not engine.is_syncing
