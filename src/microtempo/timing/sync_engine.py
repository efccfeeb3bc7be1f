#!/usr/bin/env python3
"""
MicroTempo SNTP Sync Engine

Burst SNTP exchange against a single server. Each burst sends up to N
requests over one UDP socket, keeps the sample with the lowest round-trip
time, and commits its offset to the shared OffsetRegister.

Offsets are expressed against the local *monotonic* clock, so
``monotonic_ns() + offset_nanos`` is true Unix time in nanoseconds.
"""

import os
import socket
import statistics
import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from . import ntp_codec
from .precise_clock import OffsetRegister
from ..logging.debug_logger import debug_log_call, debug_log_variable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NtpServer:
    """NTP server endpoint with a display name"""
    host: str
    name: str
    port: int = ntp_codec.NTP_PORT


DEFAULT_SERVERS = [
    NtpServer("time.cloudflare.com", "Cloudflare"),
    NtpServer("time.google.com", "Google"),
]


@dataclass
class NTPConfig:
    """Sync engine configuration"""
    servers: List[NtpServer] = field(default_factory=lambda: list(DEFAULT_SERVERS))
    timeout_seconds: float = 3.0
    burst_samples: int = 5
    burst_delay_ms: int = 50


@dataclass(frozen=True)
class SyncSample:
    """One request/response exchange; all times in nanoseconds"""
    t1: int           # local monotonic, just before send
    t3: int           # server transmit time, Unix epoch
    t4: int           # local monotonic, just after receive
    rtt_nanos: int
    offset_nanos: int

    @classmethod
    def from_timestamps(cls, t1: int, t3: int, t4: int) -> "SyncSample":
        rtt = t4 - t1
        # Symmetric path: true time at T4 is T3 plus half the round trip
        true_time_at_t4 = t3 + rtt // 2
        return cls(t1=t1, t3=t3, t4=t4, rtt_nanos=rtt, offset_nanos=true_time_at_t4 - t4)


@dataclass(frozen=True)
class SyncResult:
    """Best sample of a successful burst"""
    offset_nanos: int
    rtt_nanos: int
    server: NtpServer
    timestamp: int        # wall clock, Unix millis, when the burst finished
    samples_used: int = 1  # 1-based attempt index of the kept sample

    @property
    def offset_ms(self) -> float:
        return self.offset_nanos / 1_000_000.0

    @property
    def rtt_ms(self) -> float:
        return self.rtt_nanos / 1_000_000.0

    def to_log_string(self, burst_samples: int = 5) -> str:
        sign = "+" if self.offset_ms >= 0 else ""
        return (f"{self.server.name}: {sign}{self.offset_ms:.2f}ms "
                f"RTT:{self.rtt_ms:.1f}ms ({self.samples_used}/{burst_samples})")


def _wall_clock_millis() -> int:
    return time.time_ns() // 1_000_000


class SyncEngine:
    """
    Burst-of-N, keep-best-RTT SNTP client.

    The engine is the only writer of its OffsetRegister. Concurrent sync()
    calls are serialized; readers of the register are never blocked.
    """

    def __init__(self, config: NTPConfig, register: OffsetRegister,
                 monotonic_ns: Callable[[], int] = time.monotonic_ns,
                 wall_clock_ms: Callable[[], int] = _wall_clock_millis,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.register = register
        self._monotonic_ns = monotonic_ns
        self._wall_clock_ms = wall_clock_ms
        self._sleep = sleep
        self._sync_lock = threading.Lock()
        self.last_burst: List[SyncSample] = []

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self.register.last_result

    @debug_log_call
    def sync(self, server: Optional[NtpServer] = None, wait: bool = True) -> Optional[SyncResult]:
        """
        Run one burst against ``server`` and commit the best sample.

        Args:
            server: Server to query (defaults to the first configured server)
            wait: If False and another sync is in flight, return None at once

        Returns:
            SyncResult on success, None if every attempt failed (or skipped).
            On failure the previously committed offset is left untouched.
        """
        server = server or self.config.servers[0]

        if not self._sync_lock.acquire(blocking=wait):
            logger.debug(f"[SYNC] Sync already in flight, skipping {server.name}")
            return None

        try:
            samples = self._run_burst(server)
            self.last_burst = samples

            best_index = None
            for i, sample in enumerate(samples):
                if sample is None:
                    continue
                # Strict comparison keeps the first sample on RTT ties
                if best_index is None or sample.rtt_nanos < samples[best_index].rtt_nanos:
                    best_index = i

            if best_index is None:
                logger.error(f"[SYNC] All {self.config.burst_samples} attempts to {server.host} failed")
                return None

            best = samples[best_index]
            debug_log_variable("burst_rtts_ms", [s.rtt_nanos / 1e6 if s is not None else None for s in samples])
            result = SyncResult(
                offset_nanos=best.offset_nanos,
                rtt_nanos=best.rtt_nanos,
                server=server,
                timestamp=self._wall_clock_ms(),
                samples_used=best_index + 1
            )
            self.register.commit(result.offset_nanos, result)

            logger.info(f"[SYNC] {result.to_log_string(self.config.burst_samples)}")
            return result
        finally:
            self._sync_lock.release()

    def _run_burst(self, server: NtpServer) -> List[Optional[SyncSample]]:
        """One socket, N attempts. Failed attempts are recorded as None."""
        samples: List[Optional[SyncSample]] = []

        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            logger.error(f"[SYNC] Could not open UDP socket: {e}")
            return samples

        try:
            sock.settimeout(self.config.timeout_seconds)
            for attempt in range(self.config.burst_samples):
                samples.append(self._exchange(sock, server, attempt))

                # Pause between packets to avoid bursty congestion
                if attempt < self.config.burst_samples - 1:
                    self._sleep(self.config.burst_delay_ms / 1000.0)
        finally:
            sock.close()

        return samples

    def _exchange(self, sock, server: NtpServer, attempt: int) -> Optional[SyncSample]:
        request = ntp_codec.create_request(os.urandom(8))
        try:
            t1 = self._monotonic_ns()
            sock.sendto(request, (server.host, server.port))
            response, t4 = self._receive_reply(sock, server, request, t1)

            t3 = ntp_codec.parse_transmit_timestamp(response)
        except socket.timeout:
            logger.warning(f"[SYNC] Attempt {attempt + 1}: timeout from {server.host}")
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"[SYNC] Attempt {attempt + 1}: {server.host} failed: {e}")
            return None

        sample = SyncSample.from_timestamps(t1, t3, t4)
        logger.debug(f"[SYNC] Attempt {attempt + 1}: offset={sample.offset_nanos / 1e6:.3f}ms, "
                     f"rtt={sample.rtt_nanos / 1e6:.3f}ms")
        return sample

    def _receive_reply(self, sock, server: NtpServer, request: bytes, t1: int):
        """
        Read until the reply to ``request`` arrives.

        A late reply to a timed-out attempt is still queued on the shared
        socket; it carries an older originate timestamp and is discarded.
        """
        timeout_nanos = int(self.config.timeout_seconds * 1e9)
        while True:
            response, _ = sock.recvfrom(1024)
            t4 = self._monotonic_ns()
            if ntp_codec.originate_matches(response, request):
                return response, t4
            logger.debug(f"[SYNC] Discarding stale reply from {server.host}")
            if t4 - t1 >= timeout_nanos:
                raise socket.timeout("no matching reply before timeout")

    def get_burst_statistics(self) -> dict:
        """Statistics on the most recent burst"""
        good = [s for s in self.last_burst if s is not None]
        if not good:
            return {"status": "no_samples", "attempts": len(self.last_burst)}

        rtts_ms = [s.rtt_nanos / 1e6 for s in good]
        offsets_ms = [s.offset_nanos / 1e6 for s in good]
        return {
            "status": "active",
            "attempts": len(self.last_burst),
            "successful": len(good),
            "rtt_ms": {
                "min": min(rtts_ms),
                "median": statistics.median(rtts_ms),
                "max": max(rtts_ms)
            },
            "offset_ms": {
                "mean": statistics.mean(offsets_ms),
                "stdev": statistics.stdev(offsets_ms) if len(offsets_ms) > 1 else 0.0,
                "range": max(offsets_ms) - min(offsets_ms)
            }
        }
