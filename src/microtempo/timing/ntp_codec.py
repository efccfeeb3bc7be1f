#!/usr/bin/env python3
"""
MicroTempo NTP Timestamp Codec

Encodes and decodes the 64-bit NTP timestamp format and builds/parses the
48-byte SNTP packets used by the sync engine.

NTP timestamp (big-endian):
    [0-4]:  uint32  - Seconds since 1900-01-01 00:00:00
    [4-8]:  uint32  - Binary fraction of a second (2^32 steps per second)

SNTP packet (48 bytes, 12 big-endian 32-bit words):
    word 0:      LI | VN | Mode | Stratum | Poll | Precision
    words 1-5:   root delay, root dispersion, reference id, reference timestamp
    words 6-7:   originate timestamp  (byte offset 24, echo of the request)
    words 8-9:   receive timestamp
    words 10-11: transmit timestamp  (byte offsets 40 and 44)

Conversions use integer arithmetic only; Python ints never overflow, so the
fraction product needs no special widening.
"""

import struct
from typing import Tuple

NTP_PORT = 123
NTP_PACKET_SIZE = 48
NTP_PACKET_FORMAT = "!12I"

# Seconds between the NTP epoch (1900) and the Unix epoch (1970)
NTP_EPOCH_OFFSET = 2208988800

# LI=0, VN=3, Mode=3 (client) -> 00 011 011
CLIENT_MODE_V3 = 0x1B

ORIGINATE_OFFSET = 24
TRANSMIT_SECONDS_OFFSET = 40
TRANSMIT_FRACTION_OFFSET = 44

NANOS_PER_SECOND = 1_000_000_000
FRACTION_SCALE = 1 << 32


def fraction_to_nanos(fraction: int) -> int:
    """Convert a 32-bit NTP fraction to nanoseconds (truncating)."""
    return (fraction * NANOS_PER_SECOND) // FRACTION_SCALE


def nanos_to_fraction(nanos: int) -> int:
    """
    Convert a sub-second nanosecond count to a 32-bit NTP fraction.

    Rounds up so that ``fraction_to_nanos(nanos_to_fraction(n)) == n`` for
    every n in [0, 1e9).
    """
    return -((-nanos * FRACTION_SCALE) // NANOS_PER_SECOND)


def ntp_to_unix_nanos(seconds: int, fraction: int) -> int:
    """
    Convert an NTP (seconds, fraction) pair to signed nanoseconds since 1970.

    Args:
        seconds: Seconds since 1900 (unsigned 32-bit)
        fraction: Binary fraction of a second (unsigned 32-bit)

    Returns:
        Nanoseconds relative to the Unix epoch
    """
    return (seconds - NTP_EPOCH_OFFSET) * NANOS_PER_SECOND + fraction_to_nanos(fraction)


def unix_nanos_to_ntp(unix_nanos: int) -> Tuple[int, int]:
    """Inverse of ntp_to_unix_nanos: returns (seconds since 1900, fraction)."""
    whole, rest = divmod(unix_nanos, NANOS_PER_SECOND)
    return whole + NTP_EPOCH_OFFSET, nanos_to_fraction(rest)


def encode_timestamp(unix_nanos: int) -> bytes:
    """Pack a Unix-nanosecond time as an 8-byte NTP timestamp."""
    seconds, fraction = unix_nanos_to_ntp(unix_nanos)
    return struct.pack("!II", seconds & 0xFFFFFFFF, fraction)


def decode_timestamp(data: bytes, offset: int = 0) -> int:
    """Unpack an 8-byte NTP timestamp at ``offset`` into Unix nanoseconds."""
    seconds, fraction = struct.unpack_from("!II", data, offset)
    return ntp_to_unix_nanos(seconds, fraction)


def create_request(nonce: bytes = b"") -> bytes:
    """
    Create a 48-byte client request with the mode/version marker.

    ``nonce`` (up to 8 bytes) fills the transmit timestamp field. Servers
    echo that field back as the originate timestamp, which lets the client
    tell its reply apart from a late reply to an earlier request.
    """
    if len(nonce) > 8:
        raise ValueError(f"Request nonce is {len(nonce)} bytes (max 8)")
    packet = [0] * 12
    packet[0] = CLIENT_MODE_V3 << 24
    request = struct.pack(NTP_PACKET_FORMAT, *packet)
    return request[:TRANSMIT_SECONDS_OFFSET] + nonce.ljust(8, b"\x00")


def originate_matches(response: bytes, request: bytes) -> bool:
    """
    True if ``response`` echoes the transmit timestamp of ``request``.

    Raises:
        ValueError: If the response is shorter than 48 bytes
    """
    if len(response) < NTP_PACKET_SIZE:
        raise ValueError(f"Malformed NTP response: {len(response)} bytes (need {NTP_PACKET_SIZE})")
    echoed = response[ORIGINATE_OFFSET:ORIGINATE_OFFSET + 8]
    return echoed == request[TRANSMIT_SECONDS_OFFSET:TRANSMIT_SECONDS_OFFSET + 8]


def parse_transmit_timestamp(packet: bytes) -> int:
    """
    Extract the server transmit timestamp (T3) from an SNTP response.

    Raises:
        ValueError: If the packet is shorter than 48 bytes
    """
    if len(packet) < NTP_PACKET_SIZE:
        raise ValueError(f"Malformed NTP response: {len(packet)} bytes (need {NTP_PACKET_SIZE})")
    seconds, = struct.unpack_from("!I", packet, TRANSMIT_SECONDS_OFFSET)
    fraction, = struct.unpack_from("!I", packet, TRANSMIT_FRACTION_OFFSET)
    return ntp_to_unix_nanos(seconds, fraction)
