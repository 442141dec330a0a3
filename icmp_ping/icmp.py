from __future__ import annotations

import struct
from dataclasses import dataclass

from .errors import InvalidChecksum, MalformedHeader, OversizedPacket, TruncatedPacket

ICMP_ECHO_REQUEST = 8
ICMP_ECHO_REQUEST_CODE = 0
ICMP_ECHO_REPLY = 0
ICMP_ECHO_REPLY_CODE = 0
ICMP_HEADER_LEN = 8
TIMESTAMP_LEN = 8
IPV4_TTL_OFFSET = 8
IPV4_MIN_IHL = 5
IPV4_MAX_IHL = 15
MAX_DATAGRAM_SIZE = 65507
MAX_PAYLOAD_SIZE = MAX_DATAGRAM_SIZE - ICMP_HEADER_LEN - TIMESTAMP_LEN

_HEADER = struct.Struct("!BBHHH")
_TIMESTAMP = struct.Struct("!II")


def ones_complement_sum(data: bytes) -> int:
    if len(data) % 2:
        data = bytes(data) + b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total >> 16) + (total & 0xFFFF)
    return total


def internet_checksum(data: bytes) -> int:
    return ~ones_complement_sum(data) & 0xFFFF


def verify_checksum(data: bytes) -> bool:
    """Check a message as received, checksum field included."""
    return ones_complement_sum(data) == 0xFFFF


def header_length_words(first_byte: int) -> int:
    """Return the IPv4 IHL field: header length in 32-bit words, not bytes."""
    return first_byte & 0x0F


def icmp_offset(buf: bytes) -> int:
    ihl = header_length_words(buf[0])
    if ihl < IPV4_MIN_IHL or ihl > IPV4_MAX_IHL:
        raise MalformedHeader(f"illegal IPv4 header length {ihl}")
    return ihl * 4


def split_timestamp(timestamp: float) -> tuple[int, int]:
    seconds = int(timestamp)
    micros = int(round((timestamp - seconds) * 1_000_000))
    if micros >= 1_000_000:
        seconds += 1
        micros -= 1_000_000
    return seconds & 0xFFFFFFFF, micros


def _check_u16(name: str, value: int) -> None:
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} out of range: {value}")


def encode_echo(icmp_type: int, identifier: int, sequence: int, data: bytes, *, icmp_code: int = 0) -> bytes:
    _check_u16("identifier", identifier)
    _check_u16("sequence", sequence)
    length = ICMP_HEADER_LEN + len(data)
    if length > MAX_DATAGRAM_SIZE:
        raise OversizedPacket(f"ICMP message of {length} bytes exceeds {MAX_DATAGRAM_SIZE}")
    buf = bytearray(_HEADER.pack(icmp_type, icmp_code, 0, identifier, sequence))
    buf += data
    struct.pack_into("!H", buf, 2, internet_checksum(bytes(buf)))
    return bytes(buf)


@dataclass(frozen=True)
class EchoRequest:
    identifier: int
    sequence: int
    timestamp: float
    payload: bytes = b""

    def to_bytes(self) -> bytes:
        seconds, micros = split_timestamp(self.timestamp)
        data = _TIMESTAMP.pack(seconds, micros) + self.payload
        return encode_echo(ICMP_ECHO_REQUEST, self.identifier, self.sequence, data, icmp_code=ICMP_ECHO_REQUEST_CODE)


def encode_echo_request(identifier: int, sequence: int, payload: bytes, timestamp: float) -> bytes:
    return EchoRequest(
        identifier=identifier,
        sequence=sequence,
        timestamp=timestamp,
        payload=payload,
    ).to_bytes()


@dataclass(frozen=True)
class EchoReply:
    ttl: int
    icmp_type: int
    icmp_code: int
    icmp_checksum: int
    identifier: int
    sequence: int
    data: bytes

    @property
    def is_echo_reply(self) -> bool:
        return self.icmp_type == ICMP_ECHO_REPLY

    @property
    def sent_at(self) -> float | None:
        if len(self.data) < TIMESTAMP_LEN:
            return None
        seconds, micros = _TIMESTAMP.unpack_from(self.data)
        return seconds + micros / 1_000_000

    @property
    def payload(self) -> bytes:
        if len(self.data) < TIMESTAMP_LEN:
            return b""
        return self.data[TIMESTAMP_LEN:]

    @property
    def size(self) -> int:
        return ICMP_HEADER_LEN + len(self.data)

    @staticmethod
    def from_bytes(buf: bytes, *, verify: bool = False) -> "EchoReply":
        if not buf:
            raise TruncatedPacket("empty datagram")
        offset = icmp_offset(buf)
        if len(buf) < offset + ICMP_HEADER_LEN:
            raise TruncatedPacket(
                f"datagram of {len(buf)} bytes is shorter than {offset + ICMP_HEADER_LEN}"
            )
        message = bytes(buf[offset:])
        if verify and not verify_checksum(message):
            raise InvalidChecksum("invalid checksum")
        icmp_type, icmp_code, icmp_checksum, identifier, sequence = _HEADER.unpack_from(message)
        return EchoReply(
            ttl=buf[IPV4_TTL_OFFSET],
            icmp_type=icmp_type,
            icmp_code=icmp_code,
            icmp_checksum=icmp_checksum,
            identifier=identifier,
            sequence=sequence,
            data=message[ICMP_HEADER_LEN:],
        )


def decode_echo_reply(buf: bytes, *, verify: bool = False) -> EchoReply:
    return EchoReply.from_bytes(buf, verify=verify)
