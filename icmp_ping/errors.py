from __future__ import annotations


class PingError(Exception):
    """Base class for every error raised by icmp_ping."""


class PermissionDenied(PingError, PermissionError):
    pass


class TransportError(PingError, OSError):
    pass


class DecodeError(PingError, ValueError):
    pass


class TruncatedPacket(DecodeError):
    pass


class MalformedHeader(DecodeError):
    pass


class InvalidChecksum(DecodeError):
    pass


class OversizedPacket(PingError, ValueError):
    pass


class SessionClosed(PingError, RuntimeError):
    pass
