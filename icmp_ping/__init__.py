"""ICMP echo (ping) engine."""

from ._version import __version__

__all__ = [
    "EchoSession",
    "PingLoss",
    "PingReply",
    "close_session",
    "open_session",
    "ping",
    "start_session",
    "__version__",
]

_SESSION_EXPORTS = {
    "EchoSession",
    "PingLoss",
    "PingReply",
    "close_session",
    "open_session",
    "ping",
    "start_session",
}


def __getattr__(name: str):
    if name in _SESSION_EXPORTS:
        from . import session

        return getattr(session, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
