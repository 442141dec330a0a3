from __future__ import annotations

import argparse
import dataclasses
import logging
import statistics
import sys
import time
from dataclasses import dataclass, field

from ._version import __version__
from .config import PingConfig, load_config
from .errors import PermissionDenied, PingError, TransportError
from .icmp import ICMP_HEADER_LEN, MAX_PAYLOAD_SIZE, TIMESTAMP_LEN
from .session import EchoSession, PingReply, PingResult, start_session

LOGGER = logging.getLogger("icmp_ping.cli")


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@dataclass
class PingStatistics:
    transmitted: int = 0
    received: int = 0
    errors: int = 0
    rtts_ms: list[float] = field(default_factory=list)

    def record(self, result: PingResult) -> None:
        self.transmitted += 1
        if isinstance(result, PingReply):
            self.received += 1
            self.rtts_ms.append(result.rtt_ms)

    def record_error(self) -> None:
        self.transmitted += 1
        self.errors += 1

    @property
    def loss_percent(self) -> float:
        if self.transmitted == 0:
            return 0.0
        return 100.0 * (self.transmitted - self.received) / self.transmitted

    def summary_lines(self, target: str) -> list[str]:
        counts = (
            f"{self.transmitted} packets transmitted, {self.received} packets received, "
            f"{self.loss_percent:.1f}% packet loss"
        )
        if self.errors:
            counts += f", {self.errors} errors"
        lines = [f"--- {target} ping statistics ---", counts]
        if self.rtts_ms:
            lines.append(
                "round-trip min/avg/max/stddev = "
                f"{min(self.rtts_ms):.3f}/{statistics.fmean(self.rtts_ms):.3f}/"
                f"{max(self.rtts_ms):.3f}/{statistics.pstdev(self.rtts_ms):.3f} ms"
            )
        return lines


def format_result(result: PingResult) -> str:
    if isinstance(result, PingReply):
        return (
            f"{result.size} bytes from {result.source}: icmp_seq={result.sequence} "
            f"ttl={result.ttl} time={result.rtt_ms:.2f} ms"
        )
    return f"Request timeout for icmp_seq {result.sequence}"


def build_payload(size: int) -> bytes:
    return bytes(index & 0xFF for index in range(size))


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="icmp-ping", description="Send ICMP echo requests to a host.")
    parser.add_argument("target", help="host name or IPv4 address to ping")
    parser.add_argument("-c", "--count", type=int, default=None, help="stop after sending COUNT requests")
    parser.add_argument("-i", "--interval", type=float, default=None, help="seconds between requests")
    parser.add_argument("-W", "--timeout", type=float, default=None, help="seconds to wait for each reply")
    parser.add_argument(
        "-s",
        "--size",
        type=int,
        default=None,
        help="payload bytes carried after the 8-byte timestamp",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def _apply_arguments(config: PingConfig, args: argparse.Namespace) -> PingConfig:
    overrides: dict[str, object] = {}
    if args.interval is not None:
        overrides["interval_ms"] = max(0, int(args.interval * 1000))
    if args.timeout is not None:
        overrides["timeout_ms"] = max(1, int(args.timeout * 1000))
    if args.size is not None:
        if not 0 <= args.size <= MAX_PAYLOAD_SIZE:
            raise ValueError(f"payload size must be within 0..{MAX_PAYLOAD_SIZE}")
        overrides["payload_size"] = args.size
    if not overrides:
        return config
    return dataclasses.replace(config, session=dataclasses.replace(config.session, **overrides))


def run_pings(
    session: EchoSession,
    payload: bytes,
    stats: PingStatistics,
    *,
    count: int | None,
    interval_s: float,
) -> None:
    sent = 0
    while count is None or sent < count:
        started = time.monotonic()
        try:
            result = session.ping(payload)
        except TransportError as exc:
            stats.record_error()
            print(f"icmp-ping: {exc}", file=sys.stderr)
        else:
            stats.record(result)
            print(format_result(result), flush=True)
        sent += 1
        if count is not None and sent >= count:
            break
        remaining = interval_s - (time.monotonic() - started)
        if remaining > 0:
            time.sleep(remaining)


def main(argv: list[str] | None = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    try:
        config = _apply_arguments(load_config(), args)
    except ValueError as exc:
        print(f"icmp-ping: {exc}", file=sys.stderr)
        return 2
    configure_logging(config.common.log_level)

    try:
        session = start_session(args.target, config)
    except PermissionDenied as exc:
        print(f"icmp-ping: cannot open raw socket ({exc}); run as root or grant CAP_NET_RAW", file=sys.stderr)
        return 2
    except PingError as exc:
        print(f"icmp-ping: {exc}", file=sys.stderr)
        return 2

    payload = build_payload(config.session.payload_size)
    stats = PingStatistics()
    print(
        f"PING {session.target_name} ({session.target_host}): "
        f"{len(payload) + TIMESTAMP_LEN} data bytes, "
        f"{len(payload) + TIMESTAMP_LEN + ICMP_HEADER_LEN} bytes per request",
        flush=True,
    )
    try:
        run_pings(
            session,
            payload,
            stats,
            count=args.count,
            interval_s=config.session.interval_ms / 1000.0,
        )
    except KeyboardInterrupt:
        LOGGER.debug("interrupted")
    finally:
        session.close()
        LOGGER.debug("session counters:\n%s", session.counters.render_text().rstrip())

    print()
    for line in stats.summary_lines(session.target_name):
        print(line)
    return 0 if stats.received else 1
