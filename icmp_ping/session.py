from __future__ import annotations

import heapq
import logging
import os
import queue
import socket
import threading
import time
from concurrent.futures import CancelledError, Future, InvalidStateError
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Union

from .config import PingConfig
from .errors import DecodeError, OversizedPacket, PingError, SessionClosed, TransportError
from .icmp import MAX_PAYLOAD_SIZE, EchoReply, encode_echo_request
from .metrics import SessionCounters
from .transport import ICMPTransport, InboundDatagram

LOGGER = logging.getLogger("icmp_ping.session")

SEQUENCE_MODULUS = 1 << 16
IDLE_WAIT_S = 1.0
RESULT_GRACE_S = 1.0

_WAKE = object()


@dataclass(frozen=True)
class PingReply:
    sequence: int
    identifier: int
    ttl: int
    rtt_ms: float
    source: str
    size: int

    @property
    def lost(self) -> bool:
        return False


@dataclass(frozen=True)
class PingLoss:
    sequence: int
    identifier: int

    @property
    def lost(self) -> bool:
        return True


PingResult = Union[PingReply, PingLoss]
ResultCallback = Callable[[PingResult], None]


@dataclass
class PendingEntry:
    sequence: int
    sent_at: float
    future: Future
    deadline: float | None = None


_identifier_lock = threading.Lock()
_identifiers_in_use: set[int] = set()
_identifier_offset = 0


def allocate_identifier() -> int:
    """Pick an identifier no other live session in this process holds.

    Raw sockets see every ICMP reply on the host, so sessions sharing an
    identifier would complete each other's requests. The first session gets
    the classic ``pid & 0xFFFF``; later ones walk forward from there.
    """
    global _identifier_offset
    base = os.getpid()
    with _identifier_lock:
        for _ in range(SEQUENCE_MODULUS):
            identifier = (base + _identifier_offset) & 0xFFFF
            _identifier_offset += 1
            if identifier not in _identifiers_in_use:
                _identifiers_in_use.add(identifier)
                return identifier
    raise PingError("every ICMP identifier is in use")


def _reserve_identifier(identifier: int) -> bool:
    with _identifier_lock:
        if identifier in _identifiers_in_use:
            return False
        _identifiers_in_use.add(identifier)
        return True


def release_identifier(identifier: int) -> None:
    with _identifier_lock:
        _identifiers_in_use.discard(identifier)


class EchoSession:
    """Issues echo requests to one target and correlates the replies.

    Every request ends exactly once, either as a ``PingReply`` or as a
    ``PingLoss`` once its deadline passes. The pending table is only touched
    under ``_lock``; inbound datagrams and deadlines are handled by a single
    worker thread fed through ``_inbound``.
    """

    def __init__(
        self,
        transport: ICMPTransport,
        target_host: str,
        *,
        target_name: str | None = None,
        identifier: int | None = None,
        timeout_ms: int = 1000,
        verify_checksum: bool = True,
        start_sequence: int = 0,
        on_result: ResultCallback | None = None,
        clock: Callable[[], float] = time.time,
        owns_transport: bool = False,
    ) -> None:
        self.transport = transport
        self.target_host = target_host
        self.target_name = target_name or target_host
        if identifier is None:
            self.identifier = allocate_identifier()
            self._holds_identifier = True
        else:
            if not 0 <= identifier <= 0xFFFF:
                raise ValueError(f"identifier out of range: {identifier}")
            self.identifier = identifier
            self._holds_identifier = _reserve_identifier(identifier)
        self.timeout_ms = timeout_ms
        self.verify_checksum = verify_checksum
        self.on_result = on_result
        self.clock = clock
        self.counters = SessionCounters()
        self._owns_transport = owns_transport

        self._lock = threading.Lock()
        self._pending: dict[tuple[int, int], PendingEntry] = {}
        self._deadlines: list[tuple[float, int]] = []
        self._next_sequence = start_sequence % SEQUENCE_MODULUS
        self._inbound: queue.Queue[object] = queue.Queue()
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None
        self._closed = False

    def __enter__(self) -> "EchoSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, sequence: int) -> bool:
        with self._lock:
            return (self.identifier, sequence) in self._pending

    def start(self) -> None:
        if self._closed:
            raise SessionClosed("session is closed")
        if self._worker is not None:
            return
        self.transport.subscribe(self._on_datagram)
        self._worker = threading.Thread(target=self._worker_loop, daemon=True, name="icmp-session")
        self._worker.start()
        LOGGER.info(
            "session started target=%s identifier=%d timeout_ms=%d",
            self.target_host,
            self.identifier,
            self.timeout_ms,
        )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            discarded = list(self._pending.values())
            self._pending.clear()
            self._deadlines.clear()
        self.transport.unsubscribe(self._on_datagram)
        if self._holds_identifier:
            release_identifier(self.identifier)
        self._stop_event.set()
        self._inbound.put(_WAKE)
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout=1.0)
        for entry in discarded:
            entry.future.cancel()
        if self._owns_transport:
            self.transport.close()
        LOGGER.info(
            "session closed target=%s identifier=%d discarded=%d",
            self.target_host,
            self.identifier,
            len(discarded),
        )

    def send(self, payload: bytes = b"", timeout_ms: int | None = None) -> Future:
        if len(payload) > MAX_PAYLOAD_SIZE:
            raise OversizedPacket(f"payload of {len(payload)} bytes exceeds {MAX_PAYLOAD_SIZE}")
        timeout_s = (self.timeout_ms if timeout_ms is None else timeout_ms) / 1000.0
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise SessionClosed("session is closed")
            sequence = self._allocate_sequence_locked()
            sent_at = self.clock()
            buffer = encode_echo_request(self.identifier, sequence, payload, sent_at)
            key = (self.identifier, sequence)
            entry = PendingEntry(sequence=sequence, sent_at=sent_at, future=future)
            self._pending[key] = entry

        try:
            self.transport.send(buffer, self.target_host)
        except TransportError:
            with self._lock:
                if self._pending.get(key) is entry:
                    del self._pending[key]
            self.counters.inc("send_errors")
            LOGGER.warning("echo request icmp_seq=%d to %s failed", sequence, self.target_host, exc_info=True)
            raise
        self.counters.inc("sent")

        with self._lock:
            if self._pending.get(key) is entry:
                entry.deadline = time.monotonic() + timeout_s
                heapq.heappush(self._deadlines, (entry.deadline, sequence))
        self._inbound.put(_WAKE)
        return future

    def ping(self, payload: bytes = b"", timeout_ms: int | None = None) -> PingResult:
        future = self.send(payload, timeout_ms)
        timeout_s = (self.timeout_ms if timeout_ms is None else timeout_ms) / 1000.0
        try:
            return future.result(timeout=timeout_s + RESULT_GRACE_S)
        except CancelledError as exc:
            raise SessionClosed("session closed while waiting for a reply") from exc

    def _allocate_sequence_locked(self) -> int:
        for _ in range(SEQUENCE_MODULUS):
            sequence = self._next_sequence
            self._next_sequence = (self._next_sequence + 1) % SEQUENCE_MODULUS
            if (self.identifier, sequence) not in self._pending:
                return sequence
        raise PingError("every sequence number is in flight")

    def _on_datagram(self, datagram: InboundDatagram) -> None:
        if self._closed:
            return
        self._inbound.put(datagram)

    def _next_wait_locked(self, now: float) -> float:
        if not self._deadlines:
            return IDLE_WAIT_S
        return max(0.0, min(IDLE_WAIT_S, self._deadlines[0][0] - now))

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            with self._lock:
                wait_s = self._next_wait_locked(time.monotonic())
            try:
                item = self._inbound.get(timeout=wait_s)
            except queue.Empty:
                item = None
            if self._stop_event.is_set():
                break
            if isinstance(item, InboundDatagram):
                self._handle_datagram(item)
            self._expire_due(time.monotonic())

    def _handle_datagram(self, datagram: InboundDatagram) -> None:
        try:
            reply = EchoReply.from_bytes(datagram.data, verify=self.verify_checksum)
        except DecodeError as exc:
            self.counters.inc("dropped")
            LOGGER.debug("dropping datagram from %s: %s", datagram.source, exc)
            return

        if not reply.is_echo_reply or reply.identifier != self.identifier:
            self.counters.inc("ignored")
            return

        with self._lock:
            entry = self._pending.pop((reply.identifier, reply.sequence), None)
        if entry is None:
            self.counters.inc("ignored")
            LOGGER.debug("ignoring unmatched reply icmp_seq=%d from %s", reply.sequence, datagram.source)
            return

        sent_at = reply.sent_at
        if sent_at is None:
            sent_at = entry.sent_at
        rtt_ms = (datagram.received_at - sent_at) * 1000.0
        if rtt_ms < 0:
            LOGGER.debug("negative rtt %.3f ms for icmp_seq=%d; clock stepped", rtt_ms, reply.sequence)
            rtt_ms = 0.0
        self.counters.inc("replies")
        self._emit(
            entry,
            PingReply(
                sequence=reply.sequence,
                identifier=reply.identifier,
                ttl=reply.ttl,
                rtt_ms=rtt_ms,
                source=datagram.source,
                size=reply.size,
            ),
        )

    def _expire_due(self, now: float) -> None:
        expired: list[PendingEntry] = []
        with self._lock:
            while self._deadlines and self._deadlines[0][0] <= now:
                deadline, sequence = heapq.heappop(self._deadlines)
                key = (self.identifier, sequence)
                entry = self._pending.get(key)
                if entry is None or entry.deadline != deadline:
                    continue
                del self._pending[key]
                expired.append(entry)
        for entry in expired:
            self.counters.inc("lost")
            self._emit(entry, PingLoss(sequence=entry.sequence, identifier=self.identifier))

    def _emit(self, entry: PendingEntry, result: PingResult) -> None:
        try:
            entry.future.set_result(result)
        except InvalidStateError:
            return
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                LOGGER.exception("result callback failed for icmp_seq=%d", result.sequence)


def resolve_target(target: str) -> str:
    try:
        return socket.gethostbyname(target)
    except (OSError, UnicodeError) as exc:
        raise TransportError(f"cannot resolve {target}: {exc}") from exc


def start_session(
    target: str,
    config: PingConfig | None = None,
    *,
    on_result: ResultCallback | None = None,
) -> EchoSession:
    if config is None:
        config = PingConfig()
    address = resolve_target(target)
    transport = ICMPTransport.open(
        bind_host=config.transport.bind_host,
        recv_buffer_size=config.transport.recv_buffer_size,
        poll_interval_ms=config.transport.poll_interval_ms,
    )
    try:
        session = EchoSession(
            transport,
            address,
            target_name=target,
            identifier=config.session.identifier,
            timeout_ms=config.session.timeout_ms,
            verify_checksum=config.session.verify_checksum,
            on_result=on_result,
            owns_transport=True,
        )
        transport.start()
        session.start()
    except BaseException:
        transport.close()
        raise
    return session


def ping(session: EchoSession, payload: bytes = b"", timeout_ms: int | None = None) -> PingResult:
    return session.ping(payload, timeout_ms)


def close_session(session: EchoSession) -> None:
    session.close()


@contextmanager
def open_session(
    target: str,
    config: PingConfig | None = None,
    *,
    on_result: ResultCallback | None = None,
) -> Iterator[EchoSession]:
    session = start_session(target, config, on_result=on_result)
    try:
        yield session
    finally:
        session.close()
