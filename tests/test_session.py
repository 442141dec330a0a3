import struct
import threading
import time

import pytest

from icmp_ping import session as session_module
from icmp_ping.errors import OversizedPacket, SessionClosed, TransportError
from icmp_ping.icmp import ICMP_ECHO_REPLY, ICMP_ECHO_REQUEST, MAX_PAYLOAD_SIZE, encode_echo
from icmp_ping.session import EchoSession, PingLoss, PingReply
from icmp_ping.transport import InboundDatagram

IDENTIFIER = 0x1234
SEND_TIME = 1_000.25


class FakeTransport:
    def __init__(self) -> None:
        self.handlers: list = []
        self.sent: list[tuple[bytes, str]] = []
        self.fail_next_send = False
        self.closed = False

    def subscribe(self, handler) -> None:
        self.handlers.append(handler)

    def unsubscribe(self, handler) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    def send(self, buffer: bytes, address: str) -> int:
        if self.fail_next_send:
            self.fail_next_send = False
            raise TransportError("sendto failed: network is unreachable")
        self.sent.append((buffer, address))
        return len(buffer)

    def deliver(self, data: bytes, *, received_at: float, source: str = "192.0.2.7") -> None:
        for handler in list(self.handlers):
            handler(InboundDatagram(data=data, source=source, received_at=received_at))

    def close(self) -> None:
        self.closed = True


def _ipv4_wrap(icmp_message: bytes, *, ttl: int = 64) -> bytes:
    header = bytearray(20)
    header[0] = 0x45
    header[8] = ttl
    return bytes(header) + icmp_message


def _reply_for(
    request: bytes,
    *,
    ttl: int = 57,
    identifier: int | None = None,
    icmp_type: int = ICMP_ECHO_REPLY,
) -> bytes:
    request_identifier, sequence = struct.unpack("!HH", request[4:8])
    if identifier is None:
        identifier = request_identifier
    return _ipv4_wrap(encode_echo(icmp_type, identifier, sequence, request[8:]), ttl=ttl)


def _wait_until(predicate, timeout_s: float = 1.0, interval_s: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval_s)
    return False


@pytest.fixture
def fake() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def results() -> list:
    return []


@pytest.fixture
def session(fake: FakeTransport, results: list):
    echo_session = EchoSession(
        fake,
        "192.0.2.7",
        identifier=IDENTIFIER,
        timeout_ms=1000,
        on_result=results.append,
        clock=lambda: SEND_TIME,
    )
    echo_session.start()
    try:
        yield echo_session
    finally:
        echo_session.close()


def test_send_builds_request_for_target(session: EchoSession, fake: FakeTransport) -> None:
    session.send(b"Payload")

    buffer, address = fake.sent[0]
    assert address == "192.0.2.7"
    assert buffer[0] == ICMP_ECHO_REQUEST
    assert struct.unpack("!HH", buffer[4:8]) == (IDENTIFIER, 0)
    assert struct.unpack("!II", buffer[8:16]) == (1000, 250_000)
    assert buffer[16:] == b"Payload"
    assert session.is_pending(0)


def test_reply_yields_rtt_from_embedded_timestamp(
    session: EchoSession, fake: FakeTransport, results: list
) -> None:
    future = session.send(b"abc")
    request, _ = fake.sent[0]

    fake.deliver(_reply_for(request, ttl=59), received_at=SEND_TIME + 0.0125)

    result = future.result(timeout=1.0)
    assert isinstance(result, PingReply)
    assert result.lost is False
    assert result.sequence == 0
    assert result.identifier == IDENTIFIER
    assert result.ttl == 59
    assert result.rtt_ms == pytest.approx(12.5, abs=0.01)
    assert result.source == "192.0.2.7"
    assert result.size == len(request)
    assert _wait_until(lambda: len(results) == 1)
    assert session.pending_count == 0
    assert session.counters.get("replies") == 1


def test_duplicate_reply_is_ignored(session: EchoSession, fake: FakeTransport, results: list) -> None:
    future = session.send()
    request, _ = fake.sent[0]
    reply = _reply_for(request)

    fake.deliver(reply, received_at=SEND_TIME + 0.001)
    future.result(timeout=1.0)
    fake.deliver(reply, received_at=SEND_TIME + 0.002)

    assert _wait_until(lambda: session.counters.get("ignored") == 1)
    assert len(results) == 1


def test_missing_reply_times_out_once(fake: FakeTransport, results: list) -> None:
    with EchoSession(
        fake,
        "192.0.2.7",
        identifier=IDENTIFIER,
        timeout_ms=50,
        on_result=results.append,
        clock=lambda: SEND_TIME,
    ) as session:
        future = session.send(b"lost")
        request, _ = fake.sent[0]

        result = future.result(timeout=1.0)

        assert isinstance(result, PingLoss)
        assert result.lost is True
        assert result.sequence == 0
        assert not session.is_pending(0)

        fake.deliver(_reply_for(request), received_at=SEND_TIME + 2.0)
        assert _wait_until(lambda: session.counters.get("ignored") == 1)
        time.sleep(0.05)
        assert results == [result]
        assert session.counters.get("lost") == 1


def test_ping_returns_loss_after_deadline(fake: FakeTransport) -> None:
    with EchoSession(fake, "192.0.2.7", identifier=IDENTIFIER, timeout_ms=1000) as session:
        started = time.monotonic()
        result = session.ping(timeout_ms=30)

    assert isinstance(result, PingLoss)
    assert time.monotonic() - started < 1.0


def test_foreign_identifier_does_not_disturb_table(
    session: EchoSession, fake: FakeTransport, results: list
) -> None:
    session.send()
    request, _ = fake.sent[0]

    fake.deliver(_reply_for(request, identifier=IDENTIFIER ^ 0xFFFF), received_at=SEND_TIME)

    assert _wait_until(lambda: session.counters.get("ignored") == 1)
    assert session.is_pending(0)
    assert results == []


def test_echo_requests_seen_on_the_socket_are_ignored(
    session: EchoSession, fake: FakeTransport, results: list
) -> None:
    session.send()
    request, _ = fake.sent[0]

    fake.deliver(_ipv4_wrap(request), received_at=SEND_TIME)

    assert _wait_until(lambda: session.counters.get("ignored") == 1)
    assert session.is_pending(0)
    assert results == []


def test_undecodable_datagrams_are_dropped(session: EchoSession, fake: FakeTransport, results: list) -> None:
    session.send()
    request, _ = fake.sent[0]
    corrupted = bytearray(_reply_for(request))
    corrupted[-1] ^= 0xFF

    fake.deliver(b"\x45\x00\x00", received_at=SEND_TIME)
    fake.deliver(b"\x43" + b"\x00" * 40, received_at=SEND_TIME)
    fake.deliver(bytes(corrupted), received_at=SEND_TIME)

    assert _wait_until(lambda: session.counters.get("dropped") == 3)
    assert session.is_pending(0)
    assert results == []


def test_checksum_verification_can_be_disabled(fake: FakeTransport) -> None:
    with EchoSession(fake, "192.0.2.7", identifier=IDENTIFIER, verify_checksum=False) as session:
        future = session.send()
        request, _ = fake.sent[0]
        corrupted = bytearray(_reply_for(request))
        corrupted[22] ^= 0xFF

        fake.deliver(bytes(corrupted), received_at=time.time())

        assert isinstance(future.result(timeout=1.0), PingReply)


def test_out_of_order_replies_match_their_requests(session: EchoSession, fake: FakeTransport) -> None:
    futures = [session.send(bytes([index])) for index in range(3)]
    requests = [buffer for buffer, _ in fake.sent]

    for offset, request in zip((0.03, 0.02, 0.01), reversed(requests)):
        fake.deliver(_reply_for(request), received_at=SEND_TIME + offset)

    replies = [future.result(timeout=1.0) for future in futures]
    assert [reply.sequence for reply in replies] == [0, 1, 2]
    assert [round(reply.rtt_ms) for reply in replies] == [10, 20, 30]


def test_reply_without_timestamp_uses_retained_send_time(session: EchoSession, fake: FakeTransport) -> None:
    future = session.send()
    short_reply = _ipv4_wrap(encode_echo(ICMP_ECHO_REPLY, IDENTIFIER, 0, b"abc"))

    fake.deliver(short_reply, received_at=SEND_TIME + 0.004)

    assert future.result(timeout=1.0).rtt_ms == pytest.approx(4.0, abs=0.01)


def test_negative_rtt_is_clamped(session: EchoSession, fake: FakeTransport) -> None:
    future = session.send()
    request, _ = fake.sent[0]

    fake.deliver(_reply_for(request), received_at=SEND_TIME - 5.0)

    assert future.result(timeout=1.0).rtt_ms == 0.0


def test_sequence_wraps_at_16_bits(fake: FakeTransport) -> None:
    with EchoSession(fake, "192.0.2.7", identifier=IDENTIFIER, start_sequence=65535) as session:
        session.send()
        session.send()

    sequences = [struct.unpack("!H", buffer[6:8])[0] for buffer, _ in fake.sent]
    assert sequences == [65535, 0]


def test_send_error_is_reported_and_session_continues(session: EchoSession, fake: FakeTransport) -> None:
    fake.fail_next_send = True

    with pytest.raises(TransportError):
        session.send()

    assert session.pending_count == 0
    assert session.counters.get("send_errors") == 1

    session.send()
    assert session.is_pending(1)
    assert session.counters.get("sent") == 1


def test_oversized_payload_is_rejected_before_send(session: EchoSession, fake: FakeTransport) -> None:
    with pytest.raises(OversizedPacket):
        session.send(b"\x00" * (MAX_PAYLOAD_SIZE + 1))

    assert fake.sent == []
    assert session.pending_count == 0


def test_expiry_after_match_is_a_no_op(session: EchoSession, fake: FakeTransport, results: list) -> None:
    future = session.send()
    request, _ = fake.sent[0]
    fake.deliver(_reply_for(request), received_at=SEND_TIME)
    future.result(timeout=1.0)

    session._expire_due(time.monotonic() + 60.0)

    assert _wait_until(lambda: len(results) == 1)
    assert session.counters.get("lost") == 0


def test_close_discards_pending_requests_silently(fake: FakeTransport, results: list) -> None:
    session = EchoSession(fake, "192.0.2.7", identifier=IDENTIFIER, on_result=results.append)
    session.start()
    future = session.send()
    request, _ = fake.sent[0]

    session.close()
    fake.deliver(_reply_for(request), received_at=SEND_TIME)

    assert future.cancelled()
    assert fake.handlers == []
    assert results == []
    assert session.pending_count == 0
    assert fake.closed is False
    with pytest.raises(SessionClosed):
        session.send()
    session.close()


def test_close_interrupts_waiting_ping(fake: FakeTransport) -> None:
    session = EchoSession(fake, "192.0.2.7", identifier=IDENTIFIER, timeout_ms=5000)
    session.start()
    errors: list[Exception] = []

    def _run_ping() -> None:
        try:
            session.ping()
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=_run_ping)
    thread.start()
    assert _wait_until(lambda: session.pending_count == 1)

    session.close()
    thread.join(timeout=1.0)

    assert len(errors) == 1
    assert isinstance(errors[0], SessionClosed)


def test_close_releases_owned_transport(fake: FakeTransport) -> None:
    session = EchoSession(fake, "192.0.2.7", identifier=IDENTIFIER, owns_transport=True)
    session.start()

    session.close()

    assert fake.closed is True


def test_identifier_must_fit_16_bits(fake: FakeTransport) -> None:
    with pytest.raises(ValueError, match="identifier"):
        EchoSession(fake, "192.0.2.7", identifier=70_000)


def test_counters_render_as_text(session: EchoSession, fake: FakeTransport) -> None:
    future = session.send()
    request, _ = fake.sent[0]
    fake.deliver(_reply_for(request), received_at=SEND_TIME)
    future.result(timeout=1.0)

    text = session.counters.render_text()

    assert "icmp_ping_sent_total 1.0" in text
    assert "icmp_ping_replies_total 1.0" in text
    assert "icmp_ping_lost_total 0.0" in text
    assert session.counters.snapshot()["ignored"] == 0


def test_concurrent_default_sessions_do_not_share_replies(fake: FakeTransport) -> None:
    first_results: list = []
    second_results: list = []
    first = EchoSession(fake, "198.51.100.1", on_result=first_results.append)
    second = EchoSession(fake, "198.51.100.2", on_result=second_results.append)
    first.start()
    second.start()
    try:
        assert first.identifier != second.identifier

        first_future = first.send()
        second_future = second.send()
        second_request = fake.sent[1][0]

        fake.deliver(_reply_for(second_request), received_at=time.time(), source="198.51.100.2")

        reply = second_future.result(timeout=1.0)
        assert reply.identifier == second.identifier
        assert reply.source == "198.51.100.2"
        assert _wait_until(lambda: first.counters.get("ignored") == 1)
        assert not first_future.done()
        assert first.is_pending(0)
        assert first_results == []
    finally:
        first.close()
        second.close()


def test_closed_session_releases_its_identifier(fake: FakeTransport) -> None:
    session = EchoSession(fake, "198.51.100.1")
    identifier = session.identifier

    assert session_module._reserve_identifier(identifier) is False

    session.start()
    session.close()

    assert session_module._reserve_identifier(identifier) is True
    session_module.release_identifier(identifier)
