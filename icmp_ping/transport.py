from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .errors import PermissionDenied, TransportError

LOGGER = logging.getLogger("icmp_ping.transport")

DEFAULT_RECV_BUFFER_SIZE = 65535
RECV_ERROR_BACKOFF_S = 0.05
_FATAL_RECV_ERRNOS = {errno.EBADF, errno.ENOTSOCK}


@dataclass(frozen=True)
class InboundDatagram:
    data: bytes
    source: str
    received_at: float


DatagramHandler = Callable[[InboundDatagram], None]


class ICMPTransport:
    """Owns one raw ICMP socket and fans inbound datagrams out to subscribers.

    Raw ICMP reception includes the IPv4 header, so subscribers get whole
    datagrams. ``received_at`` is taken from ``clock`` right after the read.
    """

    def __init__(
        self,
        connection: socket.socket,
        *,
        recv_buffer_size: int = DEFAULT_RECV_BUFFER_SIZE,
        poll_interval_ms: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.connection = connection
        self.recv_buffer_size = recv_buffer_size
        self.poll_interval_s = poll_interval_ms / 1000.0
        self.clock = clock

        self._handlers: list[DatagramHandler] = []
        self._handlers_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._recv_thread: threading.Thread | None = None
        self._closed = False
        self._failure: OSError | None = None

    @classmethod
    def open(cls, bind_host: str = "0.0.0.0", **kwargs) -> "ICMPTransport":
        try:
            connection = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        except PermissionError as exc:
            LOGGER.error("raw ICMP socket requires elevated privileges (root or CAP_NET_RAW)")
            raise PermissionDenied(str(exc)) from exc
        except OSError as exc:
            raise TransportError(f"failed to open raw ICMP socket: {exc}") from exc
        try:
            connection.bind((bind_host, 0))
        except OSError as exc:
            connection.close()
            raise TransportError(f"failed to bind raw ICMP socket to {bind_host}: {exc}") from exc
        return cls(connection, **kwargs)

    def __enter__(self) -> "ICMPTransport":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def failure(self) -> OSError | None:
        """The receive error that killed the socket, if any."""
        return self._failure

    def subscribe(self, handler: DatagramHandler) -> None:
        with self._handlers_lock:
            if handler not in self._handlers:
                self._handlers.append(handler)

    def unsubscribe(self, handler: DatagramHandler) -> None:
        with self._handlers_lock:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

    def start(self) -> None:
        if self._closed:
            raise TransportError("transport is closed")
        if self._recv_thread is not None:
            return
        self.connection.settimeout(self.poll_interval_s)
        self._recv_thread = threading.Thread(target=self._recv_loop, daemon=True, name="icmp-recv")
        self._recv_thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._recv_thread is not None and self._recv_thread is not threading.current_thread():
            self._recv_thread.join(timeout=1.0)
        self._recv_thread = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.stop()
        with self._handlers_lock:
            self._handlers.clear()
        try:
            self.connection.close()
        except OSError:
            LOGGER.debug("error while closing raw socket", exc_info=True)

    def send(self, buffer: bytes, address: str) -> int:
        if self._closed:
            raise TransportError("transport is closed")
        if self._failure is not None:
            raise TransportError(f"raw socket failed: {self._failure}") from self._failure
        with self._send_lock:
            try:
                return self.connection.sendto(buffer, (address, 0))
            except OSError as exc:
                raise TransportError(f"send to {address} failed: {exc}") from exc

    def _deliver(self, datagram: InboundDatagram) -> None:
        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(datagram)
            except Exception:
                LOGGER.debug("datagram handler failed", exc_info=True)

    def _recv_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                data, address = self.connection.recvfrom(self.recv_buffer_size)
            except socket.timeout:
                continue
            except OSError as exc:
                if self._stop_event.is_set():
                    break
                if exc.errno in _FATAL_RECV_ERRNOS:
                    self._failure = exc
                    LOGGER.error("raw socket is unusable; stopping receive loop: %s", exc)
                    break
                LOGGER.warning("raw socket receive failed: %s", exc)
                self._stop_event.wait(RECV_ERROR_BACKOFF_S)
                continue
            self._deliver(InboundDatagram(data=data, source=address[0], received_at=self.clock()))
