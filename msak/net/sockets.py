"""UDP and TCP socket interfaces and their standard-library implementation.

UDP usage:

* client style: ``connect(host, port)`` once, then ``send(data)`` / ``receive()``;
  the kernel records the default peer and filters other sources.
* server style: ``bind(host, port)`` and reply with ``send(data, host, port)``.

Both implementations poll with a short receive timeout so a thread blocked in
``receive()`` notices a ``close()`` issued from another thread within one poll
interval and returns instead of raising.
"""

from __future__ import annotations

import abc
import logging
import socket
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from ..measurements.models import ByteCounters

LOGGER = logging.getLogger(__name__)

RECEIVE_POLL_SECONDS = 0.25
TCP_CONNECT_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class UdpPacket:
    data: bytes
    host: str
    port: int


class UdpError(Exception):
    def __init__(self, message: str, errno: Optional[int] = None):
        super().__init__(message)
        self.errno = errno


class TcpError(Exception):
    def __init__(self, message: str, errno: Optional[int] = None):
        super().__init__(message)
        self.errno = errno


class UdpSocket(abc.ABC):
    @abc.abstractmethod
    def bind(self, local_host: Optional[str], local_port: int) -> None:
        """Bind to a local address. ``None`` binds all interfaces."""

    @abc.abstractmethod
    def connect(self, remote_host: str, remote_port: int) -> None:
        """Select the default peer. No packets are exchanged."""

    @abc.abstractmethod
    def send(self, data: bytes, host: Optional[str] = None, port: Optional[int] = None) -> int:
        """Send one datagram to ``host:port`` or to the connected peer."""

    @abc.abstractmethod
    def receive(self, max_bytes: int = 65535) -> Optional[UdpPacket]:
        """Next datagram, or ``None`` when the poll interval elapsed or the socket closed."""

    @abc.abstractmethod
    def close(self) -> None:
        """Idempotent."""

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        ...

    @property
    def remote_address(self) -> Optional[Tuple[str, int]]:
        """Connected peer as ``(host, port)``, if any."""
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class TcpSocket(abc.ABC):
    @abc.abstractmethod
    def connect(self, host: str, port: int) -> None:
        ...

    @abc.abstractmethod
    def send_all(self, data: bytes) -> int:
        """Send all of *data*; returns ``len(data)``."""

    @abc.abstractmethod
    def receive(self, max_bytes: int = 4096) -> bytes:
        """Up to *max_bytes*; empty on poll timeout, EOF or close."""

    @abc.abstractmethod
    def close(self) -> None:
        ...

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class StdlibUdpSocket(UdpSocket):
    def __init__(self):
        self._sock: Optional[socket.socket] = None
        self._connected = False
        self._peer: Optional[Tuple[str, int]] = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_address(self) -> Optional[Tuple[str, int]]:
        return self._peer

    def _open(self, family: int = socket.AF_INET) -> socket.socket:
        if self._closed:
            raise UdpError("socket closed")
        if self._sock is None:
            sock = socket.socket(family, socket.SOCK_DGRAM)
            sock.settimeout(RECEIVE_POLL_SECONDS)
            self._sock = sock
        return self._sock

    def bind(self, local_host: Optional[str], local_port: int) -> None:
        with self._lock:
            if self._sock is not None:
                raise UdpError("socket already open")
            sock = self._open()
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((local_host or "", local_port))
            except OSError as exc:
                raise UdpError(f"bind {local_host}:{local_port} failed: {exc}", exc.errno) from exc

    def connect(self, remote_host: str, remote_port: int) -> None:
        infos = socket.getaddrinfo(remote_host, remote_port, type=socket.SOCK_DGRAM)
        family, _, _, _, address = infos[0]
        with self._lock:
            sock = self._open(family)
            try:
                sock.connect(address)
            except OSError as exc:
                raise UdpError(f"connect {remote_host}:{remote_port} failed: {exc}", exc.errno) from exc
            self._connected = True
            self._peer = (address[0], address[1])

    def send(self, data: bytes, host: Optional[str] = None, port: Optional[int] = None) -> int:
        sock = self._sock
        if sock is None or self._closed:
            raise UdpError("socket not open")
        try:
            if host is not None and port is not None:
                return sock.sendto(data, (host, port))
            if not self._connected:
                raise UdpError("no peer: call connect() or pass host and port")
            return sock.send(data)
        except OSError as exc:
            raise UdpError(f"send failed: {exc}", exc.errno) from exc

    def receive(self, max_bytes: int = 65535) -> Optional[UdpPacket]:
        sock = self._sock
        if self._closed:
            return None
        if sock is None:
            raise UdpError("socket not open")
        if max_bytes <= 0:
            return UdpPacket(b"", "", 0)
        try:
            data, address = sock.recvfrom(max_bytes)
        except socket.timeout:
            return None
        except OSError as exc:
            if self._closed:
                return None
            raise UdpError(f"receive failed: {exc}", exc.errno) from exc
        return UdpPacket(data, address[0], address[1])

    def local_address(self) -> Optional[Tuple[str, int]]:
        return self._sock.getsockname() if self._sock is not None else None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._connected = False
            if self._sock is not None:
                self._sock.close()


class StdlibTcpSocket(TcpSocket):
    def __init__(self, connect_timeout: float = TCP_CONNECT_TIMEOUT_SECONDS):
        self.connect_timeout = connect_timeout
        self._sock: Optional[socket.socket] = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self, host: str, port: int) -> None:
        if self._sock is not None or self._closed:
            raise TcpError("socket already open")
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except OSError as exc:
            raise TcpError(f"connect {host}:{port} failed: {exc}", exc.errno) from exc
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(RECEIVE_POLL_SECONDS)
        with self._lock:
            if self._closed:
                sock.close()
                raise TcpError("socket closed during connect")
            self._sock = sock

    def send_all(self, data: bytes) -> int:
        sock = self._sock
        if sock is None or self._closed:
            raise TcpError("socket not open")
        view = memoryview(data)
        sent = 0
        while sent < len(view):
            try:
                sent += sock.send(view[sent:])
            except socket.timeout:
                if self._closed:
                    raise TcpError("socket closed during send")
            except OSError as exc:
                raise TcpError(f"send failed: {exc}", exc.errno) from exc
        return sent

    def receive(self, max_bytes: int = 4096) -> bytes:
        sock = self._sock
        if self._closed:
            return b""
        if sock is None:
            raise TcpError("socket not open")
        if max_bytes <= 0:
            return b""
        try:
            return sock.recv(max_bytes)
        except socket.timeout:
            return b""
        except OSError as exc:
            if self._closed:
                return b""
            raise TcpError(f"receive failed: {exc}", exc.errno) from exc

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._sock is not None:
                try:
                    self._sock.shutdown(socket.SHUT_RDWR)
                except OSError:
                    LOGGER.debug("TCP shutdown on an unconnected socket")
                self._sock.close()


class CountingTcpSocket(TcpSocket):
    """Counts application-layer bytes passing through a TCP socket.

    The counts match what is handed to ``send_all`` and returned by
    ``receive``; TCP headers and TLS framing are not included.
    """

    def __init__(self, delegate: Optional[TcpSocket] = None):
        self._delegate = delegate or StdlibTcpSocket()
        self._lock = threading.Lock()
        self._sent = 0
        self._received = 0

    @property
    def sent_bytes(self) -> int:
        with self._lock:
            return self._sent

    @property
    def received_bytes(self) -> int:
        with self._lock:
            return self._received

    @property
    def closed(self) -> bool:
        return self._delegate.closed

    def snapshot(self) -> ByteCounters:
        with self._lock:
            return ByteCounters(bytes_sent=self._sent, bytes_received=self._received)

    def reset_counters(self) -> None:
        with self._lock:
            self._sent = 0
            self._received = 0

    def connect(self, host: str, port: int) -> None:
        self._delegate.connect(host, port)

    def send_all(self, data: bytes) -> int:
        count = self._delegate.send_all(data)
        with self._lock:
            self._sent += count
        return count

    def receive(self, max_bytes: int = 4096) -> bytes:
        data = self._delegate.receive(max_bytes)
        with self._lock:
            self._received += len(data)
        return data

    def close(self) -> None:
        self._delegate.close()


class socket_factory:
    """Single place that decides which socket implementation is used."""

    @staticmethod
    def udp() -> UdpSocket:
        return StdlibUdpSocket()

    @staticmethod
    def tcp() -> TcpSocket:
        return StdlibTcpSocket()

    @staticmethod
    def counting_tcp() -> CountingTcpSocket:
        return CountingTcpSocket(StdlibTcpSocket())
