"""Minimal blocking WebSocket client interface over ``websockets.sync``."""

from __future__ import annotations

import abc
import logging
import socket
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Sequence, Union

from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK
from websockets.sync.client import ClientConnection, connect
from websockets.typing import Subprotocol

LOGGER = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
DEFAULT_OPEN_TIMEOUT = 10.0


@dataclass(frozen=True)
class TextMessage:
    text: str


@dataclass(frozen=True)
class BinaryMessage:
    data: bytes


Message = Union[TextMessage, BinaryMessage]


class WebSocketClosedError(Exception):
    """The peer or the transport closed the connection abnormally."""

    def __init__(self, code: int, reason: str = ""):
        super().__init__(f"websocket closed abnormally ({code}) {reason}".rstrip())
        self.code = code
        self.reason = reason


def _close_details(exc: ConnectionClosed):
    frame = exc.rcvd
    if frame is None:
        return ABNORMAL_CLOSURE, ""
    return frame.code, frame.reason


class WebSocket(abc.ABC):
    @abc.abstractmethod
    def incoming(self) -> Iterator[Message]:
        """Blocking iterator over received messages.

        Ends on a normal close and raises :class:`WebSocketClosedError` on an
        abnormal one.
        """

    @abc.abstractmethod
    def send_text(self, text: str) -> None:
        ...

    @abc.abstractmethod
    def send_binary(self, data: bytes) -> None:
        ...

    def ping(self, payload: Optional[bytes] = None) -> None:
        """Optional; implementations without ping control may leave this a no-op."""

    @abc.abstractmethod
    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        ...

    @abc.abstractmethod
    def abort(self) -> None:
        """Drop the connection without the closing handshake."""

    @property
    def subprotocol(self) -> Optional[str]:
        return None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SyncWebSocket(WebSocket):
    """Owns one entered ``websockets`` client connection.

    The connection is entered on an :class:`~contextlib.ExitStack` at connect
    time and exited by :meth:`close`, so every way out releases the transport.
    """

    def __init__(self, connection: ClientConnection, exits: Optional[ExitStack] = None):
        self._conn = connection
        self._exits = exits or ExitStack()

    @property
    def subprotocol(self) -> Optional[str]:
        return self._conn.subprotocol

    @property
    def local_address(self):
        return self._conn.local_address

    @property
    def remote_address(self):
        return self._conn.remote_address

    def incoming(self) -> Iterator[Message]:
        try:
            for message in self._conn:
                if isinstance(message, str):
                    yield TextMessage(message)
                else:
                    yield BinaryMessage(bytes(message))
        except ConnectionClosedOK:
            return
        except ConnectionClosedError as exc:
            raise WebSocketClosedError(*_close_details(exc)) from exc

    def _send(self, payload) -> None:
        try:
            self._conn.send(payload)
        except ConnectionClosed as exc:
            raise WebSocketClosedError(*_close_details(exc)) from exc

    def send_text(self, text: str) -> None:
        self._send(text)

    def send_binary(self, data: bytes) -> None:
        self._send(data)

    def ping(self, payload: Optional[bytes] = None) -> None:
        self._conn.ping(payload)

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        try:
            self._conn.close(code, reason)
        finally:
            self._exits.close()

    def abort(self) -> None:
        try:
            self._conn.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            LOGGER.debug("WebSocket transport already shut down")
        self._conn.socket.close()


def connect_websocket(
    url: str,
    subprotocols: Sequence[str] = (),
    headers: Optional[Dict[str, str]] = None,
    user_agent: Optional[str] = None,
    open_timeout: float = DEFAULT_OPEN_TIMEOUT,
) -> SyncWebSocket:
    """Open a ``ws://`` or ``wss://`` connection, honouring headers and subprotocols on upgrade."""

    kwargs = {}
    if user_agent:
        kwargs["user_agent_header"] = user_agent
    exits = ExitStack()
    connection = exits.enter_context(
        connect(
            url,
            subprotocols=[Subprotocol(name) for name in subprotocols] or None,
            additional_headers=headers or None,
            open_timeout=open_timeout,
            max_size=None,
            compression=None,
            **kwargs,
        )
    )
    LOGGER.debug("WebSocket connected to %s (subprotocol %s)", url, connection.subprotocol)
    return SyncWebSocket(connection, exits)
