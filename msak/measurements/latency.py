"""UDP echo-based round-trip latency test.

Flow: HTTP authorize, initial UDP packet sent with retries, echo loop for the
configured duration after the first reply, then HTTP result fetch. The whole
run happens on one background thread; a second short-lived thread resends the
initial packet until the server answers.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlsplit

import requests

from ..channel import DEFAULT_CAPACITY, UpdateChannel
from ..errors import (
    AuthorizeFailureError,
    IllegalStateError,
    InitialPacketTimeoutError,
    NoResultError,
    ResultFailureError,
    RunCanceledError,
    UnauthorizedError,
)
from ..net.http import HttpClient
from ..net.sockets import UdpError, UdpSocket, socket_factory
from .codec import (
    decode_latency_authorization,
    decode_latency_message,
    decode_latency_result,
    encode_latency_message,
)
from .models import LatencyAuthorization, LatencyConfig, LatencyMessage, LatencyResult, LatencyUpdate

LOGGER = logging.getLogger(__name__)

INITIAL_ATTEMPTS = 3
RX_BUFFER_SIZE = 2048
LOOPBACK_HOSTS = ("127.0.0.1", "10.0.2.2")


class LatencyTest:
    """One latency run against one server.

    Updates are delivered on :attr:`updates`, which closes when the run ends.
    After that :attr:`result` or :attr:`error` holds the outcome.
    """

    def __init__(
        self,
        config: LatencyConfig,
        http: Optional[HttpClient] = None,
        sockets=socket_factory,
        channel_capacity: int = DEFAULT_CAPACITY,
    ):
        self.config = config
        self.authorize_url = config.server.latency_authorize_url()
        self.result_url = config.server.latency_result_url()
        self.server_host = urlsplit(self.authorize_url).hostname
        self._http = http or HttpClient(user_agent=config.user_agent)
        self._sockets = sockets

        self.updates: UpdateChannel[LatencyUpdate] = UpdateChannel(channel_capacity, name="latency")
        self.history: List[LatencyUpdate] = []
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.result: Optional[LatencyResult] = None
        self.error: Optional[BaseException] = None

        self._lock = threading.Lock()
        self._started = False
        self._socket: Optional[UdpSocket] = None
        self._thread: Optional[threading.Thread] = None
        self._canceled = threading.Event()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def ended(self) -> bool:
        return self.end_time is not None

    def start(self) -> None:
        with self._lock:
            if self._started:
                raise IllegalStateError("latency test already started")
            self._started = True
        self._thread = threading.Thread(target=self._run_guarded, name="latency-test", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Abort the run. A no-op once the run has ended."""

        if not self._started:
            raise IllegalStateError("can't stop a latency test before starting it")
        if self.ended:
            return
        LOGGER.info("Stopping latency test against %s", self.server_host)
        self._canceled.set()
        self._finish(RunCanceledError("latency test stopped"))

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.ended

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def _run_guarded(self) -> None:
        try:
            self._run()
        except Exception as exc:
            if self._canceled.is_set():
                exc = RunCanceledError("latency test stopped")
            LOGGER.info("Latency test against %s failed: %s", self.server_host, exc)
            self._finish(exc)
        else:
            self._finish(None)

    def _finish(self, error: Optional[BaseException]) -> None:
        with self._lock:
            if self.end_time is not None:
                return
            self.end_time = datetime.now(timezone.utc)
            self.error = error
            sock = self._socket
        if sock is not None:
            sock.close()
        self.updates.close()

    def _record(self, update: LatencyUpdate) -> None:
        if self.updates.closed:
            return
        self.history.append(update)
        self.updates.send(update)

    # ------------------------------------------------------------------
    # flow
    # ------------------------------------------------------------------

    def _run(self) -> None:
        auth = self._authorize()
        LOGGER.debug("Authorized: Type=%s ID=%s Seq=%s", auth.type, auth.id, auth.seq)
        initial = LatencyMessage(type=auth.type, id=auth.id, seq=auth.seq)

        sock = self._sockets.udp()
        with self._lock:
            if self.end_time is not None:
                sock.close()
                raise RunCanceledError("latency test stopped")
            self._socket = sock
        try:
            try:
                sock.connect(self.server_host, self.config.udp_port)
            except (OSError, UdpError) as exc:
                LOGGER.info("UDP connect to %s:%s failed: %s", self.server_host, self.config.udp_port, exc)
                raise InitialPacketTimeoutError(exc) from exc

            got_first = self._echo_packets(sock, encode_latency_message(initial))
            if self._canceled.is_set():
                raise RunCanceledError("latency test stopped")
            if not got_first:
                raise InitialPacketTimeoutError()

            self.result = self._fetch_result()
            LOGGER.debug("Latency result: %s", self.result)
        finally:
            sock.close()
            with self._lock:
                self._socket = None

    def _authorize(self) -> LatencyAuthorization:
        LOGGER.debug("Authorize -> %s", self.authorize_url)
        headers = {"Accept": "application/json"}
        if self.server_host in LOOPBACK_HOSTS:
            headers["Host"] = "localhost"
        try:
            response = self._http.get(self.authorize_url, headers)
        except requests.RequestException as exc:
            LOGGER.error("Authorize request to %s failed: %s", self.authorize_url, exc)
            raise AuthorizeFailureError(exc) from exc

        body = response.text or ""
        if not 200 <= response.status_code < 300:
            LOGGER.error("Authorize returned HTTP %s; body=%r", response.status_code, body[:200])
            raise UnauthorizedError(f"authorize returned HTTP {response.status_code}")
        if not body.strip():
            LOGGER.error("Authorize returned an empty body from %s", self.authorize_url)
            raise UnauthorizedError("authorize returned an empty body")
        try:
            return decode_latency_authorization(body)
        except ValueError as exc:
            LOGGER.error("Authorize JSON decode failed; body=%r", body[:200])
            raise UnauthorizedError("authorize returned malformed JSON") from exc

    def _fetch_result(self) -> LatencyResult:
        try:
            response = self._http.get(self.result_url, {"Accept": "application/json"})
        except requests.RequestException as exc:
            LOGGER.error("Result request to %s failed: %s", self.result_url, exc)
            raise ResultFailureError(exc) from exc
        body = response.text or ""
        if not 200 <= response.status_code < 300:
            LOGGER.error("Result returned HTTP %s; body=%r", response.status_code, body[:200])
            raise NoResultError()
        try:
            return decode_latency_result(body)
        except ValueError as exc:
            LOGGER.error("Result JSON decode failed; body=%r", body[:200])
            raise NoResultError(exc) from exc

    def _send_initial(self, sock: UdpSocket, payload: bytes, halt: threading.Event) -> None:
        for attempt in range(INITIAL_ATTEMPTS):
            LOGGER.debug("Sending initial packet; %d attempt(s) remaining", INITIAL_ATTEMPTS - attempt - 1)
            try:
                sock.send(payload)
            except UdpError as exc:
                LOGGER.error("Initial UDP send failed: %s", exc)
            wait_ms = self.config.retry_delay_ms + self.config.retry_backoff_ms * attempt
            if halt.wait(wait_ms / 1000.0):
                return
        LOGGER.info("No response to initial packet from %s", self.server_host)
        # unblocks the receive loop
        sock.close()

    def _echo_packets(self, sock: UdpSocket, initial_payload: bytes) -> bool:
        self.start_time = datetime.now(timezone.utc)
        halt = threading.Event()
        retry = threading.Thread(
            target=self._send_initial,
            args=(sock, initial_payload, halt),
            name="latency-initial",
            daemon=True,
        )
        retry.start()

        peer = sock.remote_address
        deadline: Optional[float] = None
        received = 0
        try:
            while True:
                if deadline is not None and time.monotonic() >= deadline:
                    break
                try:
                    packet = sock.receive(RX_BUFFER_SIZE)
                except UdpError as exc:
                    if sock.closed:
                        break
                    LOGGER.debug("UDP receive failed, polling again: %s", exc)
                    continue
                if packet is None:
                    if sock.closed:
                        break
                    continue
                if peer is not None and (packet.host, packet.port) != peer:
                    LOGGER.debug("Ignoring packet from unexpected peer %s:%s", packet.host, packet.port)
                    continue

                now = time.monotonic()
                if deadline is None:
                    halt.set()
                    deadline = now + self.config.duration_ms / 1000.0
                elif now >= deadline:
                    break

                try:
                    message = decode_latency_message(packet.data)
                except ValueError:
                    LOGGER.warning("Skipping undecodable latency payload %r", packet.data[:200])
                    continue
                received += 1
                self._record(LatencyUpdate(datetime.now(timezone.utc), message, packet.data))

                try:
                    sock.send(packet.data)
                except UdpError as exc:
                    if not self.ended:
                        LOGGER.error("Failed to echo UDP packet: %s", exc)
        finally:
            halt.set()
            retry.join(timeout=1.0)

        LOGGER.debug("Echo loop finished after %d packet(s)", received)
        return deadline is not None
