import socket
import threading
import time

import pytest

from msak.measurements.models import ByteCounters
from msak.net.sockets import RECEIVE_POLL_SECONDS, StdlibUdpSocket, TcpError, UdpError, socket_factory


def _receive_within(sock, seconds=2.0):
    deadline = time.monotonic() + seconds
    while time.monotonic() < deadline:
        packet = sock.receive()
        if packet is not None:
            return packet
    return None


def test_udp_loopback_exchange():
    with socket_factory.udp() as server, socket_factory.udp() as client:
        server.bind("127.0.0.1", 0)
        host, port = server.local_address()
        client.connect(host, port)
        assert client.remote_address == ("127.0.0.1", port)

        client.send(b"ping")
        request = _receive_within(server)
        assert request is not None and request.data == b"ping"

        server.send(b"pong", request.host, request.port)
        reply = _receive_within(client)
        assert reply is not None and reply.data == b"pong"
        assert (reply.host, reply.port) == client.remote_address


def test_close_unblocks_receive():
    sock = StdlibUdpSocket()
    sock.bind("127.0.0.1", 0)
    returned = threading.Event()

    def loop():
        while True:
            if sock.receive() is None and sock.closed:
                returned.set()
                return

    worker = threading.Thread(target=loop, daemon=True)
    worker.start()
    time.sleep(0.05)
    closed_at = time.monotonic()
    sock.close()
    assert returned.wait(RECEIVE_POLL_SECONDS + 0.1)
    assert time.monotonic() - closed_at < RECEIVE_POLL_SECONDS + 0.1


def test_udp_close_is_idempotent_and_receive_returns_none():
    sock = StdlibUdpSocket()
    sock.bind("127.0.0.1", 0)
    sock.close()
    sock.close()
    assert sock.receive() is None
    with pytest.raises(UdpError):
        sock.send(b"x", "127.0.0.1", 9)


def test_udp_send_without_peer_fails():
    with StdlibUdpSocket() as sock:
        sock.bind("127.0.0.1", 0)
        with pytest.raises(UdpError):
            sock.send(b"x")


@pytest.fixture
def tcp_echo_server():
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]

    def serve():
        conn, _ = listener.accept()
        with conn:
            while True:
                data = conn.recv(4096)
                if not data:
                    return
                conn.sendall(data)

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield port
    listener.close()
    thread.join(timeout=2)


def test_counting_tcp_socket_counts_application_bytes(tcp_echo_server):
    sock = socket_factory.counting_tcp()
    sock.connect("127.0.0.1", tcp_echo_server)
    payload = b"x" * 10_000
    assert sock.send_all(payload) == len(payload)

    received = 0
    deadline = time.monotonic() + 5
    while received < len(payload) and time.monotonic() < deadline:
        received += len(sock.receive(4096))

    assert sock.snapshot() == ByteCounters(bytes_sent=10_000, bytes_received=10_000)
    sock.reset_counters()
    assert sock.snapshot() == ByteCounters(0, 0)
    sock.close()
    assert sock.closed
    assert sock.receive() == b""


def test_tcp_connect_refused():
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()
    with pytest.raises(TcpError):
        socket_factory.tcp().connect("127.0.0.1", port)


def test_tcp_close_unblocks_receive(tcp_echo_server):
    sock = socket_factory.tcp()
    sock.connect("127.0.0.1", tcp_echo_server)
    returned = threading.Event()

    def loop():
        while True:
            if sock.receive() == b"" and sock.closed:
                returned.set()
                return

    worker = threading.Thread(target=loop, daemon=True)
    worker.start()
    time.sleep(0.05)
    closed_at = time.monotonic()
    sock.close()
    assert returned.wait(RECEIVE_POLL_SECONDS + 0.1)
    assert time.monotonic() - closed_at < RECEIVE_POLL_SECONDS + 0.1
