import asyncio
import socket

import pytest
from fanout_relay.config import Settings
from fanout_relay.relay import UdpRelay

SETTINGS_ENV = [
    "JSON_DB",
    "SOURCE_KINDS",
    "FETCH_TIMEOUT",
    "LISTEN_IP",
    "BODY_SIZE",
    "START_DELAY",
    "STRICT_STARTUP",
    "DEBUG",
    "PRETTY",
    "LOG_DIR",
    "HEALTH_ENABLED",
    "HEALTH_HOST",
    "HEALTH_PORT",
    "STATUS_FILE",
    "STATUS_INTERVAL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the host environment out of Settings()."""
    for key in SETTINGS_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        LISTEN_IP="127.0.0.1",
        START_DELAY=0,
        HEALTH_ENABLED=False,
    )


@pytest.fixture
def udp_receiver():
    """Factory for non-blocking UDP sockets bound to an ephemeral loopback port."""
    socks: list[socket.socket] = []

    def _make() -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind(("127.0.0.1", 0))
        sock.setblocking(False)
        socks.append(sock)
        return sock

    yield _make

    for sock in socks:
        sock.close()


@pytest.fixture
def recv_datagram():
    """Await one datagram on a receiver socket, failing the test after a timeout."""

    async def _recv(sock: socket.socket, timeout: float = 2.0) -> bytes:
        loop = asyncio.get_running_loop()
        data, _ = await asyncio.wait_for(loop.sock_recvfrom(sock, 65535), timeout)
        return data

    return _recv


@pytest.fixture
def sender():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    yield sock
    sock.close()


@pytest.fixture
def free_udp_port():
    """A loopback UDP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def make_relay():
    relays: list[UdpRelay] = []

    def _make(targets, listen_port=0, body_size=4096) -> UdpRelay:
        relay = UdpRelay(
            "test/relay", listen_port, targets, listen_ip="127.0.0.1", body_size=body_size
        )
        relays.append(relay)
        return relay

    yield _make

    for relay in relays:
        relay.close()


def address_of(sock: socket.socket) -> str:
    host, port = sock.getsockname()
    return f"{host}:{port}"


@pytest.fixture
def addr():
    return address_of
