import asyncio
import socket
from unittest.mock import AsyncMock, patch

import pytest
from fanout_relay.relay import RelayStartupError, UdpRelay


async def start_serving(relay: UdpRelay) -> asyncio.Task[None]:
    await relay.start()
    return asyncio.create_task(relay.serve())


async def stop_serving(task: asyncio.Task[None]) -> None:
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_empty_targets_rejected():
    with pytest.raises(RelayStartupError, match="at least one forward target"):
        UdpRelay("video/1", 9000, [])


@pytest.mark.asyncio
async def test_fanout_delivers_payload_to_every_target(
    make_relay, udp_receiver, recv_datagram, sender, addr
):
    receivers = [udp_receiver() for _ in range(3)]
    relay = make_relay([addr(r) for r in receivers])
    task = await start_serving(relay)

    payload = b"\x00\x01media-frame\xff" * 10
    sender.sendto(payload, relay.local_address)

    for receiver in receivers:
        assert await recv_datagram(receiver) == payload

    # Exactly once per target
    for receiver in receivers:
        with pytest.raises(asyncio.TimeoutError):
            await recv_datagram(receiver, timeout=0.2)

    await stop_serving(task)
    assert relay.stats.packets_received == 1
    assert relay.stats.packets_forwarded == 3
    assert relay.stats.bytes_received == len(payload)


@pytest.mark.asyncio
async def test_datagrams_forwarded_in_receive_order(
    make_relay, udp_receiver, recv_datagram, sender, addr
):
    receiver = udp_receiver()
    relay = make_relay([addr(receiver)])
    task = await start_serving(relay)

    for i in range(5):
        sender.sendto(f"packet-{i}".encode(), relay.local_address)

    received = [await recv_datagram(receiver) for _ in range(5)]
    assert received == [f"packet-{i}".encode() for i in range(5)]

    await stop_serving(task)


@pytest.mark.asyncio
async def test_oversized_datagram_is_truncated(
    make_relay, udp_receiver, recv_datagram, sender, addr
):
    receiver = udp_receiver()
    relay = make_relay([addr(receiver)], body_size=16)
    task = await start_serving(relay)

    payload = bytes(range(64))
    sender.sendto(payload, relay.local_address)
    assert await recv_datagram(receiver) == payload[:16]

    # Still serving afterwards
    sender.sendto(b"small", relay.local_address)
    assert await recv_datagram(receiver) == b"small"

    await stop_serving(task)


@pytest.mark.asyncio
async def test_failed_target_does_not_block_others(
    make_relay, udp_receiver, recv_datagram, sender, addr
):
    a, b = udp_receiver(), udp_receiver()
    relay = make_relay([addr(a), addr(b)])
    task = await start_serving(relay)

    # A's outbound socket is gone; B must still get the datagram
    relay.targets[0].sock.close()
    sender.sendto(b"still-flowing", relay.local_address)

    assert await recv_datagram(b) == b"still-flowing"
    assert relay.stats.send_errors == 1
    assert relay.stats.packets_forwarded == 1

    await stop_serving(task)


@pytest.mark.asyncio
async def test_forward_attempts_every_target_after_error(make_relay, udp_receiver, addr):
    a, b = udp_receiver(), udp_receiver()
    relay = make_relay([addr(a), addr(b)])
    await relay.start()

    relay.targets[0].sock.close()
    relay.forward(b"x")
    relay.forward(b"y")

    assert relay.stats.send_errors == 2
    assert relay.stats.packets_forwarded == 2


@pytest.mark.asyncio
async def test_receive_error_keeps_loop_running(make_relay, udp_receiver, recv_datagram, addr):
    receiver = udp_receiver()
    relay = make_relay([addr(receiver)])
    await relay.start()

    loop = asyncio.get_running_loop()
    recv = AsyncMock(
        side_effect=[
            OSError("transient"),
            (b"after-error", ("127.0.0.1", 5555)),
            asyncio.CancelledError(),
        ]
    )
    with patch.object(loop, "sock_recvfrom", recv):
        with pytest.raises(asyncio.CancelledError):
            await relay.serve()

    assert relay.stats.receive_errors == 1
    assert relay.stats.packets_received == 1
    assert await recv_datagram(receiver) == b"after-error"
    recv.assert_called_with(relay.sock, 4096)


@pytest.mark.asyncio
async def test_unresolvable_target_is_fatal(make_relay, udp_receiver, addr):
    good = udp_receiver()
    relay = make_relay([addr(good), "no-such-host.invalid:9000"])

    loop = asyncio.get_running_loop()
    real_getaddrinfo = loop.getaddrinfo

    async def fake_getaddrinfo(host, port, **kwargs):
        if host == "no-such-host.invalid":
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return await real_getaddrinfo(host, port, **kwargs)

    with patch.object(loop, "getaddrinfo", side_effect=fake_getaddrinfo):
        with pytest.raises(RelayStartupError, match="no-such-host.invalid:9000"):
            await relay.start()

    # Nothing bound, and the already connected target was released
    assert relay.sock is None
    assert relay.targets[0].sock.fileno() == -1
    assert not relay.running


@pytest.mark.asyncio
async def test_invalid_hostname_is_fatal(make_relay, udp_receiver, addr):
    good = udp_receiver()
    relay = make_relay([addr(good), "a..b:9000"])

    loop = asyncio.get_running_loop()
    real_getaddrinfo = loop.getaddrinfo

    async def fake_getaddrinfo(host, port, **kwargs):
        if host == "a..b":
            raise UnicodeError("encoding with 'idna' codec failed (label empty or too long)")
        return await real_getaddrinfo(host, port, **kwargs)

    with patch.object(loop, "getaddrinfo", side_effect=fake_getaddrinfo):
        with pytest.raises(RelayStartupError, match="Could not resolve a..b:9000"):
            await relay.start()

    assert relay.sock is None
    assert relay.targets[0].sock.fileno() == -1


@pytest.mark.asyncio
async def test_malformed_target_is_fatal(make_relay):
    relay = make_relay(["127.0.0.1:notaport"])
    with pytest.raises(RelayStartupError, match="Could not parse forward target"):
        await relay.start()


@pytest.mark.asyncio
async def test_bind_failure_is_fatal(make_relay, udp_receiver, addr):
    occupied = udp_receiver()
    port = occupied.getsockname()[1]
    target = udp_receiver()

    relay = make_relay([addr(target)], listen_port=port)
    with pytest.raises(RelayStartupError, match=f"Could not listen on 127.0.0.1:{port}"):
        await relay.start()

    assert all(t.sock.fileno() == -1 for t in relay.targets)


@pytest.mark.asyncio
async def test_target_without_port_uses_listen_port(make_relay, free_udp_port):
    relay = make_relay(["127.0.0.1"], listen_port=free_udp_port)
    await relay.start()

    assert relay.targets[0].remote[:2] == ("127.0.0.1", free_udp_port)


@pytest.mark.asyncio
async def test_run_releases_sockets_when_cancelled(make_relay, udp_receiver, addr):
    relay = make_relay([addr(udp_receiver())])
    task = asyncio.create_task(relay.run())

    for _ in range(100):
        if relay.running:
            break
        await asyncio.sleep(0.01)
    assert relay.running
    listener = relay.sock

    await stop_serving(task)

    assert listener.fileno() == -1
    assert relay.targets[0].sock.fileno() == -1
    assert relay.local_address is None
    assert not relay.running


@pytest.mark.asyncio
async def test_close_is_idempotent(make_relay, udp_receiver, addr):
    relay = make_relay([addr(udp_receiver())])
    await relay.start()

    relay.close()
    relay.close()

    snapshot = relay.snapshot()
    assert snapshot["running"] is False
    assert snapshot["listen_ip"] == "127.0.0.1"
    assert snapshot["targets"] == list(relay.target_addresses)


@pytest.mark.asyncio
async def test_serve_requires_start():
    relay = UdpRelay("video/1", 0, ["127.0.0.1:9"])
    with pytest.raises(RuntimeError):
        await relay.serve()
