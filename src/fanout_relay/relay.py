import asyncio
import socket
import typing
from collections.abc import Sequence
from dataclasses import asdict, dataclass

import structlog

from .routing import split_host_port

logger = structlog.get_logger("Relay")


class RelayStartupError(Exception):
    """A relay could not be set up. Raised before its receive loop starts."""


@dataclass
class RelayStats:
    packets_received: int = 0
    bytes_received: int = 0
    packets_forwarded: int = 0
    send_errors: int = 0
    receive_errors: int = 0


@dataclass
class ForwardTarget:
    address: str
    remote: tuple[typing.Any, ...]
    sock: socket.socket


class UdpRelay:
    """Receives datagrams on one UDP port and copies each one to every target."""

    def __init__(
        self,
        name: str,
        listen_port: int,
        targets: Sequence[str],
        listen_ip: str = "0.0.0.0",
        body_size: int = 4096,
    ) -> None:
        if not targets:
            raise RelayStartupError(f"{name}: must specify at least one forward target")
        if body_size < 1:
            raise ValueError("body_size must be positive")

        self.name = name
        self.listen_ip = listen_ip
        self.listen_port = listen_port
        self.body_size = body_size
        self.target_addresses: tuple[str, ...] = tuple(targets)

        self.sock: socket.socket | None = None
        self.targets: list[ForwardTarget] = []
        self.running = False
        self.stats = RelayStats()
        self.log = logger.bind(relay=name)

    @property
    def local_address(self) -> tuple[typing.Any, ...] | None:
        """Bound listening address; resolves an ephemeral port 0."""
        if self.sock is None or self.sock.fileno() < 0:
            return None
        return typing.cast(tuple[typing.Any, ...], self.sock.getsockname())

    async def start(self) -> None:
        """Resolve and connect every target, then bind the listening socket."""
        loop = asyncio.get_running_loop()
        try:
            for address in self.target_addresses:
                self.targets.append(await self._connect_target(loop, address))
            self.sock = self._bind_listener()
        except RelayStartupError:
            self.close()
            raise

        self.running = True
        self.log.info("Server started", ip=self.listen_ip, port=self.sock.getsockname()[1])
        total = len(self.targets)
        for num, target in enumerate(self.targets, start=1):
            self.log.info(
                "Forwarding target configured",
                num=num,
                total=total,
                addr=f"{target.remote[0]}:{target.remote[1]}",
                target=target.address,
            )

    async def _connect_target(
        self, loop: asyncio.AbstractEventLoop, address: str
    ) -> ForwardTarget:
        try:
            host, port = split_host_port(address)
        except ValueError as e:
            raise RelayStartupError(f"Could not parse forward target {address} ({e})") from e
        if port is None:
            port = self.listen_port

        try:
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
        except (OSError, UnicodeError) as e:
            # UnicodeError: hostname fails IDNA encoding, e.g. an empty label
            raise RelayStartupError(f"Could not resolve {address} ({e})") from e
        if not infos:
            raise RelayStartupError(f"Could not resolve {address} (no addresses)")

        family, _, proto, _, remote = infos[0]
        sock = socket.socket(family, socket.SOCK_DGRAM, proto)
        try:
            sock.setblocking(False)
            sock.connect(remote)
        except OSError as e:
            sock.close()
            raise RelayStartupError(f"Could not connect to {address} {remote} ({e})") from e

        return ForwardTarget(address=address, remote=tuple(remote), sock=sock)

    def _bind_listener(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.listen_ip else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind((self.listen_ip, self.listen_port))
        except OSError as e:
            sock.close()
            raise RelayStartupError(
                f"Could not listen on {self.listen_ip}:{self.listen_port} ({e})"
            ) from e
        return sock

    async def serve(self) -> None:
        """
        Receive loop. Runs until the task is cancelled.

        Each datagram is fanned out to all targets before the next read.
        Datagrams longer than body_size are truncated by the read.
        """
        if self.sock is None:
            raise RuntimeError("start() must complete before serve()")

        loop = asyncio.get_running_loop()
        sock = self.sock
        while self.running:
            try:
                data, addr = await loop.sock_recvfrom(sock, self.body_size)
            except OSError as e:
                if not self.running:
                    break
                self.stats.receive_errors += 1
                self.log.error("Receive failed", error=str(e))
                continue

            self.stats.packets_received += 1
            self.stats.bytes_received += len(data)
            self.log.debug("Received packet", source=f"{addr[0]}:{addr[1]}", size=len(data))
            self.forward(data)

    def forward(self, data: bytes) -> None:
        """Write data to every target in order. One failing target never stops the rest."""
        for target in self.targets:
            try:
                target.sock.send(data)
            except OSError as e:
                self.stats.send_errors += 1
                self.log.warning("Could not forward packet", target=target.address, error=str(e))
            else:
                self.stats.packets_forwarded += 1
                self.log.debug("Wrote to target", target=target.address, size=len(data))

    async def run(self) -> None:
        await self.start()
        try:
            await self.serve()
        finally:
            self.close()

    def close(self) -> None:
        """Release the listening socket and all target sockets. Safe to call twice."""
        was_open = self.sock is not None and self.sock.fileno() >= 0
        self.running = False
        if self.sock is not None:
            self.sock.close()
        for target in self.targets:
            target.sock.close()
        if was_open:
            self.log.info("Relay closed", **asdict(self.stats))

    def snapshot(self) -> dict[str, typing.Any]:
        return {
            "name": self.name,
            "listen_ip": self.listen_ip,
            "listen_port": self.listen_port,
            "targets": list(self.target_addresses),
            "running": self.running,
            **asdict(self.stats),
        }
