"""
Routing rules: which servers receive which sources, and on which port.

A server's role decides the source kinds it receives:

    proxy -> every kind
    dante -> trlout only
    other -> nothing

A server address with an explicit port is used verbatim. Otherwise the
source's destination port (or its listen port when no destination port is
configured) is appended.
"""

from collections.abc import Iterable

from .models import Server, ServerRole, Source

ANY_KIND = "*"

ROLE_RULES: dict[ServerRole, frozenset[str]] = {
    ServerRole.PROXY: frozenset({ANY_KIND}),
    ServerRole.DANTE: frozenset({"trlout"}),
}


def role_matches(role: ServerRole, kind: str) -> bool:
    kinds = ROLE_RULES.get(role, frozenset())
    return ANY_KIND in kinds or kind.lower() in kinds


def split_host_port(address: str) -> tuple[str, int | None]:
    """Split ``host:port`` or ``[v6]:port``. Bare hosts and IPv6 literals have no port."""
    address = address.strip()

    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"Unterminated IPv6 bracket in {address!r}")
        host, rest = address[1:end], address[end + 1 :]
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise ValueError(f"Unexpected text after IPv6 literal in {address!r}")
        return host, _parse_port(rest[1:], address)

    if address.count(":") == 1:
        host, port = address.split(":")
        return host, _parse_port(port, address)

    # No colon, or an unbracketed IPv6 literal
    return address, None


def _parse_port(value: str, address: str) -> int:
    if not value.isdigit():
        raise ValueError(f"Invalid port in {address!r}")
    port = int(value)
    if not 1 <= port <= 65535:
        raise ValueError(f"Port out of range in {address!r}")
    return port


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def with_default_port(address: str, port: int) -> str:
    host, explicit = split_host_port(address)
    if explicit is not None:
        return address.strip()
    return join_host_port(host, port)


def resolve_targets(source: Source, servers: Iterable[Server]) -> list[str]:
    """
    Build the forward target set for one source.

    Order follows the server iteration order. Disabled servers are skipped even
    if the caller did not filter them. An empty result is returned as-is; it is
    up to the caller to refuse starting a relay without targets.
    """
    targets: list[str] = []
    for server in servers:
        if not server.enabled or not role_matches(server.role, source.kind):
            continue
        try:
            targets.append(with_default_port(server.address, source.forward_port))
        except ValueError:
            # Kept verbatim so the relay refuses it loudly at startup
            targets.append(server.address)
    return targets
