import typing

import httpx
import structlog

from .config import Settings
from .models import RelayConfig, Server, Source, decode_records

logger = structlog.get_logger("RemoteConfig")

SERVERS_COLLECTION = "servers"


async def fetch_collection(client: httpx.AsyncClient, base_url: str, name: str) -> typing.Any:
    """GET <base_url>/<name> and return the decoded JSON document."""
    url = f"{base_url.rstrip('/')}/{name}"
    response = await client.get(url)
    response.raise_for_status()
    return response.json()


async def _fetch_or_empty(client: httpx.AsyncClient, base_url: str, name: str) -> typing.Any:
    try:
        return await fetch_collection(client, base_url, name)
    except (httpx.HTTPError, ValueError) as e:
        # Relays for this collection end up with no targets; see STRICT_STARTUP
        logger.error("get conf failed", collection=name, error=str(e))
        return None


async def load_config(settings: Settings) -> RelayConfig:
    """Fetch the servers collection and one collection per source kind."""
    logger.info("Fetching configuration", base_url=settings.JSON_DB, kinds=settings.source_kinds)

    async with httpx.AsyncClient(timeout=settings.FETCH_TIMEOUT) as client:
        raw_servers = await _fetch_or_empty(client, settings.JSON_DB, SERVERS_COLLECTION)
        servers = decode_records(raw_servers, Server, SERVERS_COLLECTION)

        sources: dict[str, list[Source]] = {}
        for kind in settings.source_kinds:
            raw_sources = await _fetch_or_empty(client, settings.JSON_DB, kind)
            sources[kind] = decode_records(raw_sources, Source, kind, kind=kind)

    config = RelayConfig(servers=servers, sources=sources)
    logger.info(
        "Configuration loaded",
        servers=len(config.servers),
        enabled_servers=len(config.enabled_servers()),
        sources={kind: len(config.enabled_sources(kind)) for kind in config.sources},
    )
    return config
