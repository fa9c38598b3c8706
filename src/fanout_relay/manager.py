import asyncio
import typing
from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from .config import Settings
from .models import RelayConfig, Source
from .relay import RelayStartupError, UdpRelay
from .routing import resolve_targets

logger = structlog.get_logger("RelayManager")


@dataclass(frozen=True)
class RelayPlan:
    name: str
    source: Source
    targets: tuple[str, ...]


class RelayManager:
    """
    Starts one UdpRelay per enabled source and keeps a task handle for each.

    Relays are started one after another with a short pause in between, so a
    failing relay shows up in the logs next to its own startup lines. Relays
    are never restarted. A startup failure either stops everything
    (STRICT_STARTUP) or is logged while the other relays keep running.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.relays: dict[str, UdpRelay] = {}
        self.tasks: dict[str, asyncio.Task[None]] = {}

    def plan(self, config: RelayConfig) -> list[RelayPlan]:
        """
        Kinds in config order, sources in document order, disabled sources left out.

        Plan names are unique; a repeated source id gets a "#n" suffix so every
        relay keeps its own task handle.
        """
        servers = config.enabled_servers()
        plans: list[RelayPlan] = []
        names: set[str] = set()
        for kind, sources in config.sources.items():
            for source in sources:
                if not source.enabled:
                    logger.debug("Skipping disabled source", kind=kind, id=source.id)
                    continue
                name = base = f"{kind}/{source.id}"
                suffix = 1
                while name in names:
                    suffix += 1
                    name = f"{base}#{suffix}"
                if name != base:
                    logger.warning("Duplicate source id", kind=kind, id=source.id, relay=name)
                names.add(name)
                targets = tuple(resolve_targets(source, servers))
                plans.append(RelayPlan(name=name, source=source, targets=targets))
        return plans

    async def start(self, config: RelayConfig) -> None:
        plans = self.plan(config)
        logger.info("Starting relays", count=len(plans))

        for idx, plan in enumerate(plans):
            if idx > 0:
                await asyncio.sleep(self.settings.START_DELAY)
                self._collect(task for task in self.tasks.values() if task.done())

            try:
                relay = UdpRelay(
                    plan.name,
                    plan.source.listen_port,
                    plan.targets,
                    listen_ip=self.settings.listen_ip,
                    body_size=self.settings.BODY_SIZE,
                )
            except RelayStartupError as e:
                self._failed(plan.name, e)
                continue

            self.relays[plan.name] = relay
            self.tasks[plan.name] = asyncio.create_task(relay.run(), name=plan.name)

    async def join(self) -> None:
        """Wait on the relay tasks. Raises on the first failure in strict mode."""
        while self.tasks:
            done, _ = await asyncio.wait(
                list(self.tasks.values()), return_when=asyncio.FIRST_COMPLETED
            )
            self._collect(done)
        logger.warning("No relays running")

    def _collect(self, finished: Iterable[asyncio.Task[None]]) -> None:
        for task in list(finished):
            name = task.get_name()
            self.tasks.pop(name, None)
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                logger.warning("Relay stopped", relay=name)
                continue
            if isinstance(exc, RelayStartupError):
                self._failed(name, exc)
                continue
            logger.error("Relay crashed", relay=name, error=repr(exc))
            wrapped = RelayStartupError(f"{name}: relay crashed ({exc!r})")
            wrapped.__cause__ = exc
            self._failed(name, wrapped)

    def _failed(self, name: str, exc: RelayStartupError) -> None:
        if self.settings.STRICT_STARTUP:
            logger.error("Relay failed to start", relay=name, error=str(exc))
            raise exc
        logger.error("Relay failed to start, continuing without it", relay=name, error=str(exc))

    async def stop(self) -> None:
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()

        for relay in self.relays.values():
            relay.close()
        logger.info("All relays stopped", count=len(self.relays))

    def snapshot(self) -> list[dict[str, typing.Any]]:
        return [relay.snapshot() for relay in self.relays.values()]
