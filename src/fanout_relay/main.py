import asyncio
import logging
import logging.handlers
import os
import sys
import typing

import structlog

from .config import Settings
from .health import build_server, serve_health
from .lifecycle import LifecycleController
from .manager import RelayManager
from .models import RelayConfig
from .relay import RelayStartupError
from .remote import load_config
from .status import heartbeat_loop


def setup_logging(settings: Settings) -> None:
    level = logging.DEBUG if settings.DEBUG else logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Bridge Setup
    pre_chain: list[typing.Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    json_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )
    if settings.PRETTY:
        console_formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
            foreign_pre_chain=pre_chain,
        )
    else:
        console_formatter = json_formatter

    handlers: list[logging.Handler] = []

    # Stdout
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(console_formatter)
    handlers.append(sh)

    # File
    if settings.LOG_DIR:
        try:
            os.makedirs(settings.LOG_DIR, exist_ok=True)
            file_handler = logging.handlers.TimedRotatingFileHandler(
                os.path.join(settings.LOG_DIR, "fanout_relay.log"),
                when="midnight",
                interval=1,
                backupCount=30,
                encoding="utf-8",
            )
            file_handler.setFormatter(json_formatter)
            handlers.append(file_handler)
        except OSError as e:
            print(f"Failed to setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = structlog.get_logger("Main")


async def supervise(manager: RelayManager, config: RelayConfig) -> None:
    await manager.start(config)
    await manager.join()


async def run(settings: Settings) -> int:
    """Fetch configuration, run the relays and block until a shutdown signal. Returns exit code."""
    lifecycle = LifecycleController()
    lifecycle.install()

    manager = RelayManager(settings)
    health_server = build_server(settings) if settings.HEALTH_ENABLED else None
    background: list[asyncio.Task[None]] = []
    waiters: list[asyncio.Task[typing.Any]] = []

    try:
        if health_server is not None:
            background.append(asyncio.create_task(serve_health(health_server), name="health"))
            logger.info("Health endpoint", host=settings.HEALTH_HOST, port=settings.HEALTH_PORT)

        config = await load_config(settings)

        if settings.STATUS_FILE:
            background.append(
                asyncio.create_task(
                    heartbeat_loop(settings.STATUS_FILE, manager, settings.STATUS_INTERVAL),
                    name="heartbeat",
                )
            )

        relays = asyncio.create_task(supervise(manager, config), name="relays")
        shutdown = asyncio.create_task(lifecycle.wait(), name="lifecycle")
        waiters.extend([relays, shutdown])

        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if relays in done:
            # Raises the startup error in strict mode
            relays.result()
            await shutdown
        return 0

    except RelayStartupError as e:
        logger.critical("Fatal relay startup error", error=str(e))
        return 1

    finally:
        for task in waiters:
            task.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)
        await manager.stop()

        if health_server is not None:
            health_server.should_exit = True
        for task in background:
            if task.get_name() != "health":
                task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

        lifecycle.uninstall()
        logger.info("Shutdown complete.")


def main() -> None:
    settings = Settings()
    setup_logging(settings)
    logger.info("Starting Fanout Relay...")

    try:
        code = asyncio.run(run(settings))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
