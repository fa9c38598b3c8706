import asyncio
import json
import os
import time
import typing

import psutil
import structlog

from .manager import RelayManager

logger = structlog.get_logger("Status")


def build_status(manager: RelayManager) -> dict[str, typing.Any]:
    relays = manager.snapshot()
    running = sum(1 for r in relays if r["running"])
    return {
        "service": "fanout_relay",
        "timestamp": time.time(),
        "status": "Running" if running == len(relays) else "Error: Degraded",
        "cpu_percent": psutil.cpu_percent(),
        "memory_usage_mb": psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024,
        "pid": os.getpid(),
        "relays": relays,
    }


def write_status(status_file: str, data: dict[str, typing.Any]) -> None:
    """Atomic write: temp file, then rename over the old status."""
    directory = os.path.dirname(status_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_file = f"{status_file}.tmp"
    with open(tmp_file, "w") as f:
        json.dump(data, f)
    os.replace(tmp_file, status_file)


async def heartbeat_loop(status_file: str, manager: RelayManager, interval: float = 5.0) -> None:
    """Writes the relay heartbeat until cancelled."""
    while True:
        try:
            write_status(status_file, build_status(manager))
        except OSError as e:
            logger.error("Failed to write status", path=status_file, error=str(e))
        except Exception:
            logger.exception("Heartbeat failed")
        await asyncio.sleep(interval)
