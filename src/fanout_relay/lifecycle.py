import asyncio
import signal
from collections.abc import Iterable

import structlog

logger = structlog.get_logger("Lifecycle")


class LifecycleController:
    """Blocks the main task until SIGINT/SIGTERM (or a manual request) arrives."""

    def __init__(self, signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM)) -> None:
        self.signals = tuple(signals)
        self.received: signal.Signals | None = None
        self._stop = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None

    def install(self) -> None:
        self._loop = asyncio.get_running_loop()
        for sig in self.signals:
            self._loop.add_signal_handler(sig, self.request_shutdown, sig)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self.signals:
            self._loop.remove_signal_handler(sig)
        self._loop = None

    def request_shutdown(self, sig: signal.Signals | None = None) -> None:
        if self._stop.is_set():
            return
        self.received = sig
        logger.info("Shutdown requested", signal=sig.name if sig else None)
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def wait(self) -> signal.Signals | None:
        logger.info("awaiting signal")
        await self._stop.wait()
        logger.info("exiting", signal=self.received.name if self.received else None)
        return self.received
