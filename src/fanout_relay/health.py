import contextlib
import typing

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from .config import Settings

logger = structlog.get_logger("Health")

app = FastAPI(title="Fanout Relay", docs_url=None, redoc_url=None, openapi_url=None)


@app.get("/", response_class=PlainTextResponse)
@app.get("/health", response_class=PlainTextResponse)
async def health() -> str:
    """Liveness probe. Says nothing about individual relays."""
    return "ok"


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the LifecycleController."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> typing.Generator[None, None, None]:
        yield


def build_server(settings: Settings) -> HealthServer:
    config = uvicorn.Config(
        app,
        host=settings.HEALTH_HOST,
        port=settings.HEALTH_PORT,
        log_config=None,
        log_level="debug" if settings.DEBUG else "warning",
        access_log=False,
    )
    return HealthServer(config)


async def serve_health(server: HealthServer) -> None:
    """
    Run the health endpoint without letting it take the relays down.

    uvicorn calls sys.exit() when it cannot bind its port. That SystemExit is
    caught here and logged; relays keep forwarding without a health endpoint.
    """
    try:
        await server.serve()
    except SystemExit as e:
        logger.error("Health endpoint failed", port=server.config.port, exit_code=e.code)
    except Exception:
        logger.exception("Health endpoint failed", port=server.config.port)
