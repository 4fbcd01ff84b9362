"""
Event ingest service.

Features:
- In-memory event store with server-assigned ids and receipt times
- Prometheus metrics per route and method
- Structured logging with request IDs
- Graceful shutdown on SIGINT/SIGTERM
"""
import asyncio
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .api.router import metrics_router, router
from .config import REQUEST_TIMEOUT_SECONDS, SERVICE_NAME, get_settings
from .logging import get_logger, setup_logging
from .metrics import Instrumentation
from .middleware import (
    AccessLogMiddleware,
    ClientOriginMiddleware,
    RecoveryMiddleware,
    RequestIdMiddleware,
    TimeoutMiddleware,
)
from .server import Lifecycle, ListenError
from .store import EventStore

logger = get_logger()


def create_app(
    store: EventStore | None = None,
    instrumentation: Instrumentation | None = None,
    request_timeout: float = REQUEST_TIMEOUT_SECONDS,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Event store to serve (a fresh one by default)
        instrumentation: Metrics context to record into (a fresh one by default)
        request_timeout: Per-request ceiling in seconds

    Returns:
        The configured application, with its dependencies on ``app.state``
    """
    store = store if store is not None else EventStore()
    instrumentation = instrumentation if instrumentation is not None else Instrumentation()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("service_starting", version=__version__)
        instrumentation.mark_up()
        yield
        logger.info("service_stopping", events_stored=len(store))
        instrumentation.mark_down()

    app = FastAPI(
        title="Event Ingest",
        version=__version__,
        description="In-memory event ingestion with health and Prometheus metrics",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.instrumentation = instrumentation

    # Last added runs first: recovery is the outermost layer
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(TimeoutMiddleware, timeout=request_timeout)
    app.add_middleware(ClientOriginMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(RecoveryMiddleware)

    app.include_router(router)
    app.include_router(metrics_router)

    return app


def run():
    """Console entry point: serve until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)

    lifecycle = Lifecycle(create_app(), settings.HTTP_ADDR)
    try:
        asyncio.run(lifecycle.serve())
    except ListenError as exc:
        logger.critical("listener.bind_failed", addr=settings.HTTP_ADDR, error=str(exc))
        sys.exit(1)


if __name__ == "__main__":
    run()
