"""
Prometheus instrumentation for the ingest service.

An ``Instrumentation`` object owns its own ``CollectorRegistry`` and is
built once at process start, then handed to the application explicitly.
Tests build their own and assert on it directly.
"""
import asyncio
import functools
import os
import time
from http import HTTPStatus
from typing import Any, Callable, Coroutine

import psutil
import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from . import __version__
from .config import SERVICE_NAME

log = structlog.get_logger()

Handler = Callable[[Request], Coroutine[Any, Any, Response]]


def status_text(code: int) -> str:
    """Human-readable text for a status code, empty when unknown."""
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""


class Instrumentation:
    """
    Request metrics plus process and application metrics.

    prometheus_client metrics lock internally, so concurrent requests can
    record without any coordination of their own.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, service_name: str = SERVICE_NAME, version: str = __version__, registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["route", "method", "code"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency",
            ["route", "method"],
            registry=self.registry,
        )

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )

        self._setup_process_metrics()

    def _setup_process_metrics(self):
        """Set up process-level metrics sampled with psutil at scrape time."""
        self._process = psutil.Process(os.getpid())
        self._last_cpu_total = 0.0

        self.process_cpu_seconds = Counter(
            "process_cpu_seconds_total",
            "Total CPU time consumed by process",
            ["service"],
            registry=self.registry,
        )

        self.process_memory_bytes = Gauge(
            "process_resident_memory_bytes",
            "Resident memory size in bytes",
            ["service"],
            registry=self.registry,
        )

        self.process_open_fds = Gauge(
            "process_open_fds",
            "Number of open file descriptors",
            ["service"],
            registry=self.registry,
        )

        self.update_system_metrics()

    def update_system_metrics(self):
        """Refresh process metrics from psutil."""
        try:
            cpu_times = self._process.cpu_times()
            cpu_total = cpu_times.user + cpu_times.system
            # Counters only go up, so feed them the delta since last sample
            cpu_diff = cpu_total - self._last_cpu_total
            if cpu_diff > 0:
                self.process_cpu_seconds.labels(service=self.service_name).inc(cpu_diff)
            self._last_cpu_total = cpu_total

            self.process_memory_bytes.labels(service=self.service_name).set(
                self._process.memory_info().rss
            )

            # num_fds() only exists on POSIX
            if hasattr(self._process, "num_fds"):
                self.process_open_fds.labels(service=self.service_name).set(self._process.num_fds())
        except psutil.Error as exc:
            log.warning("metrics.process_sample_failed", error=str(exc))

    def observe_request(self, route: str, method: str, status_code: int, duration: float):
        """Record one completed request."""
        self.http_requests_total.labels(route=route, method=method, code=status_text(status_code)).inc()
        self.http_request_duration.labels(route=route, method=method).observe(duration)

    def mark_up(self):
        self.app_up.labels(service=self.service_name, version=self.version).set(1)

    def mark_down(self):
        self.app_up.labels(service=self.service_name, version=self.version).set(0)

    def render(self) -> bytes:
        """Serialize the registry in the Prometheus text exposition format."""
        self.update_system_metrics()
        return generate_latest(self.registry)


def instrument(route: str, handler: Handler) -> Handler:
    """
    Wrap a request handler with status, count and latency recording.

    The response passes through untouched and anything the handler raises
    is re-raised after recording. The instrumentation context comes from
    ``request.app.state.instrumentation``.

    Args:
        route: Route template used as the ``route`` label
        handler: Coroutine taking a request and returning a response

    Returns:
        The wrapped handler
    """

    @functools.wraps(handler)
    async def instrumented(request: Request) -> Response:
        start = time.perf_counter()
        status_code = HTTPStatus.OK
        try:
            response = await handler(request)
            status_code = response.status_code or HTTPStatus.OK
            return response
        except HTTPException as exc:
            status_code = exc.status_code
            raise
        except RequestValidationError:
            status_code = HTTPStatus.UNPROCESSABLE_ENTITY
            raise
        except asyncio.CancelledError:
            # Cancelled by the request timeout
            status_code = HTTPStatus.GATEWAY_TIMEOUT
            raise
        except Exception:
            status_code = HTTPStatus.INTERNAL_SERVER_ERROR
            raise
        finally:
            instrumentation: Instrumentation = request.app.state.instrumentation
            instrumentation.observe_request(
                route, request.method, int(status_code), time.perf_counter() - start
            )

    return instrumented


class InstrumentedRoute(APIRoute):
    """API route that instruments its handler, labeled by the path template."""

    def get_route_handler(self) -> Handler:
        return instrument(self.path, super().get_route_handler())
