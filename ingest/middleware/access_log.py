"""Access logging middleware."""
import asyncio
import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import structlog

log = structlog.get_logger()


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    Logs one ``http_request`` line per request once the handler returns.

    The line is written whatever the outcome. A raised exception is logged
    with status 500; a cancellation by the timeout middleware is logged
    with the 504 the client gets and ``cancelled=True``.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        status_code = 500
        cancelled = False
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except asyncio.CancelledError:
            status_code = 504
            cancelled = True
            raise
        finally:
            duration = time.perf_counter() - start_time
            log.info(
                "http_request",
                method=request.method,
                path=request.url.path,
                http_status=status_code,
                cancelled=cancelled,
                duration_ms=round(duration * 1000, 3),
            )
