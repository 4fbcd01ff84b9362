"""Per-request timeout enforcement."""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import structlog
from starlette.responses import JSONResponse

from ..config import REQUEST_TIMEOUT_SECONDS

log = structlog.get_logger()


class TimeoutMiddleware:
    """
    Cancels the inner chain once a request runs past the ceiling.

    Written as plain ASGI so the timeout cancels the handler itself. Only
    the request that timed out is affected.
    """

    def __init__(self, app: Callable[..., Any], timeout: float = REQUEST_TIMEOUT_SECONDS) -> None:
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal response_started
            if message.get("type") == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_wrapper), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning(
                "http.request_timeout",
                method=scope.get("method"),
                path=scope.get("path"),
                timeout_seconds=self.timeout,
                response_started=response_started,
            )
            if response_started:
                # Headers are already out; the truncated response is all we can do
                return
            response = JSONResponse(
                status_code=504,
                content={
                    "error": "GatewayTimeout",
                    "message": f"Request exceeded {self.timeout:g} seconds",
                    "path": scope.get("path"),
                },
            )
            await response(scope, receive, send)
