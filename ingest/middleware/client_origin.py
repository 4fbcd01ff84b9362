"""Client origin resolution for access logs."""
from fastapi import Request
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
import structlog


def resolve_client_ip(headers: Headers, peer: str | None) -> str | None:
    """
    Pick the canonical client address.

    Checks True-Client-IP, then X-Real-IP, then the first X-Forwarded-For
    entry, and falls back to the transport peer.
    """
    for header in ("true-client-ip", "x-real-ip"):
        value = headers.get(header, "").strip()
        if value:
            return value

    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first

    return peer


class ClientOriginMiddleware(BaseHTTPMiddleware):
    """Binds the resolved client address to the logging context."""

    async def dispatch(self, request: Request, call_next):
        peer = request.client.host if request.client else None
        client_ip = resolve_client_ip(request.headers, peer)

        structlog.contextvars.bind_contextvars(client_ip=client_ip)

        return await call_next(request)
