"""
Request pipeline middleware.

Registered outermost first:
- Recovery
- Request ID assignment
- Client origin resolution
- Timeout enforcement
- Access logging
"""

from .recovery import RecoveryMiddleware
from .request_id import RequestIdMiddleware
from .client_origin import ClientOriginMiddleware, resolve_client_ip
from .timeout import TimeoutMiddleware
from .access_log import AccessLogMiddleware

__all__ = [
    "RecoveryMiddleware",
    "RequestIdMiddleware",
    "ClientOriginMiddleware",
    "resolve_client_ip",
    "TimeoutMiddleware",
    "AccessLogMiddleware",
]
