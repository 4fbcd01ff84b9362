"""Recovery middleware: turns unhandled exceptions into 500 responses."""
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import structlog
from .request_id import REQUEST_ID_HEADER

log = structlog.get_logger()


class RecoveryMiddleware(BaseHTTPMiddleware):
    """
    Catches anything the inner chain raises so the process keeps serving.

    Runs outside the request ID middleware, so the id is read back from
    ``request.state`` to keep the 500 correlated with its log line.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", None)
            log.error(
                "unhandled.exception",
                error=str(exc),
                error_type=exc.__class__.__name__,
                method=request.method,
                path=request.url.path,
                request_id=request_id,
                exc_info=True,
            )
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "request_id": request_id,
                    "path": str(request.url.path),
                },
            )
            if request_id:
                response.headers[REQUEST_ID_HEADER] = request_id
            return response
