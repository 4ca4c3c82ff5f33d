"""
Request context middleware for request tracing.

Generates or propagates the X-Request-ID header, puts the id in the logging
ContextVar so every log line of the request carries it, and logs request
start/end with timing.
"""
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.logging import get_logger, set_request_id

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_id(request_id)

        started = time.perf_counter()
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={"client_ip": self._get_client_ip(request)},
        )
        try:
            response = await call_next(request)
            logger.info(
                f"Request completed: {request.method} {request.url.path} -> {response.status_code}",
                extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)},
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        except Exception:
            logger.exception(f"Request failed: {request.method} {request.url.path}")
            raise
        finally:
            set_request_id(None)

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP, considering proxy headers."""
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"
