"""CORS middleware restricted to an origin allow-list."""

from collections.abc import Callable
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from credbroker_proxy.request_utils import is_origin_allowed

logger = structlog.get_logger(__name__)

ALLOWED_METHODS = "GET, POST, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization, X-Request-Id"
EXPOSED_HEADERS = (
    "X-Request-Id, X-Processing-Time, X-Session-Id, X-Token-Mode, X-Proxy-Mode, "
    "X-RateLimit-Limit, X-RateLimit-Remaining, X-RateLimit-Reset, Retry-After"
)


class CORSMiddleware(BaseHTTPMiddleware):
    """Echo allow-listed origins and answer preflight requests.

    Origins not on the list get no CORS headers at all, so browsers block the
    response; routes that must refuse such origins outright do so themselves.
    """

    def __init__(self, app: Callable[..., Any], allowed_origins: list[str]) -> None:
        """Initialize CORS middleware.

        Args:
            app: ASGI application instance.
            allowed_origins: Exact origins allowed to read responses.
        """
        super().__init__(app)
        self._allowed_origins = list(allowed_origins)

    def _is_origin_allowed(self, origin: str) -> bool:
        return is_origin_allowed(origin, self._allowed_origins, require_origin=True)

    async def dispatch(self, request: Request, call_next: Callable[..., Any]) -> Response:
        """Process request and handle CORS.

        Args:
            request: FastAPI request object.
            call_next: Next middleware or route handler.

        Returns:
            Response with CORS headers added for allowed origins.
        """
        origin = request.headers.get("Origin")

        if request.method == "OPTIONS":
            response = Response(status_code=204)
            if origin and self._is_origin_allowed(origin):
                response.headers["Access-Control-Allow-Origin"] = origin
                response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
                response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
                response.headers["Access-Control-Max-Age"] = "86400"
                response.headers["Vary"] = "Origin"
            else:
                logger.info("cors_preflight_rejected", origin=origin, path=request.url.path)
            return response

        response = await call_next(request)

        if origin and self._is_origin_allowed(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Access-Control-Allow-Credentials"] = "true"
            response.headers["Access-Control-Expose-Headers"] = EXPOSED_HEADERS
            response.headers["Vary"] = "Origin"

        return response  # type: ignore[no-any-return]
