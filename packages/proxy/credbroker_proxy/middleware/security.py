"""Security headers middleware for API responses."""

from collections.abc import Callable
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
HSTS_VALUE = "max-age=31536000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add SECURITY_HEADERS to every response.

    Responses carry credentials, so they are also marked uncacheable unless
    the route set its own Cache-Control (as `/compatibility` does).
    """

    def __init__(self, app: Callable[..., Any], enable_hsts: bool = False) -> None:
        """Initialize security headers middleware.

        Args:
            app: ASGI application instance.
            enable_hsts: Add Strict-Transport-Security on HTTPS requests.
                Enabled for the production profile.
        """
        super().__init__(app)
        self._enable_hsts = enable_hsts

    async def dispatch(self, request: Request, call_next: Callable[..., Any]) -> Response:
        response = await call_next(request)

        response.headers.update(SECURITY_HEADERS)
        response.headers.setdefault("Cache-Control", "no-store")
        if self._enable_hsts and request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = HSTS_VALUE

        return response  # type: ignore[no-any-return]
