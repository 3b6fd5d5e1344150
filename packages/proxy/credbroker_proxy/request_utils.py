"""Helpers for reading client details from requests."""

import secrets
import time
from collections.abc import Collection

from fastapi import Request


def get_client_ip(request: Request, trusted_proxies: Collection[str] = ()) -> str:
    """Get client IP address from request.

    The socket peer is the client unless it is a trusted reverse proxy. Only
    then are X-Forwarded-For and X-Real-IP consulted.

    Args:
        request: FastAPI request object.
        trusted_proxies: Peer addresses allowed to report the client address.

    Returns:
        Client IP address as string.
    """
    peer = request.client.host if request.client else None
    if peer is None or peer not in trusted_proxies:
        return peer or "unknown"

    # Walk the chain from the nearest hop; the first untrusted hop is the client
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
        for hop in reversed(hops):
            if hop not in trusted_proxies:
                return hop

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return peer


def parse_bearer_token(authorization: str | None) -> str | None:
    """Extract the token from a `Bearer <token>` Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[7:].strip()
    return token or None


def new_request_id() -> str:
    """Request identifiers look like `req_<epoch ms>_<8 hex>`."""
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def is_origin_allowed(origin: str | None, allowed_origins: list[str], require_origin: bool = False) -> bool:
    """Check an Origin header against the allow-list.

    Requests without an Origin header (same-origin or non-browser callers)
    pass unless `require_origin` is set.
    """
    if not origin:
        return not require_origin
    return origin in allowed_origins or "*" in allowed_origins


class ProcessingTimer:
    """Measures handler latency for the X-Processing-Time header."""

    def __init__(self) -> None:
        self._start = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._start) * 1000)

    def header(self) -> str:
        return f"{self.elapsed_ms}ms"
