"""Proxy request and response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ProxyRequest(BaseModel):
    """A signed request from an authenticated session.

    Field names travel over the wire in camelCase (`sessionId`, `requestId`).

    Example:
        ```python
        request = ProxyRequest(
            session_id="session_ab12_1700000000000",
            request_id="req-1",
            endpoint="/v1/chat/completions",
            body={"model": "gpt-4o-mini", "messages": []},
            timestamp=1700000000000,
            signature="9f86d0...",
        )
        ```
    """

    session_id: str = Field(..., min_length=1, description="Session the request belongs to")
    request_id: str = Field(..., min_length=1, description="Client-chosen request identifier")
    method: str = Field(default="POST", description="HTTP method for the upstream call")
    endpoint: str = Field(..., min_length=1, description="Upstream path, checked against the allow-list")
    body: Any | None = Field(default=None, description="JSON body forwarded upstream")
    headers: dict[str, str] | None = Field(default=None, description="Extra client headers (not forwarded)")
    timestamp: int = Field(..., description="Client signing time (epoch ms)")
    signature: str = Field(default="", repr=False, description="Hex HMAC-SHA256 over the canonical payload")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("method")
    @classmethod
    def normalize_method(cls, value: str) -> str:
        """Upper-case the HTTP method."""
        return value.strip().upper() or "POST"


class ProxyResponse(BaseModel):
    """Result of a proxied request."""

    success: bool
    data: Any | None = None
    error: str | None = None
    error_code: str | None = Field(default=None, description="Machine-readable failure reason")
    request_id: str
    processing_time: int = Field(default=0, ge=0, description="Milliseconds spent in the proxy")
    mode: str = Field(default="proxy")
    cached: bool = Field(default=False)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys and without unset error/data."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ProxyToken(BaseModel):
    """Proxy-scoped bearer token registered with the Secure Proxy."""

    token: str = Field(..., repr=False)
    session_id: str
    expires_at: int = Field(..., description="Expiry (epoch ms)")
    proxy_endpoint: str = Field(default="/proxy")
