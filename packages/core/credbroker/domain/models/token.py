"""Ephemeral token models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TokenMode(str, Enum):
    """How a browser session reaches the provider."""

    Realtime = "realtime"
    """Browser talks to the provider directly with a provider-minted ephemeral key."""

    Proxy = "proxy"
    """AI operations are routed through the Secure Proxy."""

    Demo = "demo"
    """Synthetic responses; no provider calls."""


class EphemeralToken(BaseModel):
    """Short-lived credential handed to a browser.

    `expires_at` is epoch milliseconds and is in the future at issuance.
    Once it has passed the token is invalid regardless of any cached state.
    """

    token: str = Field(..., repr=False)
    expires_at: int = Field(..., description="Expiry (epoch ms)")
    session_id: str
    mode: TokenMode = TokenMode.Realtime
    warnings: list[str] = Field(default_factory=list)
    proxy_endpoint: str | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def is_expired(self, now_ms: int) -> bool:
        """Check whether the token has lapsed at `now_ms`."""
        return self.expires_at <= now_ms

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the `POST /token` success body."""
        body: dict[str, Any] = {
            "success": True,
            "token": self.token,
            "expiresAt": self.expires_at,
            "sessionId": self.session_id,
            "mode": self.mode.value,
        }
        if self.warnings:
            body["warnings"] = list(self.warnings)
        if self.proxy_endpoint:
            body["proxyEndpoint"] = self.proxy_endpoint
        return body
