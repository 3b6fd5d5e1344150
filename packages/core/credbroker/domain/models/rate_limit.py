"""Rate limit models for sliding-window request counting."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RateLimitEntry(BaseModel):
    """Counter state for one client identity.

    All timestamps are epoch milliseconds.
    """

    count: int = Field(default=0, ge=0, description="Requests counted in the current window")
    window_start: int = Field(..., description="Start of the current window (epoch ms)")
    reset_time: int = Field(..., description="When the entry resets to a fresh window (epoch ms)")
    suspicious: bool = Field(default=False, description="Whether the identity crossed the suspicious threshold")
    client_ip: str = Field(default="", description="IP the identity was derived from")

    model_config = ConfigDict(validate_assignment=False)


class RateLimitDecision(BaseModel):
    """Outcome of a rate limit check.

    Example:
        ```python
        decision = RateLimitDecision(allowed=False, remaining=0, reset_time=..., retry_after_seconds=42)
        ```
    """

    allowed: bool = Field(..., description="Whether the request may proceed")
    remaining: int = Field(..., ge=0, description="Requests left in the current window")
    reset_time: int = Field(..., description="When the current window resets (epoch ms)")
    retry_after_seconds: int | None = Field(
        default=None,
        description="Seconds until a denied caller may retry",
    )

    model_config = ConfigDict(frozen=True)


class RateLimiterStats(BaseModel):
    """Snapshot of limiter occupancy."""

    name: str
    total_entries: int
    active_windows: int
    suspicious_ips: int
    max_requests: int
    window_ms: int
