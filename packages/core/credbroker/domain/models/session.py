"""Session bookkeeping models used by token refresh."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SessionRecord(BaseModel):
    """A browser session that may refresh its token."""

    session_id: str
    client_ip: str
    created_at: int = Field(..., description="Registration time (epoch ms)")
    last_refresh: int = Field(..., description="Last issuance or refresh (epoch ms)")
    refresh_count: int = Field(default=0, ge=0)


class SessionStats(BaseModel):
    """Aggregate view of tracked sessions."""

    active_sessions: int
    total_refreshes: int
    oldest_session_age_ms: int | None = None
