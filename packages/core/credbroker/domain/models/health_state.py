"""Health models for the broker and its dependencies."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthStatus(str, Enum):
    """Aggregated broker health."""

    Healthy = "healthy"
    """All services operational."""

    Degraded = "degraded"
    """At least one service degraded; the broker still serves requests."""

    Unhealthy = "unhealthy"
    """A required service is down."""


class ServiceStatus(str, Enum):
    """Status of one dependency."""

    Operational = "operational"
    Degraded = "degraded"
    Down = "down"


class ServiceHealth(BaseModel):
    """Health of one dependency at its last check.

    Example:
        ```python
        health = ServiceHealth(
            status=ServiceStatus.Operational,
            last_check=datetime.utcnow(),
            response_time_ms=150,
        )
        ```
    """

    status: ServiceStatus = Field(..., description="Current service status")
    last_check: datetime = Field(..., description="Timestamp of last check")
    response_time_ms: int | None = Field(default=None, ge=0, description="Probe latency in milliseconds")
    details: dict[str, Any] = Field(default_factory=dict, description="Additional check details")

    model_config = ConfigDict(frozen=False, validate_assignment=True)


class HealthReport(BaseModel):
    """Result of `GET /health`."""

    status: HealthStatus
    timestamp: datetime
    uptime_seconds: float = Field(..., ge=0)
    version: str
    services: dict[str, ServiceHealth] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def aggregate(services: dict[str, ServiceHealth]) -> HealthStatus:
        """Fold service statuses into one broker status.

        Args:
            services: Service name to health mapping.

        Returns:
            Unhealthy if any service is down, Degraded if any is degraded, else Healthy.
        """
        statuses = {service.status for service in services.values()}
        if ServiceStatus.Down in statuses:
            return HealthStatus.Unhealthy
        if ServiceStatus.Degraded in statuses:
            return HealthStatus.Degraded
        return HealthStatus.Healthy
