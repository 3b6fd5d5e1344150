"""GET /health: broker and provider health."""

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from credbroker import __version__
from credbroker.domain.models.health_state import HealthReport, HealthStatus, ServiceHealth
from credbroker_proxy.dependencies import BrokerDep

logger = structlog.get_logger(__name__)

router = APIRouter()


def _service_to_wire(health: ServiceHealth) -> dict[str, Any]:
    body: dict[str, Any] = {
        "status": health.status.value,
        "lastCheck": health.last_check.isoformat(),
    }
    if health.response_time_ms is not None:
        body["responseTime"] = health.response_time_ms
    if health.details:
        body["details"] = health.details
    return body


def report_to_wire(report: HealthReport) -> dict[str, Any]:
    """Serialize a HealthReport to the response body."""
    return {
        "status": report.status.value,
        "timestamp": report.timestamp.isoformat(),
        "uptime": round(report.uptime_seconds, 3),
        "version": report.version,
        "services": {name: _service_to_wire(health) for name, health in report.services.items()},
        "metrics": report.metrics,
    }


@router.get("/health")
async def health(broker: BrokerDep) -> JSONResponse:
    """Healthy and degraded answer 200; unhealthy answers 503."""
    try:
        report = await broker.health_check()
    except Exception as e:
        logger.error("health_check_failed", error=str(e), error_type=type(e).__name__)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": HealthStatus.Unhealthy.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": __version__,
                "error": "Health check failed",
            },
        )

    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if report.status == HealthStatus.Unhealthy
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=report_to_wire(report))
