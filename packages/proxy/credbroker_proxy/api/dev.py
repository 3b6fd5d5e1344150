"""Development-only rate limit administration."""

from enum import Enum
from typing import Any

import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from credbroker.broker import CredentialBroker
from credbroker_proxy.dependencies import BrokerDep

logger = structlog.get_logger(__name__)

router = APIRouter()


class RateLimitAction(str, Enum):
    ClearAll = "clear_all"
    ClearIp = "clear_ip"
    ClearSuspicious = "clear_suspicious"
    Status = "status"


class RateLimitAdminRequest(BaseModel):
    action: RateLimitAction = RateLimitAction.Status
    ip: str | None = Field(default=None, description="Target IP for clear_ip and clear_suspicious")


def _forbidden() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"success": False, "error": "Only available in development"},
    )


def _status(broker: CredentialBroker) -> dict[str, Any]:
    return {
        "success": True,
        "limiters": {
            stats.name: stats.model_dump()
            for stats in (limiter.get_stats() for limiter in broker.rate_limiters)
        },
    }


@router.get("/dev/rate-limits")
async def rate_limit_status(broker: BrokerDep) -> JSONResponse:
    """Counters for every limiter."""
    if not broker.settings.is_development:
        return _forbidden()
    return JSONResponse(content=_status(broker))


@router.post("/dev/rate-limits")
async def rate_limit_admin(
    broker: BrokerDep,
    payload: RateLimitAdminRequest | None = None,
) -> JSONResponse:
    """Clear counters or suspicious markers."""
    if not broker.settings.is_development:
        return _forbidden()
    payload = payload or RateLimitAdminRequest()

    if payload.action == RateLimitAction.Status:
        return JSONResponse(content=_status(broker))

    if payload.action == RateLimitAction.ClearAll:
        cleared = all([limiter.clear_all_limits() for limiter in broker.rate_limiters])
        logger.info("dev_rate_limits_cleared", cleared=cleared)
        return JSONResponse(content={"success": cleared, "action": payload.action.value})

    if not payload.ip:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "ip is required for this action"},
        )

    if payload.action == RateLimitAction.ClearIp:
        changed = [limiter.reset_limit(payload.ip) for limiter in broker.rate_limiters]
    else:
        changed = [limiter.clear_suspicious_ip(payload.ip) for limiter in broker.rate_limiters]
    logger.info("dev_rate_limits_updated", action=payload.action.value, ip=payload.ip)
    return JSONResponse(content={"success": True, "action": payload.action.value, "changed": any(changed)})
