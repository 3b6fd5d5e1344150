"""GET /compatibility: provider capability report."""

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from credbroker.domain.components.capability_detector import build_report
from credbroker_proxy.dependencies import BrokerDep
from credbroker_proxy.request_utils import get_client_ip

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/compatibility")
async def check_compatibility(request: Request, broker: BrokerDep) -> JSONResponse:
    """Report which provider features the configured key can reach."""
    client_ip = get_client_ip(request, broker.settings.trusted_proxy_list)
    try:
        report = await broker.capability_detector.check_compatibility(client_ip)
    except Exception as e:
        logger.error("compatibility_check_failed", error=str(e), error_type=type(e).__name__)
        report = build_report(False, False, False)
        report.success = False
        report.error = "Compatibility check failed"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=report.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    return JSONResponse(
        content=report.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers={"Cache-Control": "public, max-age=300"},
    )
