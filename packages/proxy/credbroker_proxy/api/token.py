"""POST /token: ephemeral token issuance."""

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from credbroker.domain.interfaces.event_sink import Severity, emit_safely
from credbroker.domain.models.broker_error import CredentialUnavailableError
from credbroker_proxy.dependencies import BrokerDep
from credbroker_proxy.request_utils import (
    ProcessingTimer,
    get_client_ip,
    is_origin_allowed,
    new_request_id,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/token")
async def issue_token(request: Request, broker: BrokerDep) -> JSONResponse:
    """Issue an ephemeral token in realtime, proxy or demo mode."""
    timer = ProcessingTimer()
    request_id = request.headers.get("X-Request-Id") or new_request_id()
    client_ip = get_client_ip(request, broker.settings.trusted_proxy_list)
    origin = request.headers.get("Origin")
    settings = broker.settings

    if not is_origin_allowed(origin, settings.allowed_origin_list, settings.require_origin):
        logger.warning("token_origin_rejected", origin=origin, client_ip=client_ip, request_id=request_id)
        await emit_safely(
            broker.event_sink,
            "origin_rejected",
            {"origin": origin, "path": "/token"},
            severity=Severity.Medium,
            client_ip=client_ip,
        )
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"success": False, "error": "Origin not allowed"},
            headers={"X-Request-Id": request_id},
        )

    decision = await broker.token_limiter.check_limit(client_ip, request.headers.get("User-Agent"))
    headers = broker.token_limiter.rate_limit_headers(decision)
    headers["X-Request-Id"] = request_id
    if not decision.allowed:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "success": False,
                "error": "Rate limit exceeded. Please try again later.",
                "retryAfter": decision.retry_after_seconds,
            },
            headers=headers,
        )

    try:
        token = await broker.token_issuer.issue_token(client_ip, request_id)
    except CredentialUnavailableError as e:
        headers["X-Processing-Time"] = timer.header()
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "error": e.message},
            headers=headers,
        )
    except Exception as e:
        logger.error(
            "token_generation_failed",
            error=str(e),
            error_type=type(e).__name__,
            client_ip=client_ip,
            request_id=request_id,
        )
        headers["X-Processing-Time"] = timer.header()
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Token generation failed"},
            headers=headers,
        )

    headers.update(
        {
            "X-Processing-Time": timer.header(),
            "X-Session-Id": token.session_id,
            "X-Token-Mode": token.mode.value,
        }
    )
    logger.info(
        "token_request_completed",
        session_id=token.session_id,
        mode=token.mode.value,
        processing_time_ms=timer.elapsed_ms,
        request_id=request_id,
    )
    return JSONResponse(content=token.to_wire(), headers=headers)


@router.get("/token", include_in_schema=False)
async def token_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={"success": False, "error": "Method not allowed. Use POST."},
        headers={"Allow": "POST"},
    )
