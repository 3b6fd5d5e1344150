"""POST /refresh: new token for an existing session."""

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from credbroker.domain.components.session_tracker import SessionValidationError
from credbroker.domain.models.broker_error import CredentialUnavailableError
from credbroker_proxy.dependencies import BrokerDep
from credbroker_proxy.request_utils import ProcessingTimer, get_client_ip, new_request_id

logger = structlog.get_logger(__name__)

router = APIRouter()


class RefreshRequest(BaseModel):
    session_id: str = Field(..., min_length=1)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@router.post("/refresh")
async def refresh_token(request: Request, broker: BrokerDep) -> JSONResponse:
    """Refresh the token of a tracked session from the same client."""
    timer = ProcessingTimer()
    request_id = request.headers.get("X-Request-Id") or new_request_id()
    client_ip = get_client_ip(request, broker.settings.trusted_proxy_list)

    decision = await broker.refresh_limiter.check_limit(client_ip, request.headers.get("User-Agent"))
    headers = broker.refresh_limiter.rate_limit_headers(decision)
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
        payload = RefreshRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid request body"},
            headers=headers,
        )

    try:
        token = await broker.token_issuer.refresh_token(payload.session_id, client_ip)
    except SessionValidationError as e:
        logger.warning("token_refresh_rejected", reason=e.reason, client_ip=client_ip, request_id=request_id)
        if e.retry_after is not None:
            headers["Retry-After"] = str(e.retry_after)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"success": False, "error": e.message, "retryAfter": e.retry_after},
                headers=headers,
            )
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"success": False, "error": e.message},
            headers=headers,
        )
    except CredentialUnavailableError as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "error": e.message},
            headers=headers,
        )
    except Exception as e:
        logger.error("token_refresh_failed", error=str(e), error_type=type(e).__name__, request_id=request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Token refresh failed"},
            headers=headers,
        )

    headers.update(
        {
            "X-Processing-Time": timer.header(),
            "X-Session-Id": token.session_id,
            "X-Token-Mode": token.mode.value,
        }
    )
    return JSONResponse(content=token.to_wire(), headers=headers)
