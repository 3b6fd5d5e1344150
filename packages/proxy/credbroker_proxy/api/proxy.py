"""POST /proxy: signed requests relayed to the provider."""

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from credbroker.domain.components.secure_proxy import ProxyRejection
from credbroker.domain.models.proxy import ProxyRequest
from credbroker_proxy.dependencies import BrokerDep
from credbroker_proxy.request_utils import (
    ProcessingTimer,
    get_client_ip,
    new_request_id,
    parse_bearer_token,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

PROXY_MODE = "secure"

_STATUS_BY_ERROR_CODE = {
    ProxyRejection.InvalidToken.value: status.HTTP_401_UNAUTHORIZED,
    ProxyRejection.InvalidSignature.value: status.HTTP_400_BAD_REQUEST,
    ProxyRejection.RequestExpired.value: status.HTTP_400_BAD_REQUEST,
    ProxyRejection.RequestTooLarge.value: status.HTTP_400_BAD_REQUEST,
    ProxyRejection.InvalidRequest.value: status.HTTP_400_BAD_REQUEST,
    ProxyRejection.EndpointNotAllowed.value: status.HTTP_403_FORBIDDEN,
    ProxyRejection.UpstreamError.value: status.HTTP_502_BAD_GATEWAY,
    ProxyRejection.CredentialUnavailable.value: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _token_hint(token: str) -> str:
    return token[:14]


@router.post("/proxy")
async def proxy_request(request: Request, broker: BrokerDep) -> JSONResponse:
    """Verify and relay one signed ProxyRequest."""
    timer = ProcessingTimer()
    client_ip = get_client_ip(request, broker.settings.trusted_proxy_list)
    headers = {"X-Proxy-Mode": PROXY_MODE}

    proxy_token = parse_bearer_token(request.headers.get("Authorization"))
    if proxy_token is None:
        headers["X-Request-Id"] = new_request_id()
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"success": False, "error": "Missing proxy token"},
            headers=headers,
        )

    # Only registered tokens get a counter of their own; unknown ones share the caller's
    registered = broker.secure_proxy.validate_proxy_token(proxy_token)
    decision = await broker.proxy_limiter.check_limit(
        client_ip,
        request.headers.get("User-Agent"),
        scope=_token_hint(proxy_token) if registered else None,
    )
    headers.update(broker.proxy_limiter.rate_limit_headers(decision))
    if not decision.allowed:
        headers["X-Request-Id"] = new_request_id()
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
        proxy_req = ProxyRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.info("proxy_request_malformed", client_ip=client_ip, error_type=type(e).__name__)
        headers["X-Request-Id"] = new_request_id()
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Invalid request format"},
            headers=headers,
        )

    result = await broker.secure_proxy.process_request(proxy_req, client_ip, proxy_token)
    headers["X-Request-Id"] = result.request_id
    headers["X-Processing-Time"] = timer.header()

    if result.success:
        status_code = status.HTTP_200_OK
    else:
        status_code = _STATUS_BY_ERROR_CODE.get(result.error_code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=status_code, content=result.to_wire(), headers=headers)
