"""SecureProxyClient: signs proxy requests and sends them to the broker."""

import base64
import secrets
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from credbroker.client.token_manager import TokenManager, TokenManagerError
from credbroker.domain.models.proxy import ProxyRequest, ProxyResponse
from credbroker.domain.models.token import TokenMode
from credbroker.infrastructure.utils.signing import sign_proxy_request

logger = structlog.get_logger(__name__)

CHAT_COMPLETIONS = "/v1/chat/completions"
AUDIO_SPEECH = "/v1/audio/speech"
AUDIO_TRANSCRIPTIONS = "/v1/audio/transcriptions"


class SecureProxyClient:
    """Routes AI operations through the broker's proxy.

    Requests are signed with the key derived from the current proxy token,
    over the same canonical payload the broker verifies. Tokens come from a
    TokenManager, which requests or refreshes them as needed.

    Failures are returned as unsuccessful ProxyResponses rather than raised,
    mirroring the broker's own response shape.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize SecureProxyClient.

        Args:
            token_manager: Source of proxy tokens.
            base_url: Broker base URL.
            client: HTTP client. Created when omitted and closed by `aclose`.
            timeout_seconds: Timeout for proxy calls.
            clock: Returns the current time in epoch seconds.
        """
        self._tokens = token_manager
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock

    async def __aenter__(self) -> "SecureProxyClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _request_id(self) -> str:
        return f"req_{int(self._clock() * 1000)}_{secrets.token_hex(4)}"

    async def request(
        self,
        endpoint: str,
        body: dict[str, Any] | None = None,
        method: str = "POST",
    ) -> ProxyResponse:
        """Sign and send one proxy request.

        Args:
            endpoint: Upstream path, e.g. `/v1/chat/completions`.
            body: JSON body for the upstream call.
            method: Upstream HTTP method.

        Returns:
            ProxyResponse from the broker, or an unsuccessful one describing
            why the request could not be sent.
        """
        request_id = self._request_id()
        try:
            token = await self._tokens.ensure_token()
        except TokenManagerError as e:
            return ProxyResponse(success=False, error=e.message, error_code="token_unavailable", request_id=request_id)

        if token.mode != TokenMode.Proxy:
            return ProxyResponse(
                success=False,
                error="Proxy requests are only supported in proxy mode",
                error_code="wrong_mode",
                request_id=request_id,
                mode=token.mode.value,
            )

        timestamp = int(self._clock() * 1000)
        request = ProxyRequest(
            session_id=token.session_id,
            request_id=request_id,
            method=method,
            endpoint=endpoint,
            body=body,
            timestamp=timestamp,
        )
        request.signature = sign_proxy_request(
            token.token,
            request.session_id,
            request.request_id,
            request.method,
            request.endpoint,
            request.body,
            request.timestamp,
        )

        url = f"{self._base_url}{token.proxy_endpoint or '/proxy'}"
        try:
            response = await self._client.post(
                url,
                json=request.model_dump(by_alias=True, exclude_none=True),
                headers={"Authorization": f"Bearer {token.token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("proxy_call_failed", endpoint=endpoint, request_id=request_id, error=str(e))
            return ProxyResponse(
                success=False,
                error="Proxy request failed",
                error_code="network_error",
                request_id=request_id,
            )

        try:
            result = ProxyResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            return ProxyResponse(
                success=False,
                error=f"Request failed: {response.status_code}",
                error_code="invalid_response",
                request_id=request_id,
            )
        logger.debug(
            "proxy_call_completed",
            endpoint=endpoint,
            request_id=result.request_id,
            success=result.success,
            processing_time=result.processing_time,
        )
        return result

    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        model: str = "gpt-4o",
        temperature: float = 0.7,
        max_tokens: int = 1000,
        **params: Any,
    ) -> ProxyResponse:
        """Chat completion through the proxy."""
        body = {"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens, **params}
        return await self.request(CHAT_COMPLETIONS, body)

    async def text_to_speech(
        self,
        text: str,
        voice: str = "alloy",
        model: str = "tts-1",
        response_format: str = "mp3",
    ) -> ProxyResponse:
        """Speech synthesis through the proxy.

        On success `data` is `{"audio": <base64>, "contentType": ...}`.
        """
        body = {"model": model, "input": text, "voice": voice, "response_format": response_format}
        return await self.request(AUDIO_SPEECH, body)

    async def speech_to_text(
        self,
        audio: bytes,
        filename: str = "audio.webm",
        model: str = "whisper-1",
        language: str | None = None,
    ) -> ProxyResponse:
        """Transcription through the proxy; audio travels base64-encoded."""
        body: dict[str, Any] = {
            "file": base64.b64encode(audio).decode(),
            "filename": filename,
            "model": model,
        }
        if language:
            body["language"] = language
        return await self.request(AUDIO_TRANSCRIPTIONS, body)
