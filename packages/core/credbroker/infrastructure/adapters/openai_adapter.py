"""OpenAI provider adapter implementation."""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from credbroker.domain.models.broker_error import BrokerError, ErrorCategory
from credbroker.domain.models.health_state import ServiceHealth, ServiceStatus

logger = structlog.get_logger(__name__)


class OpenAIAdapter:
    """HTTP client for the provider endpoints the broker uses.

    Holds one `httpx.AsyncClient` for the process. The provider secret is
    passed per call and only ever placed in the Authorization header.

    Example:
        ```python
        adapter = OpenAIAdapter()
        data = await adapter.chat_completion(api_key, {"model": "gpt-4o-mini", "messages": []})
        await adapter.aclose()
        ```
    """

    BASE_URL = "https://api.openai.com/v1"
    """OpenAI API base URL."""

    TIMEOUT = 30.0
    """Request timeout in seconds."""

    HEALTH_CHECK_TIMEOUT = 5.0
    """Health check request timeout in seconds (shorter than normal)."""

    HEALTH_CHECK_TTL = 30.0
    """Health status cache TTL in seconds."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        health_check_timeout: float | None = None,
        health_check_ttl: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize OpenAI adapter.

        Args:
            base_url: Optional base URL override.
            timeout: Optional timeout override for provider calls.
            health_check_timeout: Optional timeout override for health probes.
            health_check_ttl: Optional health check cache TTL override.
            client: Optional preconfigured client (e.g. with a mock transport).
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout or self.TIMEOUT
        self.health_check_timeout = health_check_timeout or self.HEALTH_CHECK_TIMEOUT
        self.health_check_ttl = self.HEALTH_CHECK_TTL if health_check_ttl is None else health_check_ttl
        self._client = client or httpx.AsyncClient(timeout=self.timeout)
        self._health_cache: tuple[ServiceHealth, float] | None = None
        """Health status cache: (ServiceHealth, monotonic timestamp)"""

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @staticmethod
    def _headers(api_key: str, json_body: bool = True) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {api_key}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        api_key: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request and raise BrokerError for any failure."""
        json_body = "files" not in kwargs
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(api_key, json_body=json_body),
                timeout=timeout or self.timeout,
                **kwargs,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self.map_error(e) from e
        except httpx.TimeoutException as e:
            raise BrokerError(
                category=ErrorCategory.TimeoutError,
                message="Upstream request timed out",
                provider_code="timeout",
                retryable=True,
            ) from e
        except httpx.NetworkError as e:
            raise BrokerError(
                category=ErrorCategory.NetworkError,
                message="Upstream service unreachable",
                provider_code="network_error",
                retryable=True,
                details={"original_error": str(e)},
            ) from e
        except httpx.HTTPError as e:
            # Protocol and decoding failures
            raise self.map_error(e) from e
        return response

    async def create_realtime_session(
        self,
        api_key: str,
        model: str,
        voice: str = "alloy",
    ) -> dict[str, Any]:
        """Mint a provider-side realtime session with its own ephemeral secret.

        Args:
            api_key: Provider secret.
            model: Realtime model name.
            voice: Voice name.

        Returns:
            Provider session payload (`id`, `client_secret.value`, `client_secret.expires_at`).

        Raises:
            BrokerError: If the provider refuses or cannot be reached.
        """
        response = await self._send(
            "POST",
            "/realtime/sessions",
            api_key,
            json={"model": model, "voice": voice},
        )
        return self._json(response)

    async def chat_completion(self, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        """Forward a chat completion request.

        Raises:
            BrokerError: If the request fails.
        """
        response = await self._send("POST", "/chat/completions", api_key, json=body)
        return self._json(response)

    async def text_to_speech(self, api_key: str, body: dict[str, Any]) -> bytes:
        """Forward a speech synthesis request.

        Returns:
            Raw audio bytes.

        Raises:
            BrokerError: If the request fails.
        """
        response = await self._send("POST", "/audio/speech", api_key, json=body)
        return response.content

    async def transcribe(self, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        """Forward a transcription request.

        The JSON body carries the audio as base64 in `file`; it is sent
        upstream as a multipart upload together with the remaining fields.

        Raises:
            BrokerError: If the body is malformed or the request fails.
        """
        fields = dict(body)
        encoded = fields.pop("file", None)
        filename = str(fields.pop("filename", "audio.webm"))
        if not isinstance(encoded, str):
            raise BrokerError(
                category=ErrorCategory.ValidationError,
                message="Transcription requires base64 audio in 'file'",
            )
        try:
            audio = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise BrokerError(
                category=ErrorCategory.ValidationError,
                message="Transcription audio is not valid base64",
            ) from e
        fields.setdefault("model", "whisper-1")
        response = await self._send(
            "POST",
            "/audio/transcriptions",
            api_key,
            files={"file": (filename, audio)},
            data={key: str(value) for key, value in fields.items()},
        )
        return self._json(response)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise BrokerError(
                category=ErrorCategory.UpstreamError,
                message="Upstream returned an invalid response",
                provider_code="invalid_json",
            ) from e
        if not isinstance(data, dict):
            raise BrokerError(
                category=ErrorCategory.UpstreamError,
                message="Upstream returned an invalid response",
                provider_code="unexpected_payload",
            )
        return data

    async def probe_realtime(self, api_key: str, model: str, voice: str = "alloy") -> bool:
        """Whether realtime sessions can be created with this key."""
        try:
            await self.create_realtime_session(api_key, model, voice)
        except BrokerError:
            return False
        return True

    async def probe_models(self, api_key: str) -> bool:
        """Whether the models listing is reachable with this key."""
        try:
            await self._send("GET", "/models", api_key, timeout=self.health_check_timeout)
        except BrokerError:
            return False
        return True

    async def probe_tts(self, api_key: str) -> bool:
        """Whether speech synthesis is reachable with this key.

        A 400 answer still proves access, so it counts as reachable.
        """
        try:
            await self._send(
                "POST",
                "/audio/speech",
                api_key,
                json={"model": "tts-1", "input": "test", "voice": "alloy"},
            )
        except BrokerError as e:
            return e.details.get("status_code") == 400
        return True

    async def probe_all(self, api_key: str, model: str, voice: str = "alloy") -> tuple[bool, bool, bool]:
        """Run the realtime, models and TTS probes concurrently."""
        realtime, models, tts = await asyncio.gather(
            self.probe_realtime(api_key, model, voice),
            self.probe_models(api_key),
            self.probe_tts(api_key),
        )
        return realtime, models, tts

    def map_error(self, provider_error: Exception) -> BrokerError:
        """Map a provider error to BrokerError.

        The upstream body is kept in `details` for logging only; the message
        is generic so it can be shown to callers.

        Args:
            provider_error: Exception raised by httpx.

        Returns:
            BrokerError describing the failure.
        """
        if isinstance(provider_error, httpx.HTTPStatusError):
            response = provider_error.response
            status_code = response.status_code
            details = self._extract_error_details(response)
            details["status_code"] = status_code
            retry_after = self._extract_retry_after(response)

            if status_code in (401, 403):
                return BrokerError(
                    category=ErrorCategory.CredentialError,
                    message="Upstream rejected the credential",
                    provider_code=details.get("code") or f"http_error_{status_code}",
                    retryable=False,
                    details=details,
                )
            if status_code == 429:
                return BrokerError(
                    category=ErrorCategory.UpstreamError,
                    message="Upstream rate limit exceeded",
                    provider_code=details.get("code") or "rate_limit_exceeded",
                    retryable=True,
                    details=details,
                    retry_after=retry_after,
                )
            return BrokerError(
                category=ErrorCategory.UpstreamError,
                message=f"Upstream request failed ({status_code})",
                provider_code=details.get("code") or f"http_error_{status_code}",
                retryable=status_code >= 500,
                details=details,
                retry_after=retry_after,
            )

        if isinstance(provider_error, httpx.TimeoutException):
            return BrokerError(
                category=ErrorCategory.TimeoutError,
                message="Upstream request timed out",
                provider_code="timeout",
                retryable=True,
            )

        if isinstance(provider_error, httpx.NetworkError):
            return BrokerError(
                category=ErrorCategory.NetworkError,
                message="Upstream service unreachable",
                provider_code="network_error",
                retryable=True,
            )

        return BrokerError(
            category=ErrorCategory.InternalError,
            message="Unexpected upstream failure",
            provider_code="unknown",
            retryable=False,
            details={"original_error": str(provider_error)},
        )

    def _extract_retry_after(self, response: httpx.Response) -> int | None:
        """Extract retry-after value from response headers.

        Args:
            response: HTTP response object.

        Returns:
            Retry after seconds, or None if not present.
        """
        retry_after_header = response.headers.get("retry-after")
        if not retry_after_header:
            return None

        try:
            return int(retry_after_header)
        except ValueError:
            # Retry-After may also be an HTTP date
            try:
                retry_date = parsedate_to_datetime(retry_after_header)
            except (ValueError, TypeError):
                return None
            delta = retry_date - datetime.now(timezone.utc)
            return int(delta.total_seconds()) if delta.total_seconds() > 0 else None

    def _extract_error_details(self, response: httpx.Response) -> dict[str, Any]:
        """Extract error details from response body.

        Args:
            response: HTTP response object.

        Returns:
            Dictionary with error details (message, code, type).
        """
        details: dict[str, Any] = {}
        try:
            error_data = response.json()
        except ValueError:
            details["body"] = response.text[:500]
            return details

        if isinstance(error_data, dict) and isinstance(error_data.get("error"), dict):
            error_obj = error_data["error"]
            details["message"] = error_obj.get("message")
            details["type"] = error_obj.get("type")
            details["code"] = error_obj.get("code")
        return details

    def cached_health(self) -> ServiceHealth | None:
        """Return the cached health status while it is still fresh, else None."""
        if self._health_cache is None:
            return None
        cached_state, cached_timestamp = self._health_cache
        if time.monotonic() - cached_timestamp < self.health_check_ttl:
            return cached_state
        return None

    async def get_health(self, api_key: str | None) -> ServiceHealth:
        """Get provider health status.

        Performs a lightweight request to the models endpoint. Results are
        cached for `health_check_ttl` seconds to avoid excessive calls.

        Args:
            api_key: Provider secret, or None when no key is configured.

        Returns:
            ServiceHealth with status, last_check and latency.
        """
        cached = self.cached_health()
        if cached is not None:
            return cached

        current_time = time.monotonic()
        if not api_key:
            health = ServiceHealth(
                status=ServiceStatus.Degraded,
                last_check=datetime.now(timezone.utc),
                details={"error": "No provider key configured"},
            )
            self._health_cache = (health, current_time)
            return health

        start_time = time.monotonic()
        try:
            response = await self._client.get(
                f"{self.base_url}/models",
                headers=self._headers(api_key),
                timeout=self.health_check_timeout,
            )
            latency_ms = int((time.monotonic() - start_time) * 1000)

            if response.status_code == 200:
                status = ServiceStatus.Operational
            elif response.status_code >= 500:
                status = ServiceStatus.Down
            else:
                status = ServiceStatus.Degraded

            health = ServiceHealth(
                status=status,
                last_check=datetime.now(timezone.utc),
                response_time_ms=latency_ms,
                details={"status_code": response.status_code, "endpoint": "/models"},
            )
        except httpx.TimeoutException:
            health = ServiceHealth(
                status=ServiceStatus.Down,
                last_check=datetime.now(timezone.utc),
                details={"error": "Health check timeout"},
            )
        except httpx.NetworkError:
            health = ServiceHealth(
                status=ServiceStatus.Down,
                last_check=datetime.now(timezone.utc),
                details={"error": "Network error during health check"},
            )
        except Exception as e:
            logger.warning("provider_health_check_failed", error=str(e))
            health = ServiceHealth(
                status=ServiceStatus.Down,
                last_check=datetime.now(timezone.utc),
                details={"error": "Unexpected error during health check"},
            )

        self._health_cache = (health, current_time)
        return health
