"""SecureProxy component: verifies signed client requests and relays them upstream."""

import base64
import hashlib
import secrets
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from credbroker.domain.components.key_vault import KeyVault
from credbroker.domain.interfaces.event_sink import EventSink, Severity, emit_safely
from credbroker.domain.models.broker_error import BrokerError, ErrorCategory
from credbroker.domain.models.proxy import ProxyRequest, ProxyResponse, ProxyToken
from credbroker.infrastructure.adapters.openai_adapter import OpenAIAdapter
from credbroker.infrastructure.utils.signing import (
    canonical_request_payload,
    compact_json,
    derive_request_signing_key,
    hmac_sha256_hex,
    verify_hmac_sha256_hex,
)

logger = structlog.get_logger(__name__)

CHAT_COMPLETIONS = "/v1/chat/completions"
AUDIO_SPEECH = "/v1/audio/speech"
AUDIO_TRANSCRIPTIONS = "/v1/audio/transcriptions"

DEFAULT_ALLOWED_ENDPOINTS = (CHAT_COMPLETIONS, AUDIO_SPEECH, AUDIO_TRANSCRIPTIONS)


class ProxyRejection(str, Enum):
    """Machine-readable reasons a proxy request was refused."""

    InvalidToken = "invalid_token"
    InvalidSignature = "invalid_signature"
    RequestExpired = "request_expired"
    EndpointNotAllowed = "endpoint_not_allowed"
    RequestTooLarge = "request_too_large"
    CredentialUnavailable = "credential_unavailable"
    UpstreamError = "upstream_error"
    InvalidRequest = "invalid_request"


class ProxyRequestError(BrokerError):
    """Raised when a proxy request fails a policy check."""

    def __init__(self, reason: ProxyRejection, message: str, severity: Severity = Severity.Medium) -> None:
        """Initialize ProxyRequestError.

        Args:
            reason: Machine-readable rejection reason.
            message: Message safe to return to the caller.
            severity: Severity of the audit event for this rejection.
        """
        super().__init__(category=ErrorCategory.PolicyRejection, message=message)
        self.reason = reason
        self.severity = severity


class SecureProxyConfig(BaseModel):
    """Configuration for SecureProxy."""

    replay_window_ms: int = Field(default=300_000, gt=0)
    max_request_size: int = Field(default=1024 * 1024, gt=0, description="Maximum serialized body size in bytes")
    cache_ttl_ms: int = Field(default=300_000, ge=0)
    max_cache_entries: int = Field(default=1000, ge=0)
    proxy_token_ttl_ms: int = Field(default=30 * 60 * 1000, gt=0)
    proxy_endpoint: str = Field(default="/proxy")
    allowed_endpoints: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ENDPOINTS))


class SecureProxy:
    """Relays verified requests to the provider using a vaulted key.

    Each request passes signature, freshness, allow-list and size checks
    before the response cache, the vault or the network are touched. The
    plaintext secret is fetched from the vault per request and only placed
    in the outbound Authorization header.
    """

    def __init__(
        self,
        key_vault: KeyVault,
        adapter: OpenAIAdapter,
        event_sink: EventSink,
        server_secret: bytes,
        config: SecureProxyConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize SecureProxy with dependencies.

        Args:
            key_vault: Vault holding the provider secret.
            adapter: Provider HTTP adapter.
            event_sink: Sink receiving audit events.
            server_secret: Key used to mint proxy tokens.
            config: Proxy configuration.
            clock: Returns the current time in epoch seconds.
        """
        self._vault = key_vault
        self._adapter = adapter
        self._events = event_sink
        self._server_secret = server_secret
        self._config = config or SecureProxyConfig()
        self._clock = clock
        self._cache: dict[str, tuple[Any, int]] = {}
        self._proxy_tokens: dict[str, ProxyToken] = {}
        self._handlers: dict[str, Callable[[str, dict[str, Any]], Awaitable[Any]]] = {
            CHAT_COMPLETIONS: self._adapter.chat_completion,
            AUDIO_SPEECH: self._proxy_speech,
            AUDIO_TRANSCRIPTIONS: self._adapter.transcribe,
        }

    @property
    def config(self) -> SecureProxyConfig:
        """Proxy configuration."""
        return self._config

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def generate_proxy_token(self, session_id: str) -> ProxyToken:
        """Mint and register a proxy-scoped token for a session.

        Args:
            session_id: Session the token is bound to.

        Returns:
            ProxyToken expiring after proxy_token_ttl_ms.
        """
        now = self._now_ms()
        # Random nonce keeps tokens minted in the same millisecond distinct
        nonce = secrets.token_hex(8)
        token = "proxy_" + hmac_sha256_hex(self._server_secret, f"{session_id}:{now}:{nonce}:proxy")
        proxy_token = ProxyToken(
            token=token,
            session_id=session_id,
            expires_at=now + self._config.proxy_token_ttl_ms,
            proxy_endpoint=self._config.proxy_endpoint,
        )
        self._proxy_tokens[token] = proxy_token
        logger.info("proxy_token_issued", session_id=session_id, expires_at=proxy_token.expires_at)
        return proxy_token

    def validate_proxy_token(self, token: str, session_id: str | None = None) -> bool:
        """Check that a token was issued here, is unexpired and belongs to the session.

        Args:
            token: Bearer token presented by the client.
            session_id: Session the request claims; skipped when None.

        Returns:
            True if the token may be used.
        """
        if not token.startswith("proxy_"):
            return False
        record = self._proxy_tokens.get(token)
        if record is None:
            return False
        if record.expires_at <= self._now_ms():
            self._proxy_tokens.pop(token, None)
            return False
        return session_id is None or record.session_id == session_id

    def revoke_session_tokens(self, session_id: str, keep: str | None = None) -> int:
        """Drop every proxy token bound to a session.

        Args:
            session_id: Session whose tokens are revoked.
            keep: Token left registered, typically the session's newest.

        Returns:
            Number of tokens revoked.
        """
        revoked = 0
        for token, record in list(self._proxy_tokens.items()):
            if record.session_id == session_id and token != keep:
                self._proxy_tokens.pop(token, None)
                revoked += 1
        if revoked:
            logger.info("proxy_tokens_revoked", session_id=session_id, revoked=revoked)
        return revoked

    def validate_request(self, request: ProxyRequest, proxy_token: str) -> None:
        """Run the signature, freshness, allow-list and size checks in order.

        Args:
            request: Request to check.
            proxy_token: Validated bearer token the request was signed with.

        Raises:
            ProxyRequestError: On the first failing check.
        """
        payload = canonical_request_payload(
            request.session_id,
            request.request_id,
            request.method,
            request.endpoint,
            request.body,
            request.timestamp,
        )
        if not request.signature or not verify_hmac_sha256_hex(
            derive_request_signing_key(proxy_token),
            payload,
            request.signature,
        ):
            raise ProxyRequestError(ProxyRejection.InvalidSignature, "Invalid signature", Severity.High)

        age = self._now_ms() - request.timestamp
        if abs(age) > self._config.replay_window_ms:
            raise ProxyRequestError(ProxyRejection.RequestExpired, "Request expired", Severity.Medium)

        if request.endpoint not in self._config.allowed_endpoints or request.endpoint not in self._handlers:
            raise ProxyRequestError(
                ProxyRejection.EndpointNotAllowed,
                "Endpoint not allowed",
                Severity.High,
            )

        body_size = len(compact_json(request.body).encode()) if request.body is not None else 0
        if body_size > self._config.max_request_size:
            raise ProxyRequestError(ProxyRejection.RequestTooLarge, "Request too large", Severity.Medium)

    @staticmethod
    def _cache_key(request: ProxyRequest) -> str:
        digest = hashlib.sha256(compact_json(request.body).encode()).hexdigest()
        return f"{request.endpoint}:{digest}"

    def _get_cached(self, cache_key: str, now: int) -> Any | None:
        cached = self._cache.get(cache_key)
        if cached is None:
            return None
        data, stored_at = cached
        if now - stored_at >= self._config.cache_ttl_ms:
            self._cache.pop(cache_key, None)
            return None
        return data

    def _store_cached(self, cache_key: str, data: Any, now: int) -> None:
        if self._config.cache_ttl_ms == 0 or self._config.max_cache_entries == 0:
            return
        if len(self._cache) >= self._config.max_cache_entries:
            oldest = min(self._cache.items(), key=lambda item: item[1][1])[0]
            self._cache.pop(oldest, None)
        self._cache[cache_key] = (data, now)

    async def _proxy_speech(self, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        audio = await self._adapter.text_to_speech(api_key, body)
        return {"audio": base64.b64encode(audio).decode(), "contentType": "audio/mpeg"}

    async def process_request(
        self,
        request: ProxyRequest,
        client_ip: str,
        proxy_token: str,
    ) -> ProxyResponse:
        """Verify a request and relay it upstream.

        Never raises; every outcome becomes a ProxyResponse and an audit event.

        Args:
            request: Signed proxy request.
            client_ip: Client IP address.
            proxy_token: Bearer token presented with the request.

        Returns:
            ProxyResponse with data on success or a sanitized error and error_code.
        """
        start = self._now_ms()

        def elapsed() -> int:
            return max(0, self._now_ms() - start)

        audit = {
            "endpoint": request.endpoint,
            "session_id": request.session_id,
            "request_id": request.request_id,
        }

        try:
            if not self.validate_proxy_token(proxy_token, request.session_id):
                raise ProxyRequestError(ProxyRejection.InvalidToken, "Invalid proxy token", Severity.High)
            self.validate_request(request, proxy_token)
        except ProxyRequestError as e:
            logger.warning("proxy_request_rejected", reason=e.reason.value, client_ip=client_ip, **audit)
            await emit_safely(
                self._events,
                self._rejection_event(e.reason),
                {**audit, "reason": e.reason.value, "processing_time": elapsed()},
                severity=e.severity,
                client_ip=client_ip,
            )
            return ProxyResponse(
                success=False,
                error=e.message,
                error_code=e.reason.value,
                request_id=request.request_id,
                processing_time=elapsed(),
            )

        now = self._now_ms()
        cache_key = self._cache_key(request)
        cached = self._get_cached(cache_key, now)
        if cached is not None:
            logger.debug("proxy_cache_hit", **audit)
            await emit_safely(
                self._events,
                "successful_proxy_request",
                {**audit, "processing_time": elapsed(), "cached": True},
                severity=Severity.Low,
                client_ip=client_ip,
            )
            return ProxyResponse(
                success=True,
                data=cached,
                request_id=request.request_id,
                processing_time=elapsed(),
                cached=True,
            )

        operation = f"proxy:{request.endpoint}"
        key_id = self._vault.get_active_key_id()
        api_key = None
        if key_id is not None:
            api_key = await self._vault.get_key(key_id, client_ip, operation)
        if key_id is None or api_key is None:
            logger.error("proxy_credential_unavailable", client_ip=client_ip, **audit)
            await emit_safely(
                self._events,
                "proxy_request_error",
                {**audit, "reason": ProxyRejection.CredentialUnavailable.value, "processing_time": elapsed()},
                severity=Severity.High,
                client_ip=client_ip,
            )
            return ProxyResponse(
                success=False,
                error="Service temporarily unavailable",
                error_code=ProxyRejection.CredentialUnavailable.value,
                request_id=request.request_id,
                processing_time=elapsed(),
            )

        handler = self._handlers[request.endpoint]
        body = request.body if isinstance(request.body, dict) else {}
        try:
            data = await handler(api_key, body)
        except BrokerError as e:
            if e.category != ErrorCategory.ValidationError:
                await self._vault.record_outcome(
                    key_id, client_ip, operation, False, e.provider_code or e.category.value
                )
            logger.warning(
                "proxy_upstream_error",
                category=e.category.value,
                provider_code=e.provider_code,
                details=e.details,
                client_ip=client_ip,
                **audit,
            )
            await emit_safely(
                self._events,
                "proxy_request_error",
                {
                    **audit,
                    "reason": ProxyRejection.UpstreamError.value,
                    "category": e.category.value,
                    "processing_time": elapsed(),
                },
                severity=Severity.Medium,
                client_ip=client_ip,
            )
            error_code = (
                ProxyRejection.InvalidRequest.value
                if e.category == ErrorCategory.ValidationError
                else ProxyRejection.UpstreamError.value
            )
            return ProxyResponse(
                success=False,
                error=e.message,
                error_code=error_code,
                request_id=request.request_id,
                processing_time=elapsed(),
            )
        except Exception as e:
            logger.error("proxy_unexpected_error", error=str(e), client_ip=client_ip, **audit)
            await emit_safely(
                self._events,
                "proxy_request_error",
                {**audit, "reason": "internal_error", "processing_time": elapsed()},
                severity=Severity.High,
                client_ip=client_ip,
            )
            return ProxyResponse(
                success=False,
                error="Proxy request failed",
                error_code="internal_error",
                request_id=request.request_id,
                processing_time=elapsed(),
            )

        self._store_cached(cache_key, data, self._now_ms())
        logger.info("proxy_request_completed", processing_time=elapsed(), **audit)
        await emit_safely(
            self._events,
            "successful_proxy_request",
            {**audit, "processing_time": elapsed(), "cached": False},
            severity=Severity.Low,
            client_ip=client_ip,
        )
        return ProxyResponse(
            success=True,
            data=data,
            request_id=request.request_id,
            processing_time=elapsed(),
        )

    @staticmethod
    def _rejection_event(reason: ProxyRejection) -> str:
        return {
            ProxyRejection.InvalidToken: "invalid_proxy_token",
            ProxyRejection.InvalidSignature: "invalid_proxy_signature",
            ProxyRejection.RequestExpired: "expired_proxy_request",
            ProxyRejection.EndpointNotAllowed: "blocked_proxy_endpoint",
            ProxyRejection.RequestTooLarge: "oversized_proxy_request",
        }.get(reason, "proxy_request_error")

    async def sweep(self) -> int:
        """Drop expired cache entries and proxy tokens.

        Returns:
            Number of entries removed.
        """
        now = self._now_ms()
        removed = 0
        for cache_key, (_, stored_at) in list(self._cache.items()):
            if now - stored_at >= self._config.cache_ttl_ms:
                self._cache.pop(cache_key, None)
                removed += 1
        for token, record in list(self._proxy_tokens.items()):
            if record.expires_at <= now:
                self._proxy_tokens.pop(token, None)
                removed += 1
        return removed

    def get_stats(self) -> dict[str, Any]:
        """Cache and token occupancy."""
        return {
            "cache_size": len(self._cache),
            "active_proxy_tokens": len(self._proxy_tokens),
            "allowed_endpoints": list(self._config.allowed_endpoints),
        }
