"""TokenIssuer component: mints ephemeral tokens in realtime, proxy or demo mode."""

import secrets
import time
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from credbroker.domain.components.key_vault import KeyVault
from credbroker.domain.components.secure_proxy import SecureProxy
from credbroker.domain.components.session_tracker import SessionTracker
from credbroker.domain.interfaces.event_sink import EventSink, Severity, emit_safely
from credbroker.domain.models.broker_error import BrokerError, CredentialUnavailableError
from credbroker.domain.models.token import EphemeralToken, TokenMode
from credbroker.infrastructure.adapters.openai_adapter import OpenAIAdapter

logger = structlog.get_logger(__name__)

DEMO_MODE_WARNING = "Demo mode enabled: responses are simulated"
NO_KEY_WARNING = "No provider API key configured: running in demo mode"
REALTIME_UNAVAILABLE_WARNING = "Realtime API not available for this account: using proxy mode"
REALTIME_FAILED_WARNING = "Realtime session could not be created: using proxy mode"


class TokenIssuerConfig(BaseModel):
    """Configuration for TokenIssuer."""

    token_duration_seconds: int = Field(default=1800, ge=60, le=3600)
    demo_mode: bool = False
    realtime_model: str = "gpt-4o-realtime-preview"
    realtime_voice: str = "alloy"


class TokenIssuer:
    """Chooses an operating mode and mints the matching ephemeral token.

    Realtime is preferred. When the provider refuses realtime sessions the
    issuer degrades to a proxy token with a warning rather than failing, and
    with no provider key at all it issues demo tokens.
    """

    def __init__(
        self,
        key_vault: KeyVault,
        secure_proxy: SecureProxy,
        adapter: OpenAIAdapter,
        session_tracker: SessionTracker,
        event_sink: EventSink,
        config: TokenIssuerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize TokenIssuer with dependencies.

        Args:
            key_vault: Vault holding the provider secret.
            secure_proxy: Proxy that mints and validates proxy tokens.
            adapter: Provider HTTP adapter used for realtime sessions.
            session_tracker: Tracker that refreshes are validated against.
            event_sink: Sink receiving token_issued events.
            config: Issuer configuration.
            clock: Returns the current time in epoch seconds.
        """
        self._vault = key_vault
        self._proxy = secure_proxy
        self._adapter = adapter
        self._sessions = session_tracker
        self._events = event_sink
        self._config = config or TokenIssuerConfig()
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def new_session_id(self, request_id: str | None = None) -> str:
        """Session identifiers have the form `session_<request id>_<epoch ms>`."""
        return f"session_{request_id or secrets.token_hex(8)}_{self._now_ms()}"

    async def issue_token(self, client_ip: str, request_id: str | None = None) -> EphemeralToken:
        """Issue a token for a new session.

        Args:
            client_ip: Client IP address.
            request_id: Request identifier embedded in the session id.

        Returns:
            EphemeralToken in realtime, proxy or demo mode.

        Raises:
            CredentialUnavailableError: If keys exist but none is usable.
        """
        token = await self._mint(self.new_session_id(request_id), client_ip, keep_session_id=False)
        self._sessions.register_session(token.session_id, client_ip)
        await emit_safely(
            self._events,
            "token_issued",
            {"session_id": token.session_id, "mode": token.mode.value, "expires_at": token.expires_at},
            severity=Severity.Low,
            client_ip=client_ip,
        )
        return token

    async def refresh_token(self, session_id: str, client_ip: str) -> EphemeralToken:
        """Issue a replacement token for a tracked session.

        Proxy tokens previously issued to the session are revoked.

        Args:
            session_id: Session being refreshed.
            client_ip: Client IP address; must match the session's.

        Returns:
            New EphemeralToken for the same session id.

        Raises:
            SessionValidationError: If the session may not be refreshed now.
            CredentialUnavailableError: If keys exist but none is usable.
        """
        await self._sessions.validate_refresh(session_id, client_ip)
        token = await self._mint(session_id, client_ip, keep_session_id=True)
        # Only the replacement token stays usable through the proxy
        self._proxy.revoke_session_tokens(session_id, keep=token.token)
        record = self._sessions.record_refresh(session_id)
        await emit_safely(
            self._events,
            "token_refreshed",
            {
                "session_id": session_id,
                "mode": token.mode.value,
                "refresh_count": record.refresh_count if record else None,
            },
            severity=Severity.Low,
            client_ip=client_ip,
        )
        return token

    async def _mint(self, session_id: str, client_ip: str, keep_session_id: bool) -> EphemeralToken:
        if self._config.demo_mode:
            return self._demo_token(session_id, [DEMO_MODE_WARNING])

        if not self._vault.has_keys():
            return self._demo_token(session_id, [NO_KEY_WARNING])

        key_id = self._vault.get_active_key_id()
        api_key = await self._vault.get_key(key_id, client_ip, "realtime_session") if key_id else None
        if api_key is None:
            logger.error("token_credential_unavailable", client_ip=client_ip, session_id=session_id)
            raise CredentialUnavailableError()

        try:
            session = await self._adapter.create_realtime_session(
                api_key,
                self._config.realtime_model,
                self._config.realtime_voice,
            )
            return self._realtime_token(session, session_id, keep_session_id)
        except BrokerError as e:
            status_code = e.details.get("status_code")
            warning = REALTIME_UNAVAILABLE_WARNING if status_code in (403, 404) else REALTIME_FAILED_WARNING
            logger.warning(
                "realtime_token_fallback",
                session_id=session_id,
                category=e.category.value,
                status_code=status_code,
            )
            return await self._proxy_token(session_id, [warning])

    def _realtime_token(
        self,
        session: dict[str, Any],
        session_id: str,
        keep_session_id: bool,
    ) -> EphemeralToken:
        client_secret = session.get("client_secret")
        if not isinstance(client_secret, dict) or not client_secret.get("value"):
            raise BrokerError(
                category="upstream_error",
                message="Realtime session response missing client secret",
                provider_code="invalid_session_payload",
            )
        expires_at = client_secret.get("expires_at")
        if isinstance(expires_at, int | float) and expires_at > 0:
            expires_at_ms = int(expires_at * 1000)
        else:
            expires_at_ms = self._now_ms() + self._config.token_duration_seconds * 1000
        if expires_at_ms <= self._now_ms():
            raise BrokerError(
                category="upstream_error",
                message="Realtime session already expired",
                provider_code="expired_session_payload",
            )
        provider_session_id = session.get("id")
        return EphemeralToken(
            token=str(client_secret["value"]),
            expires_at=expires_at_ms,
            session_id=session_id if keep_session_id or not provider_session_id else str(provider_session_id),
            mode=TokenMode.Realtime,
        )

    async def _proxy_token(self, session_id: str, warnings: list[str]) -> EphemeralToken:
        proxy_token = await self._proxy.generate_proxy_token(session_id)
        return EphemeralToken(
            token=proxy_token.token,
            expires_at=proxy_token.expires_at,
            session_id=session_id,
            mode=TokenMode.Proxy,
            warnings=warnings,
            proxy_endpoint=proxy_token.proxy_endpoint,
        )

    def _demo_token(self, session_id: str, warnings: list[str]) -> EphemeralToken:
        return EphemeralToken(
            token=f"demo_{secrets.token_hex(16)}",
            expires_at=self._now_ms() + self._config.token_duration_seconds * 1000,
            session_id=session_id,
            mode=TokenMode.Demo,
            warnings=warnings,
        )
