"""CredentialBroker - wires the broker components together."""

import secrets
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from credbroker import __version__
from credbroker.domain.components.capability_detector import CapabilityDetector
from credbroker.domain.components.key_vault import KeyVault, KeyVaultConfig
from credbroker.domain.components.rate_limiter import (
    RateLimiter,
    create_proxy_rate_limiter,
    create_refresh_rate_limiter,
    create_token_rate_limiter,
)
from credbroker.domain.components.secure_proxy import SecureProxy, SecureProxyConfig
from credbroker.domain.components.session_tracker import SessionTracker
from credbroker.domain.components.token_issuer import TokenIssuer, TokenIssuerConfig
from credbroker.domain.interfaces.event_sink import EventSink
from credbroker.domain.models.health_state import HealthReport, ServiceHealth, ServiceStatus
from credbroker.infrastructure.adapters.openai_adapter import OpenAIAdapter
from credbroker.infrastructure.config.settings import BrokerSettings
from credbroker.infrastructure.observability.logger import StructlogEventSink
from credbroker.infrastructure.scheduling.scheduler import SweepScheduler
from credbroker.infrastructure.utils.encryption import EncryptionService
from credbroker.infrastructure.utils.signing import derive_key

logger = structlog.get_logger(__name__)

RATE_LIMIT_SWEEP_SECONDS = 5 * 60
ROTATION_CHECK_SECONDS = 60
VAULT_SWEEP_SECONDS = 60
VAULT_CLEANUP_SECONDS = 60 * 60
PROXY_SWEEP_SECONDS = 60
SESSION_SWEEP_SECONDS = 60

SESSION_IDLE_GRACE_MS = 5 * 60 * 1000


class CredentialBroker:
    """Main entry point for the broker.

    Builds every component from BrokerSettings and owns their lifetime. The
    HTTP service creates one broker per process in its lifespan and hands it
    to request handlers; tests build their own with injected sinks, clocks
    and HTTP clients.

    Example:
        ```python
        settings = BrokerSettings(encryption_key="x" * 32, openai_api_key="sk-...")
        async with CredentialBroker(settings) as broker:
            token = await broker.token_issuer.issue_token("203.0.113.7")
        ```
    """

    def __init__(
        self,
        settings: BrokerSettings | dict[str, Any] | None = None,
        event_sink: EventSink | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize CredentialBroker with dependencies.

        Args:
            settings: BrokerSettings, a dictionary of settings, or None to
                load from environment variables.
            event_sink: Sink for audit events. Defaults to StructlogEventSink.
            http_client: Client used for provider calls, e.g. with a mock transport.
            clock: Returns the current time in epoch seconds.

        Raises:
            ValueError: If the settings are invalid, or no encryption key is
                configured in production.
            EncryptionError: If the encryption key is malformed.
        """
        if settings is None:
            self._settings = BrokerSettings()
        elif isinstance(settings, dict):
            self._settings = BrokerSettings.from_dict(settings)
        elif isinstance(settings, BrokerSettings):
            self._settings = settings
        else:
            raise ValueError(f"Invalid settings type: {type(settings)}. Expected BrokerSettings, dict, or None")

        self._events = event_sink or StructlogEventSink()
        self._clock = clock
        self._started_at = clock()

        encryption_key = self._settings.encryption_key
        if encryption_key is None:
            if self._settings.is_production:
                raise ValueError("CREDBROKER_ENCRYPTION_KEY is required in production")
            logger.warning("encryption_key_generated", environment=self._settings.environment.value)
            encryption_key = secrets.token_urlsafe(48)
        self._encryption = EncryptionService(encryption_key, self._settings.encryption_salt)

        development = self._settings.is_development
        self._key_vault = KeyVault(
            self._encryption,
            self._events,
            KeyVaultConfig.for_environment(self._settings.environment),
            clock=clock,
        )
        self._adapter = OpenAIAdapter(
            base_url=self._settings.provider_base_url,
            timeout=self._settings.request_timeout_seconds,
            health_check_timeout=self._settings.health_check_timeout_seconds,
            health_check_ttl=self._settings.health_check_ttl_seconds,
            client=http_client,
        )

        token_limit = self._settings.rate_limit if "rate_limit" in self._settings.model_fields_set else None
        self._token_limiter = create_token_rate_limiter(self._events, development, token_limit, clock)
        self._proxy_limiter = create_proxy_rate_limiter(self._events, development, clock=clock)
        self._refresh_limiter = create_refresh_rate_limiter(self._events, development, clock=clock)

        token_ttl_ms = self._settings.token_duration * 1000
        self._secure_proxy = SecureProxy(
            self._key_vault,
            self._adapter,
            self._events,
            server_secret=derive_key(self._encryption.key_bytes, b"credbroker/proxy-token/v1"),
            config=SecureProxyConfig(proxy_token_ttl_ms=token_ttl_ms),
            clock=clock,
        )
        self._session_tracker = SessionTracker(
            self._events,
            max_idle_ms=token_ttl_ms + SESSION_IDLE_GRACE_MS,
            clock=clock,
        )
        self._capability_detector = CapabilityDetector(
            self._adapter,
            self._key_vault,
            realtime_model=self._settings.realtime_model,
            realtime_voice=self._settings.realtime_voice,
            demo_mode=self._settings.enable_demo_mode,
            clock=clock,
        )
        self._token_issuer = TokenIssuer(
            self._key_vault,
            self._secure_proxy,
            self._adapter,
            self._session_tracker,
            self._events,
            TokenIssuerConfig(
                token_duration_seconds=self._settings.token_duration,
                demo_mode=self._settings.enable_demo_mode,
                realtime_model=self._settings.realtime_model,
                realtime_voice=self._settings.realtime_voice,
            ),
            clock=clock,
        )
        self._scheduler = self._build_scheduler()
        self._initialized = False

    def _build_scheduler(self) -> SweepScheduler:
        scheduler = SweepScheduler()
        scheduler.add_job("token_rate_limits", RATE_LIMIT_SWEEP_SECONDS, self._token_limiter.sweep)
        scheduler.add_job("proxy_rate_limits", RATE_LIMIT_SWEEP_SECONDS, self._proxy_limiter.sweep)
        scheduler.add_job("refresh_rate_limits", RATE_LIMIT_SWEEP_SECONDS, self._refresh_limiter.sweep)
        scheduler.add_job("key_rotation_check", ROTATION_CHECK_SECONDS, self._key_vault.check_rotation_schedule)
        scheduler.add_job("key_vault_sweep", VAULT_SWEEP_SECONDS, self._key_vault.sweep)
        scheduler.add_job("key_vault_cleanup", VAULT_CLEANUP_SECONDS, self._key_vault.cleanup)
        scheduler.add_job("proxy_sweep", PROXY_SWEEP_SECONDS, self._secure_proxy.sweep)
        scheduler.add_job("session_sweep", SESSION_SWEEP_SECONDS, self._session_tracker.sweep)
        return scheduler

    async def initialize(self) -> None:
        """Vault the configured provider secret. Safe to call more than once."""
        if self._initialized:
            return
        self._initialized = True
        if self._settings.openai_api_key and not self._settings.enable_demo_mode:
            key_id = await self._key_vault.store_key(self._settings.openai_api_key)
            logger.info("provider_key_vaulted", key_id=key_id)
        else:
            logger.info("provider_key_not_configured", demo_mode=self._settings.enable_demo_mode)

    async def start(self) -> None:
        """Initialize and start background maintenance."""
        await self.initialize()
        self._scheduler.start()

    async def aclose(self) -> None:
        """Stop background maintenance and close the provider client."""
        await self._scheduler.stop()
        await self._adapter.aclose()
        logger.info("broker_closed")

    async def __aenter__(self) -> "CredentialBroker":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    @property
    def event_sink(self) -> EventSink:
        return self._events

    @property
    def key_vault(self) -> KeyVault:
        return self._key_vault

    @property
    def adapter(self) -> OpenAIAdapter:
        return self._adapter

    @property
    def token_limiter(self) -> RateLimiter:
        return self._token_limiter

    @property
    def proxy_limiter(self) -> RateLimiter:
        return self._proxy_limiter

    @property
    def refresh_limiter(self) -> RateLimiter:
        return self._refresh_limiter

    @property
    def rate_limiters(self) -> list[RateLimiter]:
        """All request limiters."""
        return [self._token_limiter, self._proxy_limiter, self._refresh_limiter]

    @property
    def secure_proxy(self) -> SecureProxy:
        return self._secure_proxy

    @property
    def session_tracker(self) -> SessionTracker:
        return self._session_tracker

    @property
    def capability_detector(self) -> CapabilityDetector:
        return self._capability_detector

    @property
    def token_issuer(self) -> TokenIssuer:
        return self._token_issuer

    @property
    def scheduler(self) -> SweepScheduler:
        return self._scheduler

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, self._clock() - self._started_at)

    async def health_check(self) -> HealthReport:
        """Check the provider and summarize in-memory state.

        The provider probe uses the active vaulted key and is cached by the
        adapter; the key is only decrypted when that cache is stale. In demo
        mode the provider is not contacted.

        Returns:
            HealthReport with per-service status and metrics.
        """
        now = datetime.now(timezone.utc)
        if self._settings.enable_demo_mode:
            provider = ServiceHealth(
                status=ServiceStatus.Operational,
                last_check=now,
                details={"demo_mode": True},
            )
        else:
            provider = self._adapter.cached_health()
            if provider is None:
                key_id = self._key_vault.get_active_key_id()
                api_key = await self._key_vault.get_key(key_id, "system", "health_check") if key_id else None
                provider = await self._adapter.get_health(api_key)

        limiter_stats = [limiter.get_stats() for limiter in self.rate_limiters]
        session_stats = self._session_tracker.get_stats()
        services = {
            "openai_api": provider,
            "rate_limit": ServiceHealth(
                status=ServiceStatus.Operational,
                last_check=now,
                details={stats.name: stats.model_dump() for stats in limiter_stats},
            ),
            "session_tracking": ServiceHealth(
                status=ServiceStatus.Operational,
                last_check=now,
                details=session_stats.model_dump(),
            ),
        }
        return HealthReport(
            status=HealthReport.aggregate(services),
            timestamp=now,
            uptime_seconds=self.uptime_seconds,
            version=__version__,
            services=services,
            metrics={
                "environment": self._settings.environment.value,
                "demo_mode": self._settings.enable_demo_mode,
                "key_vault": self._key_vault.stats(),
                "proxy": self._secure_proxy.get_stats(),
                "active_sessions": session_stats.active_sessions,
                "suspicious_ips": sum(stats.suspicious_ips for stats in limiter_stats),
            },
        )
