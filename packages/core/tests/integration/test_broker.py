"""Integration tests for CredentialBroker wiring."""

import pytest

from credbroker.broker import CredentialBroker
from credbroker.domain.models.health_state import HealthStatus, ServiceStatus
from credbroker.domain.models.vaulted_key import KeyEnvironment
from credbroker.infrastructure.config.settings import BrokerSettings

ENCRYPTION_KEY = "k" * 48
PROVIDER_KEY = "sk-test123456789abcdefghij"


def make_settings(**overrides) -> BrokerSettings:
    values = {
        "encryption_key": ENCRYPTION_KEY,
        "openai_api_key": PROVIDER_KEY,
        "health_check_ttl_seconds": 0,
    }
    values.update(overrides)
    return BrokerSettings(**values)


class TestBrokerConstruction:
    """Tests for building the broker from settings."""

    def test_settings_from_dict(self, event_sink) -> None:
        broker = CredentialBroker({"encryption_key": ENCRYPTION_KEY, "token_duration": 600}, event_sink=event_sink)

        assert broker.settings.token_duration == 600
        assert broker.event_sink is event_sink

    def test_invalid_settings_type(self) -> None:
        with pytest.raises(ValueError, match="Invalid settings type"):
            CredentialBroker(settings="not settings")  # type: ignore[arg-type]

    def test_production_requires_encryption_key(self, event_sink) -> None:
        settings = make_settings(environment=KeyEnvironment.Production, encryption_key=None)

        with pytest.raises(ValueError, match="CREDBROKER_ENCRYPTION_KEY"):
            CredentialBroker(settings, event_sink=event_sink)

    def test_development_generates_encryption_key(self, event_sink) -> None:
        broker = CredentialBroker(make_settings(encryption_key=None), event_sink=event_sink)

        assert broker.key_vault is not None

    def test_token_limit_uses_profile_default(self, event_sink) -> None:
        development = CredentialBroker(make_settings(), event_sink=event_sink)
        production = CredentialBroker(make_settings(environment=KeyEnvironment.Production), event_sink=event_sink)

        assert development.token_limiter.get_stats().max_requests == 50
        assert production.token_limiter.get_stats().max_requests == 10
        assert production.proxy_limiter.get_stats().max_requests == 50
        assert production.refresh_limiter.get_stats().max_requests == 5

    def test_explicit_rate_limit_applies_to_token_limiter(self, event_sink) -> None:
        broker = CredentialBroker(make_settings(rate_limit=3), event_sink=event_sink)

        assert broker.token_limiter.get_stats().max_requests == 3
        assert broker.proxy_limiter.get_stats().max_requests == 200

    def test_scheduler_jobs(self, event_sink) -> None:
        broker = CredentialBroker(make_settings(), event_sink=event_sink)

        assert [job.name for job in broker.scheduler.jobs] == [
            "token_rate_limits",
            "proxy_rate_limits",
            "refresh_rate_limits",
            "key_rotation_check",
            "key_vault_sweep",
            "key_vault_cleanup",
            "proxy_sweep",
            "session_sweep",
        ]
        assert len(broker.rate_limiters) == 3


class TestBrokerLifecycle:
    """Tests for initialize, start and close."""

    @pytest.mark.asyncio
    async def test_initialize_vaults_provider_key_once(self, event_sink, clock, upstream) -> None:
        broker = CredentialBroker(make_settings(), event_sink=event_sink, http_client=upstream.client(), clock=clock)

        await broker.initialize()
        await broker.initialize()

        assert broker.key_vault.stats()["total_keys"] == 1
        key_id = broker.key_vault.get_active_key_id()
        assert await broker.key_vault.get_key(key_id, "system", "test") == PROVIDER_KEY
        await broker.aclose()

    @pytest.mark.asyncio
    async def test_demo_mode_does_not_vault_key(self, event_sink, clock, upstream) -> None:
        settings = make_settings(enable_demo_mode=True)
        broker = CredentialBroker(settings, event_sink=event_sink, http_client=upstream.client(), clock=clock)

        await broker.initialize()

        assert broker.key_vault.has_keys() is False
        await broker.aclose()

    @pytest.mark.asyncio
    async def test_start_and_close(self, event_sink, clock, upstream) -> None:
        broker = CredentialBroker(make_settings(), event_sink=event_sink, http_client=upstream.client(), clock=clock)

        await broker.start()
        assert broker.scheduler.running is True

        await broker.aclose()
        assert broker.scheduler.running is False

    @pytest.mark.asyncio
    async def test_async_context_manager(self, event_sink, clock, upstream) -> None:
        async with CredentialBroker(
            make_settings(), event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            assert broker.key_vault.has_keys() is True

    @pytest.mark.asyncio
    async def test_issue_token_through_broker(self, event_sink, clock, upstream) -> None:
        upstream.respond(
            "POST",
            "/v1/realtime/sessions",
            json={"id": "sess_1", "client_secret": {"value": "ek_live", "expires_at": int(clock()) + 60}},
        )
        async with CredentialBroker(
            make_settings(), event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            token = await broker.token_issuer.issue_token("203.0.113.7")

            assert token.token == "ek_live"
            assert broker.session_tracker.get_stats().active_sessions == 1


class TestBrokerHealth:
    """Tests for health_check."""

    @pytest.mark.asyncio
    async def test_demo_mode_is_healthy_without_provider(self, event_sink, clock, upstream) -> None:
        settings = make_settings(enable_demo_mode=True)
        async with CredentialBroker(
            settings, event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            report = await broker.health_check()

        assert report.status == HealthStatus.Healthy
        assert report.services["openai_api"].details == {"demo_mode": True}
        assert report.metrics["demo_mode"] is True
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_healthy_when_provider_reachable(self, event_sink, clock, upstream) -> None:
        upstream.respond("GET", "/v1/models", json={"data": []})
        async with CredentialBroker(
            make_settings(), event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            clock.advance(12)
            report = await broker.health_check()

        assert report.status == HealthStatus.Healthy
        assert set(report.services) == {"openai_api", "rate_limit", "session_tracking"}
        assert report.uptime_seconds == 12
        assert report.metrics["environment"] == "development"
        assert report.metrics["key_vault"]["active_keys"] == 1
        assert report.metrics["active_sessions"] == 0
        assert report.metrics["suspicious_ips"] == 0
        sent = upstream.calls("/v1/models")[0]
        assert sent.headers["Authorization"] == f"Bearer {PROVIDER_KEY}"

    @pytest.mark.asyncio
    async def test_unhealthy_when_provider_down(self, event_sink, clock, upstream) -> None:
        upstream.respond("GET", "/v1/models", status_code=503)
        async with CredentialBroker(
            make_settings(), event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            report = await broker.health_check()

        assert report.status == HealthStatus.Unhealthy
        assert report.services["openai_api"].status == ServiceStatus.Down

    @pytest.mark.asyncio
    async def test_degraded_without_provider_key(self, event_sink, clock, upstream) -> None:
        settings = make_settings(openai_api_key=None)
        async with CredentialBroker(
            settings, event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            report = await broker.health_check()

        assert report.status == HealthStatus.Degraded
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_fresh_health_cache_skips_key_decryption(self, event_sink, clock, upstream) -> None:
        upstream.respond("GET", "/v1/models", json={"data": []})
        settings = make_settings(health_check_ttl_seconds=60)
        async with CredentialBroker(
            settings, event_sink=event_sink, http_client=upstream.client(), clock=clock
        ) as broker:
            first = await broker.health_check()
            second = await broker.health_check()
            key_id = broker.key_vault.get_active_key_id()
            usage_count = broker.key_vault.get_key_metadata(key_id).usage_count

        assert first.services["openai_api"] == second.services["openai_api"]
        assert usage_count == 1
        assert len(upstream.calls("/v1/models")) == 1
