"""Tests for TokenIssuer component."""

import httpx
import pytest
import pytest_asyncio

from credbroker.domain.components.key_vault import KeyVault
from credbroker.domain.components.secure_proxy import SecureProxy
from credbroker.domain.components.session_tracker import SessionTracker, SessionValidationError
from credbroker.domain.components.token_issuer import (
    DEMO_MODE_WARNING,
    NO_KEY_WARNING,
    REALTIME_FAILED_WARNING,
    REALTIME_UNAVAILABLE_WARNING,
    TokenIssuer,
    TokenIssuerConfig,
)
from credbroker.domain.models.broker_error import CredentialUnavailableError
from credbroker.domain.models.token import TokenMode
from credbroker.domain.models.vaulted_key import DeactivationReason

SECRET = "sk-test-upstream-secret-0123456789"
CLIENT_IP = "203.0.113.7"
REALTIME_PATH = "/v1/realtime/sessions"


@pytest_asyncio.fixture
async def vault(encryption_service, event_sink, clock) -> KeyVault:
    key_vault = KeyVault(encryption_service, event_sink, clock=clock)
    await key_vault.store_key(SECRET)
    return key_vault


@pytest.fixture
def proxy(vault, adapter, event_sink, clock) -> SecureProxy:
    return SecureProxy(vault, adapter, event_sink, server_secret=b"s" * 32, clock=clock)


@pytest.fixture
def tracker(event_sink, clock) -> SessionTracker:
    return SessionTracker(event_sink, clock=clock)


def make_issuer(vault, proxy, adapter, tracker, event_sink, clock, **config) -> TokenIssuer:
    return TokenIssuer(vault, proxy, adapter, tracker, event_sink, TokenIssuerConfig(**config), clock)


@pytest.fixture
def issuer(vault, proxy, adapter, tracker, event_sink, clock) -> TokenIssuer:
    return make_issuer(vault, proxy, adapter, tracker, event_sink, clock)


class TestTokenIssuerModes:
    """Tests for mode selection at issuance."""

    @pytest.mark.asyncio
    async def test_realtime_token(self, issuer: TokenIssuer, upstream, tracker, event_sink) -> None:
        upstream.respond(
            "POST",
            REALTIME_PATH,
            json={"id": "sess_upstream", "client_secret": {"value": "ek_live", "expires_at": 1_700_000_060}},
        )

        token = await issuer.issue_token(CLIENT_IP, "req_1")

        assert token.mode == TokenMode.Realtime
        assert token.token == "ek_live"
        assert token.expires_at == 1_700_000_060_000
        assert token.session_id == "sess_upstream"
        assert tracker.get_session("sess_upstream") is not None
        issued = event_sink.of_type("token_issued")
        assert issued[0][1]["mode"] == "realtime"
        assert "token" not in issued[0][1]

    @pytest.mark.asyncio
    async def test_realtime_request_carries_model_and_voice(
        self, vault, proxy, adapter, tracker, event_sink, clock, upstream
    ) -> None:
        upstream.respond(
            "POST", REALTIME_PATH, json={"client_secret": {"value": "ek_live", "expires_at": 1_700_000_060}}
        )
        issuer = make_issuer(vault, proxy, adapter, tracker, event_sink, clock, realtime_voice="verse")

        token = await issuer.issue_token(CLIENT_IP, "req_1")

        call = upstream.calls(REALTIME_PATH)[0]
        assert call.headers["Authorization"] == f"Bearer {SECRET}"
        assert b'"voice":"verse"' in call.content.replace(b" ", b"")
        assert token.session_id.startswith("session_req_1_")

    @pytest.mark.asyncio
    async def test_forbidden_realtime_falls_back_to_proxy(self, issuer: TokenIssuer, proxy, upstream, clock) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=403, json={"error": {"code": "forbidden"}})

        token = await issuer.issue_token(CLIENT_IP, "req_1")

        assert token.mode == TokenMode.Proxy
        assert token.token.startswith("proxy_")
        assert token.warnings == [REALTIME_UNAVAILABLE_WARNING]
        assert token.proxy_endpoint == "/proxy"
        assert token.expires_at == int(clock() * 1000) + 30 * 60 * 1000
        assert proxy.validate_proxy_token(token.token, token.session_id)

    @pytest.mark.asyncio
    async def test_other_realtime_failure_falls_back_with_warning(self, issuer: TokenIssuer, upstream) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=502)

        token = await issuer.issue_token(CLIENT_IP)

        assert token.mode == TokenMode.Proxy
        assert token.warnings == [REALTIME_FAILED_WARNING]

    @pytest.mark.asyncio
    async def test_realtime_protocol_error_falls_back(self, issuer: TokenIssuer, proxy, upstream) -> None:
        upstream.fail("POST", REALTIME_PATH, httpx.RemoteProtocolError("peer closed connection"))

        token = await issuer.issue_token(CLIENT_IP)

        assert token.mode == TokenMode.Proxy
        assert token.warnings == [REALTIME_FAILED_WARNING]
        assert proxy.validate_proxy_token(token.token, token.session_id)

    @pytest.mark.asyncio
    async def test_malformed_realtime_payload_falls_back(self, issuer: TokenIssuer, upstream) -> None:
        upstream.respond("POST", REALTIME_PATH, json={"id": "sess_upstream"})

        token = await issuer.issue_token(CLIENT_IP)

        assert token.mode == TokenMode.Proxy

    @pytest.mark.asyncio
    async def test_realtime_failure_does_not_count_against_key(self, issuer: TokenIssuer, vault, upstream) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=403)

        for _ in range(12):
            await issuer.issue_token(CLIENT_IP)

        assert vault.get_key_metadata(vault.get_active_key_id()).is_active is True

    @pytest.mark.asyncio
    async def test_demo_mode(self, vault, proxy, adapter, tracker, event_sink, clock, upstream) -> None:
        issuer = make_issuer(
            vault, proxy, adapter, tracker, event_sink, clock, demo_mode=True, token_duration_seconds=600
        )

        token = await issuer.issue_token(CLIENT_IP)

        assert token.mode == TokenMode.Demo
        assert token.token.startswith("demo_")
        assert token.warnings == [DEMO_MODE_WARNING]
        assert token.expires_at == int(clock() * 1000) + 600_000
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_no_key_gives_demo_token(
        self, encryption_service, adapter, tracker, event_sink, clock, upstream
    ) -> None:
        empty_vault = KeyVault(encryption_service, event_sink, clock=clock)
        proxy = SecureProxy(empty_vault, adapter, event_sink, server_secret=b"s" * 32, clock=clock)
        issuer = make_issuer(empty_vault, proxy, adapter, tracker, event_sink, clock)

        token = await issuer.issue_token(CLIENT_IP)

        assert token.mode == TokenMode.Demo
        assert token.warnings == [NO_KEY_WARNING]
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unusable_key_raises(self, issuer: TokenIssuer, vault, upstream) -> None:
        await vault.deactivate_key(vault.get_active_key_id(), DeactivationReason.Manual)

        with pytest.raises(CredentialUnavailableError):
            await issuer.issue_token(CLIENT_IP)

        assert upstream.requests == []


class TestTokenIssuerRefresh:
    """Tests for refresh through the session tracker."""

    @pytest.mark.asyncio
    async def test_refresh_keeps_session_id(self, issuer: TokenIssuer, upstream, tracker, event_sink, clock) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=403)
        first = await issuer.issue_token(CLIENT_IP)
        clock.advance(31)

        refreshed = await issuer.refresh_token(first.session_id, CLIENT_IP)

        assert refreshed.session_id == first.session_id
        assert refreshed.token != first.token
        assert tracker.get_session(first.session_id).refresh_count == 1
        assert event_sink.of_type("token_refreshed")[0][1]["refresh_count"] == 1

    @pytest.mark.asyncio
    async def test_refresh_revokes_previous_proxy_token(self, issuer: TokenIssuer, proxy, upstream, clock) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=403)
        first = await issuer.issue_token(CLIENT_IP)
        clock.advance(31)

        refreshed = await issuer.refresh_token(first.session_id, CLIENT_IP)

        assert refreshed.mode == TokenMode.Proxy
        assert not proxy.validate_proxy_token(first.token)
        assert proxy.validate_proxy_token(refreshed.token, first.session_id)
        clock.advance(31)
        second = await issuer.refresh_token(first.session_id, CLIENT_IP)
        assert not proxy.validate_proxy_token(refreshed.token)
        assert proxy.validate_proxy_token(second.token, first.session_id)

    @pytest.mark.asyncio
    async def test_realtime_refresh_keeps_session_id(self, issuer: TokenIssuer, upstream, clock) -> None:
        upstream.respond(
            "POST",
            REALTIME_PATH,
            json={"id": "sess_upstream", "client_secret": {"value": "ek_live", "expires_at": 1_700_000_600}},
        )
        first = await issuer.issue_token(CLIENT_IP)
        clock.advance(31)
        upstream.respond(
            "POST",
            REALTIME_PATH,
            json={"id": "sess_other", "client_secret": {"value": "ek_next", "expires_at": 1_700_000_600}},
        )

        refreshed = await issuer.refresh_token(first.session_id, CLIENT_IP)

        assert refreshed.session_id == "sess_upstream"
        assert refreshed.token == "ek_next"

    @pytest.mark.asyncio
    async def test_refresh_too_soon(self, issuer: TokenIssuer, upstream, clock) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=403)
        first = await issuer.issue_token(CLIENT_IP)
        clock.advance(5)

        with pytest.raises(SessionValidationError) as exc_info:
            await issuer.refresh_token(first.session_id, CLIENT_IP)

        assert exc_info.value.retry_after == 25

    @pytest.mark.asyncio
    async def test_refresh_from_other_ip(self, issuer: TokenIssuer, upstream, clock) -> None:
        upstream.respond("POST", REALTIME_PATH, status_code=403)
        first = await issuer.issue_token(CLIENT_IP)
        clock.advance(31)

        with pytest.raises(SessionValidationError) as exc_info:
            await issuer.refresh_token(first.session_id, "198.51.100.2")

        assert exc_info.value.reason == "session_mismatch"

    def test_session_id_format(self, issuer: TokenIssuer, clock) -> None:
        assert issuer.new_session_id("req_42") == f"session_req_42_{int(clock() * 1000)}"
        assert issuer.new_session_id().startswith("session_")
