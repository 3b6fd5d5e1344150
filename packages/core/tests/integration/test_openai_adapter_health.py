"""Tests for OpenAIAdapter health checks."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from credbroker.domain.models.health_state import ServiceHealth, ServiceStatus
from credbroker.infrastructure.adapters.openai_adapter import OpenAIAdapter


class TestOpenAIAdapterHealth:
    """Tests for get_health method."""

    @pytest.mark.asyncio
    async def test_get_health_returns_operational_for_200(self, adapter: OpenAIAdapter, upstream) -> None:
        upstream.respond("GET", "/v1/models", json={"data": []})

        health = await adapter.get_health("sk-test123456789abcdefghij")

        assert isinstance(health, ServiceHealth)
        assert health.status == ServiceStatus.Operational
        assert health.response_time_ms is not None
        assert health.response_time_ms >= 0
        assert health.details == {"status_code": 200, "endpoint": "/models"}

    @pytest.mark.asyncio
    async def test_get_health_returns_degraded_for_429(self, adapter: OpenAIAdapter, upstream) -> None:
        upstream.respond("GET", "/v1/models", status_code=429)

        health = await adapter.get_health("sk-test123456789abcdefghij")

        assert health.status == ServiceStatus.Degraded

    @pytest.mark.asyncio
    async def test_get_health_returns_down_for_500(self, adapter: OpenAIAdapter, upstream) -> None:
        upstream.respond("GET", "/v1/models", status_code=503)

        health = await adapter.get_health("sk-test123456789abcdefghij")

        assert health.status == ServiceStatus.Down

    @pytest.mark.asyncio
    async def test_get_health_timeout(self, adapter: OpenAIAdapter, upstream) -> None:
        upstream.fail("GET", "/v1/models", httpx.ConnectTimeout("slow"))

        health = await adapter.get_health("sk-test123456789abcdefghij")

        assert health.status == ServiceStatus.Down
        assert health.details["error"] == "Health check timeout"

    @pytest.mark.asyncio
    async def test_get_health_without_key(self, adapter: OpenAIAdapter, upstream) -> None:
        health = await adapter.get_health(None)

        assert health.status == ServiceStatus.Degraded
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_get_health_is_cached(self) -> None:
        mock_client = AsyncMock()
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_client.get = AsyncMock(return_value=mock_response)
        adapter = OpenAIAdapter(client=mock_client, health_check_ttl=30)

        first = await adapter.get_health("sk-test123456789abcdefghij")
        second = await adapter.get_health("sk-test123456789abcdefghij")

        assert first is second
        assert mock_client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_get_health_unexpected_error(self) -> None:
        mock_client = AsyncMock()
        mock_client.get = AsyncMock(side_effect=RuntimeError("boom"))
        adapter = OpenAIAdapter(client=mock_client, health_check_ttl=0)

        with patch("credbroker.infrastructure.adapters.openai_adapter.logger") as mock_logger:
            health = await adapter.get_health("sk-test123456789abcdefghij")

        assert health.status == ServiceStatus.Down
        mock_logger.warning.assert_called_once()
