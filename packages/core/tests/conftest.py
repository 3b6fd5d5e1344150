"""Pytest configuration and shared fixtures."""

import os
import secrets
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from dotenv import load_dotenv

from credbroker.domain.interfaces.event_sink import EventSink
from credbroker.infrastructure.adapters.openai_adapter import OpenAIAdapter
from credbroker.infrastructure.utils.encryption import EncryptionService

# Load .env file from project root before running tests
project_root = Path(__file__).parent.parent.parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)

# Ensure an encryption key is set for all tests
if not os.getenv("CREDBROKER_ENCRYPTION_KEY"):
    os.environ["CREDBROKER_ENCRYPTION_KEY"] = secrets.token_urlsafe(48)


class RecordingEventSink(EventSink):
    """EventSink that keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.logs: list[tuple[str, str, dict[str, Any]]] = []

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.events.append((event_type, payload, metadata or {}))

    async def log(self, level: str, message: str, context: dict[str, Any] | None = None) -> None:
        self.logs.append((level, message, context or {}))

    def of_type(self, event_type: str) -> list[tuple[str, dict[str, Any], dict[str, Any]]]:
        return [event for event in self.events if event[0] == event_type]

    def types(self) -> list[str]:
        return [event[0] for event in self.events]


class FakeClock:
    """Settable clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, milliseconds: int) -> None:
        self.now += milliseconds / 1000


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def encryption_service() -> EncryptionService:
    return EncryptionService(os.environ["CREDBROKER_ENCRYPTION_KEY"], salt="test-salt", iterations=1000)


class MockUpstream:
    """Scripted provider API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}

    def respond(
        self,
        method: str,
        path: str,
        status_code: int = 200,
        json: Any | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        def build(request: httpx.Request) -> httpx.Response:
            if content is not None:
                return httpx.Response(status_code, content=content, headers=headers)
            return httpx.Response(status_code, json=json if json is not None else {}, headers=headers)

        self._routes[(method.upper(), path)] = build

    def fail(self, method: str, path: str, error: Exception) -> None:
        def build(request: httpx.Request) -> httpx.Response:
            raise error

        self._routes[(method.upper(), path)] = build

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self._routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": {"message": "not found", "code": "not_found"}})
        return route(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest_asyncio.fixture
async def adapter(upstream: MockUpstream) -> AsyncIterator[OpenAIAdapter]:
    openai_adapter = OpenAIAdapter(client=upstream.client(), health_check_ttl=0)
    yield openai_adapter
    await openai_adapter.aclose()
