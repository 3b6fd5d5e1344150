"""Fixtures for the HTTP service tests."""

from collections.abc import Callable, Iterator
from contextlib import ExitStack
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from credbroker.domain.interfaces.event_sink import EventSink
from credbroker.infrastructure.config.settings import BrokerSettings
from credbroker_proxy.main import create_app

ENCRYPTION_KEY = "e" * 48
PROVIDER_KEY = "sk-test123456789abcdefghij"
ALLOWED_ORIGIN = "http://localhost:3000"


class RecordingEventSink(EventSink):
    """EventSink that keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any], dict[str, Any]]] = []

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.events.append((event_type, payload, metadata or {}))

    async def log(self, level: str, message: str, context: dict[str, Any] | None = None) -> None:
        pass

    def types(self) -> list[str]:
        return [event[0] for event in self.events]


class FakeProvider:
    """Provider API answering from a route table."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response] = {}
        self.failures: dict[tuple[str, str], Exception] = {}

    def respond(self, method: str, path: str, status_code: int = 200, json: Any | None = None) -> None:
        self.routes[(method, path)] = httpx.Response(status_code, json=json if json is not None else {})

    def fail(self, method: str, path: str, error: Exception) -> None:
        self.failures[(method, path)] = error

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        error = self.failures.get((request.method, request.url.path))
        if error is not None:
            raise error
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"error": {"message": "not found"}})
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def make_client(
    provider: FakeProvider,
    event_sink: RecordingEventSink,
) -> Iterator[Callable[..., TestClient]]:
    """Build a started TestClient; keyword arguments override BrokerSettings."""
    with ExitStack() as stack:

        def build(**overrides: Any) -> TestClient:
            values: dict[str, Any] = {
                "encryption_key": ENCRYPTION_KEY,
                "openai_api_key": PROVIDER_KEY,
                "allowed_origins": ALLOWED_ORIGIN,
                "health_check_ttl_seconds": 0,
                "log_json": False,
            }
            values.update(overrides)
            app = create_app(
                settings=BrokerSettings(**values),
                event_sink=event_sink,
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)),
            )
            return stack.enter_context(TestClient(app))

        yield build
