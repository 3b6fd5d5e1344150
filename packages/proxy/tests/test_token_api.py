"""Tests for POST /token and POST /refresh."""

import time

import httpx

from credbroker.domain.models.vaulted_key import KeyEnvironment


class TestTokenEndpoint:
    """Tests for token issuance over HTTP."""

    def test_demo_token(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.post("/token")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["mode"] == "demo"
        assert body["token"].startswith("demo_")
        assert body["warnings"]
        assert response.headers["X-Token-Mode"] == "demo"
        assert response.headers["X-Session-Id"] == body["sessionId"]
        assert response.headers["X-RateLimit-Limit"] == "50"
        assert response.headers["X-Processing-Time"].endswith("ms")

    def test_realtime_token(self, make_client, provider) -> None:
        provider.respond(
            "POST",
            "/v1/realtime/sessions",
            json={"id": "sess_live", "client_secret": {"value": "ek_live", "expires_at": int(time.time()) + 60}},
        )
        client = make_client()

        response = client.post("/token", headers={"Origin": "http://localhost:3000"})

        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "realtime"
        assert body["token"] == "ek_live"
        assert "proxyEndpoint" not in body
        sent = provider.calls("/v1/realtime/sessions")[0]
        assert sent.headers["Authorization"] == "Bearer sk-test123456789abcdefghij"

    def test_proxy_fallback_when_realtime_forbidden(self, make_client, provider) -> None:
        provider.respond("POST", "/v1/realtime/sessions", status_code=403)
        client = make_client()

        body = client.post("/token").json()

        assert body["mode"] == "proxy"
        assert body["token"].startswith("proxy_")
        assert body["proxyEndpoint"] == "/proxy"
        assert body["warnings"]

    def test_proxy_fallback_when_realtime_connection_breaks(self, make_client, provider) -> None:
        provider.fail("POST", "/v1/realtime/sessions", httpx.RemoteProtocolError("peer closed connection"))
        client = make_client()

        response = client.post("/token")

        assert response.status_code == 200
        body = response.json()
        assert body["mode"] == "proxy"
        assert body["token"].startswith("proxy_")

    def test_request_id_echoed(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.post("/token", headers={"X-Request-Id": "req-client-1"})

        assert response.headers["X-Request-Id"] == "req-client-1"

    def test_rate_limited(self, make_client) -> None:
        client = make_client(enable_demo_mode=True, rate_limit=2)

        statuses = [client.post("/token").status_code for _ in range(3)]

        assert statuses == [200, 200, 429]
        response = client.post("/token")
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Rate limit exceeded. Please try again later."
        assert body["retryAfter"] >= 1
        assert response.headers["Retry-After"] == str(body["retryAfter"])
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_origin_not_allowed(self, make_client, event_sink) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.post("/token", headers={"Origin": "https://evil.example"})

        assert response.status_code == 403
        assert response.json() == {"success": False, "error": "Origin not allowed"}
        assert "Access-Control-Allow-Origin" not in response.headers
        assert "origin_rejected" in event_sink.types()

    def test_origin_required(self, make_client) -> None:
        client = make_client(enable_demo_mode=True, require_origin=True)

        assert client.post("/token").status_code == 403
        assert client.post("/token", headers={"Origin": "http://localhost:3000"}).status_code == 200

    def test_get_not_allowed(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.get("/token")

        assert response.status_code == 405
        assert response.headers["Allow"] == "POST"
        assert response.json()["success"] is False

    def test_forwarded_for_ignored_from_untrusted_peer(self, make_client) -> None:
        client = make_client(enable_demo_mode=True, rate_limit=1)

        first = client.post("/token", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        second = client.post("/token", headers={"X-Forwarded-For": "198.51.100.9"})

        assert first.status_code == 200
        assert second.status_code == 429

    def test_rotating_forwarded_for_cannot_evade_limit(self, make_client) -> None:
        client = make_client(enable_demo_mode=True, environment=KeyEnvironment.Production, rate_limit=10)

        statuses = [
            client.post("/token", headers={"X-Forwarded-For": f"198.51.100.{n}", "X-Real-IP": f"203.0.113.{n}"})
            .status_code
            for n in range(11)
        ]

        assert statuses == [200] * 10 + [429]

    def test_forwarded_for_identifies_client_behind_trusted_proxy(self, make_client) -> None:
        client = make_client(enable_demo_mode=True, rate_limit=1, trusted_proxies="testclient, 10.0.0.1")

        first = client.post("/token", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        second = client.post("/token", headers={"X-Forwarded-For": "198.51.100.9"})
        third = client.post("/token", headers={"X-Forwarded-For": "203.0.113.7"})

        assert first.status_code == 200
        assert second.status_code == 200
        assert third.status_code == 429


class TestRefreshEndpoint:
    """Tests for token refresh over HTTP."""

    def test_refresh_too_soon(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)
        session_id = client.post("/token").json()["sessionId"]

        response = client.post("/refresh", json={"sessionId": session_id})

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "Refresh too frequent"
        assert body["retryAfter"] >= 1
        assert response.headers["Retry-After"] == str(body["retryAfter"])

    def test_unknown_session(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.post("/refresh", json={"sessionId": "session_unknown"})

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Session not found or expired"}

    def test_other_client_cannot_refresh(self, make_client, event_sink) -> None:
        client = make_client(enable_demo_mode=True, trusted_proxies="testclient")
        session_id = client.post("/token", headers={"X-Forwarded-For": "203.0.113.7"}).json()["sessionId"]

        response = client.post(
            "/refresh",
            json={"sessionId": session_id},
            headers={"X-Forwarded-For": "198.51.100.9"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Session validation failed"
        assert "session_mismatch" in event_sink.types()

    def test_invalid_body(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.post("/refresh", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"

    def test_missing_session_id(self, make_client) -> None:
        client = make_client(enable_demo_mode=True)

        response = client.post("/refresh", json={})

        assert response.status_code == 400
