"""Tests for SessionTracker component."""

import pytest

from credbroker.domain.components.session_tracker import SessionTracker, SessionValidationError

CLIENT_IP = "203.0.113.7"


@pytest.fixture
def tracker(event_sink, clock) -> SessionTracker:
    return SessionTracker(event_sink, max_idle_ms=35 * 60 * 1000, max_refreshes=3, clock=clock)


class TestSessionTracker:
    """Tests for refresh validation."""

    def test_register_session(self, tracker: SessionTracker, clock) -> None:
        record = tracker.register_session("session_a", CLIENT_IP)

        assert record.client_ip == CLIENT_IP
        assert record.refresh_count == 0
        assert record.created_at == record.last_refresh == int(clock() * 1000)
        assert tracker.get_session("session_a") is record

    @pytest.mark.asyncio
    async def test_refresh_allowed_after_interval(self, tracker: SessionTracker, clock) -> None:
        tracker.register_session("session_a", CLIENT_IP)
        clock.advance(30)

        record = await tracker.validate_refresh("session_a", CLIENT_IP)

        assert record.session_id == "session_a"

    @pytest.mark.asyncio
    async def test_refresh_too_frequent(self, tracker: SessionTracker, clock) -> None:
        tracker.register_session("session_a", CLIENT_IP)
        clock.advance(10.5)

        with pytest.raises(SessionValidationError) as exc_info:
            await tracker.validate_refresh("session_a", CLIENT_IP)

        assert exc_info.value.reason == "refresh_too_frequent"
        assert exc_info.value.retry_after == 20

    @pytest.mark.asyncio
    async def test_unknown_session(self, tracker: SessionTracker) -> None:
        with pytest.raises(SessionValidationError) as exc_info:
            await tracker.validate_refresh("session_missing", CLIENT_IP)

        assert exc_info.value.reason == "session_not_found"
        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_empty_session_id(self, tracker: SessionTracker) -> None:
        with pytest.raises(SessionValidationError, match="Invalid session ID"):
            await tracker.validate_refresh("", CLIENT_IP)

    @pytest.mark.asyncio
    async def test_ip_mismatch_is_reported(self, tracker: SessionTracker, event_sink, clock) -> None:
        tracker.register_session("session_a", CLIENT_IP)
        clock.advance(60)

        with pytest.raises(SessionValidationError) as exc_info:
            await tracker.validate_refresh("session_a", "198.51.100.2")

        assert exc_info.value.reason == "session_mismatch"
        mismatch = event_sink.of_type("session_mismatch")
        assert mismatch[0][2]["severity"] == "high"
        assert mismatch[0][2]["client_ip"] == "198.51.100.2"

    @pytest.mark.asyncio
    async def test_record_refresh_resets_interval(self, tracker: SessionTracker, clock) -> None:
        tracker.register_session("session_a", CLIENT_IP)
        clock.advance(31)

        record = tracker.record_refresh("session_a")

        assert record is not None
        assert record.refresh_count == 1
        with pytest.raises(SessionValidationError):
            await tracker.validate_refresh("session_a", CLIENT_IP)

    def test_record_refresh_unknown_session(self, tracker: SessionTracker) -> None:
        assert tracker.record_refresh("session_missing") is None

    def test_end_session(self, tracker: SessionTracker) -> None:
        tracker.register_session("session_a", CLIENT_IP)

        assert tracker.end_session("session_a") is True
        assert tracker.end_session("session_a") is False


class TestSessionTrackerSweep:
    """Tests for sweep and stats."""

    @pytest.mark.asyncio
    async def test_sweep_drops_idle_sessions(self, tracker: SessionTracker, clock) -> None:
        tracker.register_session("session_old", CLIENT_IP)
        clock.advance(30 * 60)
        tracker.register_session("session_new", CLIENT_IP)
        clock.advance(6 * 60)

        assert await tracker.sweep() == 1
        assert tracker.get_session("session_old") is None
        assert tracker.get_session("session_new") is not None

    @pytest.mark.asyncio
    async def test_sweep_drops_over_refreshed_sessions(self, tracker: SessionTracker) -> None:
        tracker.register_session("session_a", CLIENT_IP)
        for _ in range(4):
            tracker.record_refresh("session_a")

        assert await tracker.sweep() == 1

    def test_stats(self, tracker: SessionTracker, clock) -> None:
        tracker.register_session("session_a", CLIENT_IP)
        clock.advance(5)
        tracker.register_session("session_b", CLIENT_IP)
        tracker.record_refresh("session_b")

        stats = tracker.get_stats()

        assert stats.active_sessions == 2
        assert stats.total_refreshes == 1
        assert stats.oldest_session_age_ms == 5000

    def test_stats_when_empty(self, tracker: SessionTracker) -> None:
        stats = tracker.get_stats()

        assert stats.active_sessions == 0
        assert stats.oldest_session_age_ms is None
