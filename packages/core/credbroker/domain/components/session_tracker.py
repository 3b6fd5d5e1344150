"""SessionTracker component: bookkeeping for token refresh."""

import math
import time
from collections.abc import Callable

import structlog

from credbroker.domain.interfaces.event_sink import EventSink, Severity, emit_safely
from credbroker.domain.models.broker_error import BrokerError, ErrorCategory
from credbroker.domain.models.session import SessionRecord, SessionStats

logger = structlog.get_logger(__name__)


class SessionValidationError(BrokerError):
    """Raised when a refresh request does not match a tracked session."""

    def __init__(self, reason: str, message: str, retry_after: int | None = None) -> None:
        """Initialize SessionValidationError.

        Args:
            reason: Machine-readable reason (session_not_found, session_mismatch, refresh_too_frequent).
            message: Message safe to return to the caller.
            retry_after: Seconds until a retry may succeed.
        """
        super().__init__(
            category=ErrorCategory.PolicyRejection,
            message=message,
            retryable=retry_after is not None,
            retry_after=retry_after,
        )
        self.reason = reason


class SessionTracker:
    """Tracks which client may refresh which session, and how often."""

    def __init__(
        self,
        event_sink: EventSink,
        min_refresh_interval_ms: int = 30_000,
        max_idle_ms: int = 10 * 60 * 1000,
        max_refreshes: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize SessionTracker.

        Args:
            event_sink: Sink receiving session_mismatch alerts.
            min_refresh_interval_ms: Minimum time between refreshes of one session.
            max_idle_ms: Sessions not refreshed for this long are dropped by sweep.
            max_refreshes: Sessions refreshed more often than this are dropped by sweep.
            clock: Returns the current time in epoch seconds.
        """
        self._events = event_sink
        self._min_refresh_interval_ms = min_refresh_interval_ms
        self._max_idle_ms = max_idle_ms
        self._max_refreshes = max_refreshes
        self._clock = clock
        self._sessions: dict[str, SessionRecord] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def register_session(self, session_id: str, client_ip: str) -> SessionRecord:
        """Start tracking a freshly issued session."""
        now = self._now_ms()
        record = SessionRecord(
            session_id=session_id,
            client_ip=client_ip,
            created_at=now,
            last_refresh=now,
        )
        self._sessions[session_id] = record
        logger.info("session_registered", session_id=session_id, client_ip=client_ip)
        return record

    def get_session(self, session_id: str) -> SessionRecord | None:
        """Tracked session, or None."""
        return self._sessions.get(session_id)

    async def validate_refresh(self, session_id: str, client_ip: str) -> SessionRecord:
        """Check that `client_ip` may refresh `session_id` now.

        Args:
            session_id: Session to refresh.
            client_ip: Client asking for the refresh.

        Returns:
            The tracked SessionRecord.

        Raises:
            SessionValidationError: If the session is unknown, bound to another
                IP, or was refreshed too recently.
        """
        if not session_id:
            raise SessionValidationError("session_not_found", "Invalid session ID")

        record = self._sessions.get(session_id)
        if record is None:
            raise SessionValidationError("session_not_found", "Session not found or expired")

        if record.client_ip != client_ip:
            logger.warning(
                "session_ip_mismatch",
                session_id=session_id,
                client_ip=client_ip,
                expected_ip=record.client_ip,
            )
            await emit_safely(
                self._events,
                "session_mismatch",
                {"session_id": session_id},
                severity=Severity.High,
                client_ip=client_ip,
            )
            raise SessionValidationError("session_mismatch", "Session validation failed")

        since_last = self._now_ms() - record.last_refresh
        if since_last < self._min_refresh_interval_ms:
            retry_after = math.ceil((self._min_refresh_interval_ms - since_last) / 1000)
            raise SessionValidationError("refresh_too_frequent", "Refresh too frequent", retry_after)

        return record

    def record_refresh(self, session_id: str) -> SessionRecord | None:
        """Count a successful refresh.

        Returns:
            Updated record, or None if the session is no longer tracked.
        """
        record = self._sessions.get(session_id)
        if record is None:
            return None
        record.last_refresh = self._now_ms()
        record.refresh_count += 1
        return record

    def end_session(self, session_id: str) -> bool:
        """Stop tracking a session."""
        return self._sessions.pop(session_id, None) is not None

    async def sweep(self) -> int:
        """Drop idle sessions and sessions with excessive refreshes.

        Returns:
            Number of sessions removed.
        """
        now = self._now_ms()
        removed = 0
        for session_id, record in list(self._sessions.items()):
            if now - record.last_refresh > self._max_idle_ms or record.refresh_count > self._max_refreshes:
                self._sessions.pop(session_id, None)
                removed += 1
        if removed:
            logger.info("sessions_swept", removed=removed)
        return removed

    def get_stats(self) -> SessionStats:
        """Aggregate view of tracked sessions."""
        records = list(self._sessions.values())
        now = self._now_ms()
        return SessionStats(
            active_sessions=len(records),
            total_refreshes=sum(record.refresh_count for record in records),
            oldest_session_age_ms=max((now - record.created_at for record in records), default=None),
        )
