"""Sliding-window rate limiter with suspicious-activity detection."""

import hashlib
import math
import time
from collections.abc import Callable

import structlog
from pydantic import BaseModel, Field

from credbroker.domain.interfaces.event_sink import EventSink, Severity, emit_safely
from credbroker.domain.models.rate_limit import (
    RateLimitDecision,
    RateLimiterStats,
    RateLimitEntry,
)

logger = structlog.get_logger(__name__)

LOCALHOST_ADDRESSES = ("127.0.0.1", "::1", "localhost", "::ffff:127.0.0.1")
"""Loopback spellings whitelisted in development profiles."""


class RateLimiterConfig(BaseModel):
    """Configuration for one RateLimiter instance."""

    name: str = Field(default="default", description="Limiter name included in emitted events")
    window_ms: int = Field(default=60_000, gt=0)
    max_requests: int = Field(default=10, ge=1)
    suspicious_threshold: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Fraction of max_requests at which an identity is marked suspicious",
    )
    decay_factor: float = Field(
        default=0.8,
        gt=0,
        lt=1,
        description="Multiplier applied to the count when the window slides",
    )
    whitelist: list[str] = Field(default_factory=list)
    fail_closed: bool = Field(
        default=True,
        description="Deny when the limiter itself fails",
    )
    suspicious_ttl_ms: int = Field(default=3_600_000, gt=0)
    allow_clear_all: bool = Field(
        default=False,
        description="Permit clear_all_limits (development profiles only)",
    )


def client_identity(client_ip: str, user_agent: str | None = None, scope: str | None = None) -> str:
    """Derive the counter key for a client.

    Args:
        client_ip: Client IP address.
        user_agent: Declared User-Agent header, if any.
        scope: Optional prefix separating independent counters.

    Returns:
        `[scope:]ip:<10 hex chars of sha256(user_agent)>`.
    """
    agent_hash = hashlib.sha256((user_agent or "").encode()).hexdigest()[:10]
    identity = f"{client_ip}:{agent_hash}"
    return f"{scope}:{identity}" if scope else identity


class RateLimiter:
    """Decides per request whether a client identity may proceed.

    Counting uses a sliding window: once the window boundary is crossed the
    count decays by `decay_factor` instead of dropping to zero, so a burst at
    the end of one window cannot be repeated immediately at the start of the
    next. An identity idle for a whole extra window starts from scratch.

    All state lives in process memory; limits are per instance.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        event_sink: EventSink,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize RateLimiter.

        Args:
            config: Limiter configuration.
            event_sink: Sink receiving rate_limit_exceeded and
                suspicious_activity_detected events.
            clock: Returns the current time in epoch seconds.
        """
        self._config = config
        self._events = event_sink
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._suspicious_ips: dict[str, int] = {}

    @property
    def config(self) -> RateLimiterConfig:
        """Limiter configuration."""
        return self._config

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check_limit(
        self,
        client_ip: str,
        user_agent: str | None = None,
        scope: str | None = None,
    ) -> RateLimitDecision:
        """Check and count one request.

        Never raises. On an internal failure the request is denied when the
        limiter is fail-closed and allowed otherwise.

        Args:
            client_ip: Client IP address.
            user_agent: Declared User-Agent header.
            scope: Optional counter scope (e.g. a proxy token hint).

        Returns:
            RateLimitDecision for this request.
        """
        now = self._now_ms()
        try:
            if client_ip in self._config.whitelist:
                return RateLimitDecision(
                    allowed=True,
                    remaining=self._config.max_requests,
                    reset_time=now + self._config.window_ms,
                )

            identity = client_identity(client_ip, user_agent, scope)
            decision, became_suspicious, count = self._evaluate(identity, client_ip, now)
        except Exception as e:
            logger.error(
                "rate_limiter_error",
                limiter=self._config.name,
                error=str(e),
                fail_closed=self._config.fail_closed,
            )
            if self._config.fail_closed:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_time=now + self._config.window_ms,
                    retry_after_seconds=math.ceil(self._config.window_ms / 1000),
                )
            return RateLimitDecision(
                allowed=True,
                remaining=0,
                reset_time=now + self._config.window_ms,
            )

        if became_suspicious:
            logger.warning(
                "rate_limit_suspicious_activity",
                limiter=self._config.name,
                client_ip=client_ip,
                count=count,
            )
            await emit_safely(
                self._events,
                "suspicious_activity_detected",
                {
                    "limiter": self._config.name,
                    "client_ip": client_ip,
                    "count": count,
                    "max_requests": self._config.max_requests,
                },
                severity=Severity.Medium,
            )

        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                limiter=self._config.name,
                client_ip=client_ip,
                retry_after=decision.retry_after_seconds,
            )
            await emit_safely(
                self._events,
                "rate_limit_exceeded",
                {
                    "limiter": self._config.name,
                    "client_ip": client_ip,
                    "attempts": count,
                    "retry_after_seconds": decision.retry_after_seconds,
                },
                severity=Severity.Medium,
            )

        return decision

    def _evaluate(
        self,
        identity: str,
        client_ip: str,
        now: int,
    ) -> tuple[RateLimitDecision, bool, int]:
        """Apply the window rules to one identity.

        Runs without awaiting, so it is atomic with respect to other
        coroutines touching the same entry.

        Returns:
            Tuple of (decision, became_suspicious, count before this request).
        """
        window = self._config.window_ms
        max_requests = self._config.max_requests
        entry = self._entries.get(identity)

        if entry is None or now >= entry.reset_time + window:
            self._entries[identity] = RateLimitEntry(
                count=1,
                window_start=now,
                reset_time=now + window,
                client_ip=client_ip,
            )
            return (
                RateLimitDecision(
                    allowed=True,
                    remaining=max_requests - 1,
                    reset_time=now + window,
                ),
                False,
                0,
            )

        if now >= entry.reset_time:
            # Boundary crossed: slide forward and keep part of the previous count
            entry.window_start = now
            entry.reset_time = now + window
            entry.count = max(1, math.floor(entry.count * self._config.decay_factor))

        count = entry.count
        became_suspicious = False
        if count >= max_requests * self._config.suspicious_threshold:
            if not entry.suspicious:
                became_suspicious = True
            entry.suspicious = True
            self._suspicious_ips[client_ip] = now

        if count >= max_requests:
            retry_after = max(1, math.ceil((entry.reset_time - now) / 1000))
            return (
                RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_time=entry.reset_time,
                    retry_after_seconds=retry_after,
                ),
                became_suspicious,
                count,
            )

        entry.count = count + 1
        return (
            RateLimitDecision(
                allowed=True,
                remaining=max(0, max_requests - entry.count),
                reset_time=entry.reset_time,
            ),
            became_suspicious,
            count,
        )

    def is_suspicious(self, client_ip: str) -> bool:
        """Whether `client_ip` is currently marked suspicious."""
        return client_ip in self._suspicious_ips

    async def sweep(self) -> int:
        """Remove stale entries and expired suspicious markers.

        Iterates over snapshots so requests inserting entries concurrently
        are unaffected.

        Returns:
            Number of entries and markers removed.
        """
        now = self._now_ms()
        window = self._config.window_ms
        removed = 0
        for identity, entry in list(self._entries.items()):
            if now >= entry.reset_time + window:
                # Only drop the entry if it was not replaced in the meantime
                if self._entries.get(identity) is entry:
                    del self._entries[identity]
                    removed += 1
        for ip, marked_at in list(self._suspicious_ips.items()):
            if now - marked_at >= self._config.suspicious_ttl_ms:
                self._suspicious_ips.pop(ip, None)
                removed += 1
        if removed:
            logger.debug("rate_limit_sweep", limiter=self._config.name, removed=removed)
        return removed

    def get_stats(self) -> RateLimiterStats:
        """Snapshot of limiter occupancy."""
        now = self._now_ms()
        entries = list(self._entries.values())
        return RateLimiterStats(
            name=self._config.name,
            total_entries=len(entries),
            active_windows=sum(1 for entry in entries if entry.reset_time > now),
            suspicious_ips=len(self._suspicious_ips),
            max_requests=self._config.max_requests,
            window_ms=self._config.window_ms,
        )

    def reset_limit(self, target: str) -> bool:
        """Remove counters for an identity or for every identity of an IP.

        Args:
            target: Full identity string or client IP.

        Returns:
            True if any counter was removed.
        """
        removed = self._entries.pop(target, None) is not None
        for identity, entry in list(self._entries.items()):
            if entry.client_ip == target:
                self._entries.pop(identity, None)
                removed = True
        if removed:
            logger.info("rate_limit_reset", limiter=self._config.name, target=target)
        return removed

    def clear_suspicious_ip(self, client_ip: str) -> bool:
        """Drop the suspicious marker for `client_ip`.

        Returns:
            True if the IP was marked.
        """
        was_marked = self._suspicious_ips.pop(client_ip, None) is not None
        for entry in list(self._entries.values()):
            if entry.client_ip == client_ip:
                entry.suspicious = False
        return was_marked

    def clear_all_limits(self) -> bool:
        """Drop every counter and marker. Refused unless allow_clear_all is set.

        Returns:
            True if the limiter was cleared.
        """
        if not self._config.allow_clear_all:
            logger.warning("rate_limit_clear_refused", limiter=self._config.name)
            return False
        self._entries.clear()
        self._suspicious_ips.clear()
        logger.info("rate_limit_cleared", limiter=self._config.name)
        return True

    def rate_limit_headers(self, decision: RateLimitDecision) -> dict[str, str]:
        """Response headers describing a decision.

        Args:
            decision: Decision returned by check_limit.

        Returns:
            X-RateLimit-* headers, plus Retry-After when denied.
        """
        headers = {
            "X-RateLimit-Limit": str(self._config.max_requests),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(math.ceil(decision.reset_time / 1000)),
        }
        if decision.retry_after_seconds is not None:
            headers["Retry-After"] = str(decision.retry_after_seconds)
        return headers


def _profile_config(
    name: str,
    max_requests: int,
    development: bool,
) -> RateLimiterConfig:
    return RateLimiterConfig(
        name=name,
        max_requests=max_requests,
        suspicious_threshold=0.95 if development else 0.8,
        whitelist=list(LOCALHOST_ADDRESSES) if development else [],
        allow_clear_all=development,
    )


def create_token_rate_limiter(
    event_sink: EventSink,
    development: bool = False,
    max_requests: int | None = None,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """Limiter for token issuance: 10/min, 50/min in development."""
    limit = max_requests or (50 if development else 10)
    return RateLimiter(_profile_config("token", limit, development), event_sink, clock)


def create_proxy_rate_limiter(
    event_sink: EventSink,
    development: bool = False,
    max_requests: int | None = None,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """Limiter for proxied requests: 50/min, 200/min in development."""
    limit = max_requests or (200 if development else 50)
    return RateLimiter(_profile_config("proxy", limit, development), event_sink, clock)


def create_refresh_rate_limiter(
    event_sink: EventSink,
    development: bool = False,
    max_requests: int | None = None,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """Limiter for token refresh: 5/min, 20/min in development."""
    limit = max_requests or (20 if development else 5)
    return RateLimiter(_profile_config("refresh", limit, development), event_sink, clock)
