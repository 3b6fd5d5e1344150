"""TokenManager: client-side ephemeral token lifecycle with automatic refresh."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from credbroker.domain.models.token import EphemeralToken, TokenMode

logger = structlog.get_logger(__name__)


class TokenState(str, Enum):
    """Lifecycle states of the managed token."""

    Uninitialized = "uninitialized"
    Requesting = "requesting"
    Valid = "valid"
    Refreshing = "refreshing"
    Expired = "expired"
    Cleared = "cleared"


class OperatingMode(str, Enum):
    """How the client talks to the provider."""

    Realtime = "realtime"
    """Direct realtime connection with a provider-minted token."""

    Fallback = "fallback"
    """Chat and speech over the broker's proxy."""

    Demo = "demo"
    """Simulated responses."""


class TokenManagerEvent(str, Enum):
    """Events listeners can subscribe to."""

    TokenRefreshed = "token_refreshed"
    TokenExpired = "token_expired"
    TokenError = "token_error"
    RefreshStarted = "refresh_started"
    RefreshCompleted = "refresh_completed"
    ModeChanged = "mode_changed"
    CompatibilityChecked = "compatibility_checked"


_SERVER_MODES = {
    TokenMode.Realtime: OperatingMode.Realtime,
    TokenMode.Proxy: OperatingMode.Fallback,
    TokenMode.Demo: OperatingMode.Demo,
}

Listener = Callable[..., Any]


class TokenManagerError(Exception):
    """Raised when the broker cannot provide a token."""

    def __init__(self, message: str, status_code: int | None = None, retry_after: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after


class TokenManagerConfig(BaseModel):
    """Configuration for TokenManager."""

    base_url: str = Field(..., description="Broker base URL")
    token_path: str = "/token"
    refresh_path: str = "/refresh"
    compatibility_path: str = "/compatibility"
    origin: str | None = Field(default=None, description="Origin header sent with token requests")
    refresh_threshold_seconds: float = Field(default=30.0, ge=0)
    grace_period_seconds: float = Field(default=5.0, ge=0)
    max_retry_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    max_retry_delay_seconds: float = Field(default=10.0, ge=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    enable_auto_refresh: bool = True
    compatibility_check_enabled: bool = True
    compatibility_cache_seconds: float = Field(default=300.0, ge=0)
    preferred_mode: OperatingMode | None = Field(
        default=None,
        description="Force a mode instead of deriving it from the compatibility report",
    )


class TokenManager:
    """Keeps a browser-style session authenticated against the broker.

    The manager requests a token, schedules a refresh ahead of expiry,
    retries failed refreshes with exponential backoff and, when refreshes
    keep failing, starts over with a brand-new token. Only one refresh runs
    at a time; concurrent callers wait for it and share its result.

    Example:
        ```python
        async with TokenManager(TokenManagerConfig(base_url="http://localhost:8000")) as manager:
            manager.on(TokenManagerEvent.TokenExpired, lambda: print("expired"))
            token = await manager.request_token()
        ```
    """

    def __init__(
        self,
        config: TokenManagerConfig,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize TokenManager.

        Args:
            config: Manager configuration.
            client: HTTP client for broker calls. Created when omitted and
                closed by `aclose`.
            clock: Returns the current time in epoch seconds.
            sleep: Coroutine used for backoff and refresh delays.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)
        self._clock = clock
        self._sleep = sleep

        self._token: EphemeralToken | None = None
        self._state = TokenState.Uninitialized
        self._mode = config.preferred_mode or OperatingMode.Realtime
        self._retry_count = 0
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: asyncio.Task[None] | None = None
        self._compatibility: dict[str, Any] | None = None
        self._compatibility_checked_at = 0.0
        self._listeners: dict[TokenManagerEvent, list[Listener]] = {event: [] for event in TokenManagerEvent}

    async def __aenter__(self) -> "TokenManager":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _url(self, path: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{path}"

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def mode(self) -> OperatingMode:
        return self._mode

    @property
    def current_token(self) -> EphemeralToken | None:
        return self._token

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    def on(self, event: TokenManagerEvent | str, listener: Listener) -> None:
        """Subscribe a listener to an event."""
        self._listeners[TokenManagerEvent(event)].append(listener)

    def off(self, event: TokenManagerEvent | str, listener: Listener) -> None:
        """Unsubscribe a listener; unknown listeners are ignored."""
        listeners = self._listeners[TokenManagerEvent(event)]
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: TokenManagerEvent, *args: Any) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(*args)
            except Exception as e:
                logger.error("token_listener_failed", token_event=event.value, error=str(e))

    def _change_mode(self, mode: OperatingMode, source: str) -> None:
        if mode == self._mode:
            return
        previous = self._mode
        self._mode = mode
        logger.info("token_mode_changed", previous=previous.value, mode=mode.value, source=source)
        self._emit(TokenManagerEvent.ModeChanged, mode)

    def set_mode(self, mode: OperatingMode | str) -> None:
        """Override the operating mode."""
        self._change_mode(OperatingMode(mode), "manual")

    async def check_compatibility(self) -> dict[str, Any]:
        """Fetch the broker's compatibility report and pick a mode.

        The report is cached. When the check fails the manager falls back to
        demo mode and caches a synthetic `unknown` report.

        Returns:
            The compatibility report as returned by the broker.
        """
        now = self._clock()
        if (
            self._compatibility is not None
            and now - self._compatibility_checked_at < self._config.compatibility_cache_seconds
        ):
            return self._compatibility

        try:
            response = await self._client.get(self._url(self._config.compatibility_path))
            response.raise_for_status()
            report = response.json()
            if not isinstance(report, dict):
                raise ValueError("Compatibility report is not an object")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("compatibility_check_failed", error=str(e))
            report = {
                "success": False,
                "tier": "unknown",
                "features": {
                    "realtimeVoice": False,
                    "chatCompletion": False,
                    "textToSpeech": False,
                    "speechToText": False,
                    "functionCalling": False,
                },
                "error": str(e),
            }
            self._change_mode(self._config.preferred_mode or OperatingMode.Demo, "compatibility")
        else:
            features = report.get("features") or {}
            if features.get("realtimeVoice") and report.get("tier") == "realtime":
                mode = OperatingMode.Realtime
            elif features.get("chatCompletion") and features.get("textToSpeech"):
                mode = OperatingMode.Fallback
            else:
                mode = OperatingMode.Demo
            self._change_mode(self._config.preferred_mode or mode, "compatibility")
            logger.info("compatibility_checked", tier=report.get("tier"), mode=self._mode.value)

        self._compatibility = report
        self._compatibility_checked_at = now
        self._emit(TokenManagerEvent.CompatibilityChecked, report)
        return report

    async def _post_for_token(self, path: str, payload: dict[str, Any]) -> EphemeralToken:
        headers = {"Origin": self._config.origin} if self._config.origin else None
        try:
            response = await self._client.post(self._url(path), json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TokenManagerError("Token request timed out") from e
        except httpx.HTTPError as e:
            raise TokenManagerError(f"Token request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_error:
            retry_after = data.get("retryAfter")
            raise TokenManagerError(
                data.get("error") or f"HTTP {response.status_code}",
                status_code=response.status_code,
                retry_after=retry_after if isinstance(retry_after, int) else None,
            )
        if not data.get("success") or not data.get("token"):
            raise TokenManagerError(data.get("error") or "Token request failed", status_code=response.status_code)

        try:
            token = EphemeralToken.model_validate(data)
        except ValidationError as e:
            raise TokenManagerError("Malformed token response", status_code=response.status_code) from e
        if token.is_expired(self._now_ms()):
            raise TokenManagerError("Broker returned an expired token", status_code=response.status_code)
        return token

    def _set_token(self, token: EphemeralToken) -> None:
        self._token = token
        self._state = TokenState.Valid
        self._retry_count = 0
        for warning in token.warnings:
            logger.warning("token_warning", warning=warning, session_id=token.session_id)
        self._change_mode(self._config.preferred_mode or _SERVER_MODES[token.mode], "server")
        self._emit(TokenManagerEvent.TokenRefreshed, token)
        if self._config.enable_auto_refresh:
            self._schedule_refresh()

    async def request_token(self) -> EphemeralToken:
        """Request a token for a new session.

        Returns:
            The new EphemeralToken.

        Raises:
            TokenManagerError: If the broker refuses or cannot be reached.
        """
        if self._config.compatibility_check_enabled:
            await self.check_compatibility()

        had_token = self._token is not None
        self._state = TokenState.Requesting
        try:
            token = await self._post_for_token(self._config.token_path, {})
        except TokenManagerError as e:
            self._state = TokenState.Expired if had_token else TokenState.Uninitialized
            logger.error("token_request_failed", error=e.message, status_code=e.status_code)
            self._emit(TokenManagerEvent.TokenError, e)
            raise

        self._set_token(token)
        logger.info(
            "token_acquired",
            session_id=token.session_id,
            mode=token.mode.value,
            expires_at=token.expires_at,
        )
        return token

    def _backoff_delay(self, attempt: int) -> float:
        return min(
            self._config.retry_delay_seconds * 2 ** (attempt - 1),
            self._config.max_retry_delay_seconds,
        )

    async def refresh_token(self) -> EphemeralToken:
        """Refresh the current session's token.

        Failed attempts are retried with exponential backoff. When every
        attempt fails a brand-new token is requested; if that fails too the
        state becomes `expired` and `token_expired` is emitted.

        Returns:
            The refreshed (or newly requested) EphemeralToken.

        Raises:
            TokenManagerError: If there is no token to refresh or every
                attempt, including the new-token fallback, failed.
        """
        if self._refresh_lock.locked():
            # Another refresh is in flight; share its outcome
            async with self._refresh_lock:
                if self._token is not None and self._state == TokenState.Valid:
                    return self._token
                raise TokenManagerError("Token refresh failed")

        async with self._refresh_lock:
            if self._token is None:
                raise TokenManagerError("No current token to refresh")

            session_id = self._token.session_id
            self._state = TokenState.Refreshing
            self._emit(TokenManagerEvent.RefreshStarted)
            logger.info("token_refresh_started", session_id=session_id)

            for attempt in range(1, self._config.max_retry_attempts + 1):
                try:
                    token = await self._post_for_token(self._config.refresh_path, {"sessionId": session_id})
                except TokenManagerError as e:
                    self._retry_count = attempt
                    logger.warning(
                        "token_refresh_attempt_failed",
                        session_id=session_id,
                        attempt=attempt,
                        error=e.message,
                    )
                    self._emit(TokenManagerEvent.TokenError, e)
                    if attempt < self._config.max_retry_attempts:
                        await self._sleep(self._backoff_delay(attempt))
                    continue

                self._set_token(token)
                self._emit(TokenManagerEvent.RefreshCompleted)
                logger.info("token_refreshed", session_id=token.session_id, expires_at=token.expires_at)
                return token

            logger.warning("token_refresh_exhausted", session_id=session_id, attempts=self._retry_count)
            try:
                return await self.request_token()
            except TokenManagerError:
                self._state = TokenState.Expired
                self._emit(TokenManagerEvent.TokenExpired)
                raise

    def _schedule_refresh(self) -> None:
        self._cancel_refresh()
        if self._token is None:
            return
        refresh_at_ms = self._token.expires_at - int(self._config.refresh_threshold_seconds * 1000)
        delay = max(0.0, (refresh_at_ms - self._now_ms()) / 1000)
        logger.debug("token_refresh_scheduled", delay_seconds=round(delay, 3))
        self._refresh_task = asyncio.create_task(self._refresh_after(delay))

    async def _refresh_after(self, delay: float) -> None:
        await self._sleep(delay)
        # Detach so the refresh can schedule its successor without cancelling itself
        self._refresh_task = None
        try:
            await self.refresh_token()
        except TokenManagerError as e:
            logger.error("scheduled_refresh_failed", error=e.message)

    def _cancel_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def is_token_valid(self) -> bool:
        """Whether the token can still be used, with a safety margin before expiry."""
        if self._token is None or self._state in (TokenState.Expired, TokenState.Cleared):
            return False
        grace_ms = int(self._config.grace_period_seconds * 1000)
        return self._token.expires_at > self._now_ms() + grace_ms

    def get_time_until_expiration(self) -> int:
        """Milliseconds until expiry, 0 when there is no token."""
        if self._token is None:
            return 0
        return max(0, self._token.expires_at - self._now_ms())

    async def force_refresh(self) -> EphemeralToken:
        """Refresh now, regardless of the schedule."""
        logger.info("token_force_refresh")
        return await self.refresh_token()

    async def ensure_token(self) -> EphemeralToken:
        """Return a valid token, requesting or refreshing as needed."""
        if self.is_token_valid() and self._token is not None:
            return self._token
        if self._token is not None and self._state != TokenState.Cleared:
            return await self.refresh_token()
        return await self.request_token()

    def clear_token(self) -> None:
        """Forget the token and cancel any scheduled refresh."""
        self._cancel_refresh()
        self._token = None
        self._retry_count = 0
        self._state = TokenState.Cleared
        logger.info("token_cleared")

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the manager for diagnostics. Never includes the token value."""
        return {
            "state": self._state.value,
            "mode": self._mode.value,
            "has_token": self._token is not None,
            "is_valid": self.is_token_valid(),
            "expires_at": self._token.expires_at if self._token else None,
            "time_until_expiration": self.get_time_until_expiration(),
            "session_id": self._token.session_id if self._token else None,
            "is_refreshing": self.is_refreshing,
            "retry_count": self._retry_count,
        }

    def destroy(self) -> None:
        """Clear the token and drop every listener."""
        self.clear_token()
        for listeners in self._listeners.values():
            listeners.clear()

    async def aclose(self) -> None:
        """Destroy the manager and close its HTTP client if it owns it."""
        self.destroy()
        if self._owns_client:
            await self._client.aclose()
