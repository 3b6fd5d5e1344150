"""EventSink interface for audit events, alerts and logging."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Severity attached to audit events and alerts."""

    Low = "low"
    Medium = "medium"
    High = "high"
    Critical = "critical"


class EventSink(ABC):
    """Abstract interface for broker notifications.

    Components receive an EventSink by injection and report every policy
    decision, alert and lifecycle change through it, so that tests can
    assert on emitted events instead of captured log text.
    """

    @abstractmethod
    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Emit an event.

        Args:
            event_type: Type of event (e.g., "rate_limit_exceeded", "key_deactivated").
            payload: Event payload data. Must never contain key material.
            metadata: Optional metadata (severity, client_ip, timestamp, etc.).

        Raises:
            EventSinkError: If event emission fails.
        """
        pass

    @abstractmethod
    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Log a message with structured context.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            message: Log message.
            context: Optional structured context data.

        Raises:
            EventSinkError: If logging fails.
        """
        pass


class EventSinkError(Exception):
    """Raised when event emission or logging fails."""

    pass


async def emit_safely(
    sink: EventSink,
    event_type: str,
    payload: dict[str, Any],
    severity: Severity = Severity.Low,
    **metadata: Any,
) -> None:
    """Emit an event without letting sink failures escape.

    A failing sink must not turn a policy decision into an outage, so the
    failure is logged through the same sink at WARNING level instead.

    Args:
        sink: EventSink to emit through.
        event_type: Type of event.
        payload: Event payload data.
        severity: Severity stored in the event metadata.
        **metadata: Additional metadata fields.
    """
    try:
        await sink.emit_event(
            event_type=event_type,
            payload=payload,
            metadata={"severity": severity.value, **metadata},
        )
    except Exception as e:
        await sink.log(
            level="WARNING",
            message=f"Failed to emit {event_type} event: {e}",
            context={"event_type": event_type},
        )
