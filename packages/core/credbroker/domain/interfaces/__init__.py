"""Domain interfaces for the credential broker."""

from credbroker.domain.interfaces.event_sink import (
    EventSink,
    EventSinkError,
    Severity,
    emit_safely,
)

__all__ = ["EventSink", "EventSinkError", "Severity", "emit_safely"]
