"""Structlog-backed event sink and logging setup."""

import logging
from datetime import datetime, timezone
from typing import Any

import structlog

from credbroker.domain.interfaces.event_sink import EventSink, EventSinkError

REDACTED = "[REDACTED]"

SENSITIVE_FIELDS = frozenset(
    {
        "key_material",
        "api_key",
        "openai_api_key",
        "secret",
        "plaintext",
        "token",
        "signature",
        "authorization",
        "encryption_key",
    }
)


def sanitize_for_logging(data: Any) -> Any:
    """Sanitize data to remove sensitive information before logging.

    Replaces credential-bearing fields in dictionaries and nested structures,
    and any string that looks like a provider secret.

    Args:
        data: Data structure to sanitize (dict, list, or primitive).

    Returns:
        Sanitized data structure with sensitive values redacted.
    """
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_FIELDS:
                sanitized[key] = REDACTED
            else:
                sanitized[key] = sanitize_for_logging(value)
        return sanitized
    elif isinstance(data, list | tuple):
        return [sanitize_for_logging(item) for item in data]
    elif isinstance(data, str):
        # Provider secrets are long and carry a well-known prefix
        if data.startswith(("sk-", "sess-", "ek_")) and len(data) > 20:
            return REDACTED
    return data


def configure_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """Configure structlog and the standard logging module it wraps.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: If True, render JSON; otherwise use the console renderer.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(message)s"
        if json_format
        else "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class StructlogEventSink(EventSink):
    """EventSink that writes events as structured log lines.

    Event severity maps onto the log level so that critical security alerts
    surface as errors in log aggregation.
    """

    _SEVERITY_LEVELS = {
        "low": "info",
        "medium": "warning",
        "high": "warning",
        "critical": "error",
    }

    def __init__(self, logger_name: str = "credbroker.audit") -> None:
        """Initialize StructlogEventSink.

        Args:
            logger_name: Name of the structlog logger events are written to.
        """
        self._logger = structlog.get_logger(logger_name)

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Emit an event as a structured log line.

        Args:
            event_type: Type of event (e.g., "rate_limit_exceeded").
            payload: Event payload data.
            metadata: Optional metadata (severity, client_ip, timestamp, etc.).

        Raises:
            EventSinkError: If event emission fails.
        """
        try:
            event_data = dict(sanitize_for_logging(payload))
            level = "info"
            if metadata:
                sanitized_metadata = sanitize_for_logging(metadata)
                if "timestamp" not in sanitized_metadata:
                    sanitized_metadata["timestamp"] = datetime.now(timezone.utc).isoformat()
                level = self._SEVERITY_LEVELS.get(str(sanitized_metadata.get("severity")), "info")
                event_data["metadata"] = sanitized_metadata

            log_method = getattr(self._logger, level)
            log_method("event_emitted", event_type=event_type, **event_data)
        except Exception as e:
            raise EventSinkError(f"Failed to emit event: {e}") from e

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
        try:
            sanitized_context = sanitize_for_logging(context) if context else None
            sanitized_message = sanitize_for_logging(message)

            log_method = getattr(self._logger, level.lower(), self._logger.info)
            if sanitized_context:
                log_method(sanitized_message, **sanitized_context)
            else:
                log_method(sanitized_message)
        except Exception as e:
            raise EventSinkError(f"Failed to log message: {e}") from e
