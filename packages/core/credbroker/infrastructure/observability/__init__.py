"""Observability for the credential broker."""

from credbroker.infrastructure.observability.logger import (
    StructlogEventSink,
    configure_logging,
    sanitize_for_logging,
)

__all__ = ["StructlogEventSink", "configure_logging", "sanitize_for_logging"]
