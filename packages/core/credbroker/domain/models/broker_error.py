"""BrokerError model for standardized error handling."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Categories of broker errors."""

    PolicyRejection = "policy_rejection"
    """Request refused by policy (origin, signature, allow-list, rate limit)."""

    CredentialError = "credential_error"
    """Vaulted key missing, expired or temporarily blocked."""

    UpstreamError = "upstream_error"
    """Provider answered with a non-2xx status."""

    TimeoutError = "timeout_error"
    """Provider call exceeded its timeout."""

    NetworkError = "network_error"
    """Provider could not be reached."""

    ValidationError = "validation_error"
    """Request body failed validation (400)."""

    InternalError = "internal_error"
    """Unexpected failure inside the broker."""


class BrokerError(Exception):
    """Standardized error raised by broker components.

    BrokerError carries a machine-readable category so that the HTTP layer
    can choose a status code and a sanitized message without inspecting the
    underlying cause.

    Example:
        ```python
        raise BrokerError(
            category=ErrorCategory.UpstreamError,
            message="Provider request failed",
            provider_code="http_error_502",
            retryable=True,
        )
        ```
    """

    def __init__(
        self,
        category: ErrorCategory | str,
        message: str,
        provider_code: str | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
        retry_after: int | None = None,
    ) -> None:
        """Initialize BrokerError.

        Args:
            category: Error category (ErrorCategory enum or string).
            message: Human-readable error message. Safe to show to callers.
            provider_code: Upstream status or error code, for logs only.
            retryable: Whether the caller may retry.
            details: Additional details, for logs only.
            retry_after: Retry after this many seconds, when known.
        """
        self.category = ErrorCategory(category) if isinstance(category, str) else category
        self.message = message
        self.provider_code = provider_code
        self.retryable = retryable
        self.details = details or {}
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the public error shape.

        Provider codes and details are left out so that upstream bodies never
        reach the caller.

        Returns:
            Dictionary with `success`, `error`, `category` and optional `retryAfter`.
        """
        result: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "category": self.category.value,
        }
        if self.retry_after is not None:
            result["retryAfter"] = self.retry_after
        return result

    def __repr__(self) -> str:
        return (
            f"BrokerError(category={self.category.value!r}, message={self.message!r}, "
            f"provider_code={self.provider_code!r}, retryable={self.retryable})"
        )


class CredentialUnavailableError(BrokerError):
    """Raised when no usable vaulted key exists for an operation."""

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(
            category=ErrorCategory.CredentialError,
            message=message,
            retryable=True,
        )
