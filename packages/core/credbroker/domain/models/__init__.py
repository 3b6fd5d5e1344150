"""Domain models for the credential broker."""

from credbroker.domain.models.broker_error import (
    BrokerError,
    CredentialUnavailableError,
    ErrorCategory,
)
from credbroker.domain.models.compatibility import (
    CompatibilityReport,
    CompatibilityTier,
    FeatureSupport,
    UpgradeInfo,
)
from credbroker.domain.models.health_state import (
    HealthReport,
    HealthStatus,
    ServiceHealth,
    ServiceStatus,
)
from credbroker.domain.models.proxy import ProxyRequest, ProxyResponse, ProxyToken
from credbroker.domain.models.rate_limit import (
    RateLimitDecision,
    RateLimiterStats,
    RateLimitEntry,
)
from credbroker.domain.models.session import SessionRecord, SessionStats
from credbroker.domain.models.token import EphemeralToken, TokenMode
from credbroker.domain.models.vaulted_key import (
    DeactivationReason,
    KeyEnvironment,
    KeyMetadata,
    OperationCount,
    UsageEvent,
    UsageReport,
    VaultedKey,
)

__all__ = [
    "BrokerError",
    "CredentialUnavailableError",
    "ErrorCategory",
    "CompatibilityReport",
    "CompatibilityTier",
    "FeatureSupport",
    "UpgradeInfo",
    "HealthReport",
    "HealthStatus",
    "ServiceHealth",
    "ServiceStatus",
    "ProxyRequest",
    "ProxyResponse",
    "ProxyToken",
    "RateLimitDecision",
    "RateLimiterStats",
    "RateLimitEntry",
    "SessionRecord",
    "SessionStats",
    "EphemeralToken",
    "TokenMode",
    "DeactivationReason",
    "KeyEnvironment",
    "KeyMetadata",
    "OperationCount",
    "UsageEvent",
    "UsageReport",
    "VaultedKey",
]
