"""Domain components."""

from credbroker.domain.components.capability_detector import CapabilityDetector
from credbroker.domain.components.key_vault import KeyNotFoundError, KeyVault, KeyVaultConfig
from credbroker.domain.components.rate_limiter import (
    RateLimiter,
    RateLimiterConfig,
    create_proxy_rate_limiter,
    create_refresh_rate_limiter,
    create_token_rate_limiter,
)
from credbroker.domain.components.secure_proxy import (
    ProxyRejection,
    ProxyRequestError,
    SecureProxy,
    SecureProxyConfig,
)
from credbroker.domain.components.session_tracker import SessionTracker, SessionValidationError
from credbroker.domain.components.token_issuer import TokenIssuer, TokenIssuerConfig

__all__ = [
    "CapabilityDetector",
    "KeyNotFoundError",
    "KeyVault",
    "KeyVaultConfig",
    "RateLimiter",
    "RateLimiterConfig",
    "create_proxy_rate_limiter",
    "create_refresh_rate_limiter",
    "create_token_rate_limiter",
    "ProxyRejection",
    "ProxyRequestError",
    "SecureProxy",
    "SecureProxyConfig",
    "SessionTracker",
    "SessionValidationError",
    "TokenIssuer",
    "TokenIssuerConfig",
]
