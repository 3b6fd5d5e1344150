"""Client-side helpers for talking to the broker."""

from credbroker.client.secure_client import SecureProxyClient
from credbroker.client.token_manager import (
    OperatingMode,
    TokenManager,
    TokenManagerConfig,
    TokenManagerError,
    TokenManagerEvent,
    TokenState,
)

__all__ = [
    "OperatingMode",
    "SecureProxyClient",
    "TokenManager",
    "TokenManagerConfig",
    "TokenManagerError",
    "TokenManagerEvent",
    "TokenState",
]
