"""HTTP routes."""

from credbroker_proxy.api import compatibility, dev, health, proxy, refresh, token

__all__ = ["compatibility", "dev", "health", "proxy", "refresh", "token"]
