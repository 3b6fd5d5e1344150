"""Configuration for the credential broker."""

from credbroker.infrastructure.config.settings import BrokerSettings

__all__ = ["BrokerSettings"]
