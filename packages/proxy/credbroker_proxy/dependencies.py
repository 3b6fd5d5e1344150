"""Dependency injection setup for the broker service.

The lifespan builds one CredentialBroker per application and stores it on
`app.state`; handlers reach it through these dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from credbroker.broker import CredentialBroker
from credbroker.infrastructure.config.settings import BrokerSettings


def get_broker(request: Request) -> CredentialBroker:
    """The application's broker."""
    broker: CredentialBroker | None = getattr(request.app.state, "broker", None)
    if broker is None:
        raise RuntimeError("Broker not initialized; is the application lifespan running?")
    return broker


def get_settings(broker: Annotated[CredentialBroker, Depends(get_broker)]) -> BrokerSettings:
    """The broker's settings."""
    return broker.settings


BrokerDep = Annotated[CredentialBroker, Depends(get_broker)]
SettingsDep = Annotated[BrokerSettings, Depends(get_settings)]
