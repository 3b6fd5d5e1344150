"""FastAPI application entry point for the credential broker."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI

from credbroker import __version__
from credbroker.broker import CredentialBroker
from credbroker.domain.interfaces.event_sink import EventSink
from credbroker.infrastructure.config.settings import BrokerSettings
from credbroker.infrastructure.observability.logger import configure_logging
from credbroker_proxy.api import compatibility, dev, health, proxy, refresh, token
from credbroker_proxy.middleware.cors import CORSMiddleware
from credbroker_proxy.middleware.security import SecurityHeadersMiddleware

logger = structlog.get_logger(__name__)


async def cleanup_resources(broker: CredentialBroker) -> None:
    """Stop background sweeps and close provider connections."""
    logger.info("shutdown_started", message="Beginning graceful shutdown")
    await broker.aclose()
    logger.info("shutdown_completed", message="Graceful shutdown completed successfully")


def create_app(
    settings: BrokerSettings | None = None,
    event_sink: EventSink | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the application.

    The broker itself is constructed in the lifespan so that background
    tasks start on the serving event loop.

    Args:
        settings: Broker settings. Loaded from the environment when omitted.
        event_sink: Audit sink passed to the broker.
        http_client: Provider HTTP client passed to the broker.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or BrokerSettings()
    configure_logging(settings.log_level, settings.use_json_logs)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "application_startup",
            environment=settings.environment.value,
            demo_mode=settings.enable_demo_mode,
        )
        broker = CredentialBroker(settings, event_sink=event_sink, http_client=http_client)
        await broker.start()
        app.state.broker = broker

        yield

        logger.info("shutdown_signal_received", message="Shutdown signal received, starting graceful shutdown")
        timeout = settings.shutdown_timeout_seconds
        try:
            await asyncio.wait_for(cleanup_resources(broker), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "shutdown_timeout_exceeded",
                timeout_seconds=timeout,
                message=f"Shutdown timeout ({timeout}s) exceeded, forcing exit",
            )
        finally:
            app.state.broker = None

    app = FastAPI(
        title="credbroker",
        version=__version__,
        description="Credential broker and signed request proxy for generative-AI providers",
        lifespan=lifespan,
    )

    # Last added runs first: security headers wrap CORS
    app.add_middleware(CORSMiddleware, allowed_origins=settings.allowed_origin_list)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.is_production)

    app.include_router(token.router)
    app.include_router(refresh.router)
    app.include_router(proxy.router)
    app.include_router(compatibility.router)
    app.include_router(health.router)
    app.include_router(dev.router)
    return app
