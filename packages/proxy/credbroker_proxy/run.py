"""Startup script for the broker service with graceful shutdown configuration."""

import os

import uvicorn
from dotenv import load_dotenv


def main() -> None:
    """Start the broker service."""
    load_dotenv()
    host = os.getenv("CREDBROKER_HOST", "0.0.0.0")
    port = int(os.getenv("CREDBROKER_PORT", "8000"))
    reload = os.getenv("CREDBROKER_RELOAD", "false").lower() == "true"
    shutdown_timeout = int(os.getenv("CREDBROKER_SHUTDOWN_TIMEOUT_SECONDS", "30"))

    config = uvicorn.Config(
        "credbroker_proxy.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        timeout_graceful_shutdown=shutdown_timeout,
        log_level=os.getenv("CREDBROKER_LOG_LEVEL", "info").lower(),
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    main()
