"""Configuration settings using pydantic-settings."""

from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from credbroker.domain.models.vaulted_key import KeyEnvironment

MIN_ENCRYPTION_KEY_LENGTH = 32


class BrokerSettings(BaseSettings):
    """Configuration settings for the credential broker.

    Settings can be loaded from environment variables or passed as keyword arguments.
    Environment variables are prefixed with 'CREDBROKER_' (e.g., CREDBROKER_RATE_LIMIT=20).
    The provider secret is also read from a plain OPENAI_API_KEY variable.

    Example:
        ```python
        # From environment variables
        settings = BrokerSettings()

        # From keyword arguments
        settings = BrokerSettings(enable_demo_mode=True, token_duration=600)
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="CREDBROKER_",
        case_sensitive=False,
        extra="ignore",
    )

    environment: KeyEnvironment = Field(
        default=KeyEnvironment.Development,
        description="Deployment profile (development, staging, production)",
    )

    # Provider configuration
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CREDBROKER_OPENAI_API_KEY", "OPENAI_API_KEY", "openai_api_key"),
        repr=False,
        description="Long-lived provider secret; vaulted at startup and never logged",
    )
    provider_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Provider REST base URL",
    )
    realtime_model: str = Field(
        default="gpt-4o-realtime-preview",
        description="Model requested when minting realtime sessions",
    )
    realtime_voice: str = Field(default="alloy", description="Voice requested for realtime sessions")
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for outbound provider calls",
    )
    health_check_timeout_seconds: float = Field(default=5.0, gt=0)
    health_check_ttl_seconds: float = Field(default=30.0, ge=0)

    # Vault configuration
    encryption_key: str | None = Field(
        default=None,
        repr=False,
        description=f"Vault encryption key (at least {MIN_ENCRYPTION_KEY_LENGTH} characters)",
    )
    encryption_salt: str = Field(
        default="credbroker-vault-salt",
        description="Salt used to derive the AES key from the encryption key",
    )

    # Request policy
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:4321,http://localhost:8000",
        description="Comma-separated CORS allow-list",
    )
    require_origin: bool = Field(
        default=False,
        description="Reject token requests that carry no Origin header",
    )
    trusted_proxies: str = Field(
        default="",
        description="Comma-separated peer addresses whose X-Forwarded-For and X-Real-IP headers are honoured",
    )
    rate_limit: int = Field(
        default=10,
        ge=1,
        description="Token requests per minute per client identity",
    )
    token_duration: int = Field(
        default=1800,
        ge=60,
        le=3600,
        description="Ephemeral token lifetime in seconds",
    )
    enable_demo_mode: bool = Field(
        default=False,
        description="Issue demo tokens and bypass all provider calls",
    )

    # Observability configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool | None = Field(
        default=None,
        description="Render logs as JSON; defaults to True outside development",
    )

    shutdown_timeout_seconds: int = Field(default=30, ge=1)

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, value: str | None) -> str | None:
        """Enforce the minimum encryption key length."""
        if value is not None and len(value) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ValueError(
                f"encryption_key must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Normalize and check the log level name."""
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return level

    @property
    def is_development(self) -> bool:
        """True for the development profile."""
        return self.environment == KeyEnvironment.Development

    @property
    def is_production(self) -> bool:
        """True for the production profile."""
        return self.environment == KeyEnvironment.Production

    @property
    def allowed_origin_list(self) -> list[str]:
        """Parsed CORS allow-list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def trusted_proxy_list(self) -> list[str]:
        """Parsed trusted reverse proxy addresses."""
        return [address.strip() for address in self.trusted_proxies.split(",") if address.strip()]

    @property
    def use_json_logs(self) -> bool:
        """Whether logs should be rendered as JSON."""
        if self.log_json is not None:
            return self.log_json
        return not self.is_development

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "BrokerSettings":
        """Create settings from a dictionary.

        Args:
            config: Dictionary with configuration values.

        Returns:
            BrokerSettings instance.
        """
        return cls(**config)
