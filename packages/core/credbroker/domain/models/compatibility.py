"""Provider capability models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CompatibilityTier(str, Enum):
    """Provider access tier as observed by probing."""

    Realtime = "realtime"
    """Realtime sessions can be created."""

    Standard = "standard"
    """Standard REST endpoints work, realtime does not."""

    Unknown = "unknown"
    """A key is configured but no probe succeeded."""

    NoAccess = "none"
    """No key is configured."""


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeatureSupport(_CamelModel):
    """Feature flags derived from probe results."""

    realtime_voice: bool = False
    chat_completion: bool = False
    text_to_speech: bool = False
    speech_to_text: bool = False
    function_calling: bool = False


class UpgradeInfo(_CamelModel):
    """What an account upgrade would unlock."""

    required: bool
    tier_name: str
    benefits: list[str] = Field(default_factory=list)
    upgrade_url: str


class CompatibilityReport(_CamelModel):
    """Result of `GET /compatibility`."""

    success: bool = True
    tier: CompatibilityTier
    features: FeatureSupport = Field(default_factory=FeatureSupport)
    limitations: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    upgrade_info: UpgradeInfo | None = None
    error: str | None = None
