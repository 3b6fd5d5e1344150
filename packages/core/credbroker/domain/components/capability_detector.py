"""CapabilityDetector component: probes which provider features are reachable."""

import time
from collections.abc import Callable

import structlog

from credbroker.domain.components.key_vault import KeyVault
from credbroker.domain.models.compatibility import (
    CompatibilityReport,
    CompatibilityTier,
    FeatureSupport,
    UpgradeInfo,
)
from credbroker.infrastructure.adapters.openai_adapter import OpenAIAdapter

logger = structlog.get_logger(__name__)


def _no_key_report() -> CompatibilityReport:
    return CompatibilityReport(
        tier=CompatibilityTier.NoAccess,
        features=FeatureSupport(),
        limitations=[
            "No provider API key configured",
            "All AI features disabled",
            "Only demo mode available",
        ],
        recommendations=[
            "Configure OPENAI_API_KEY",
            "Sign up for provider API access",
        ],
        upgrade_info=UpgradeInfo(
            required=True,
            tier_name="OpenAI API Access",
            benefits=[
                "AI-powered conversations",
                "Text-to-speech synthesis",
                "Speech-to-text transcription",
                "Function calling capabilities",
            ],
            upgrade_url="https://platform.openai.com/signup",
        ),
    )


def build_report(realtime: bool, standard: bool, tts: bool) -> CompatibilityReport:
    """Translate probe results into a tier report.

    Args:
        realtime: Realtime sessions can be created.
        standard: The models listing is reachable.
        tts: Speech synthesis is reachable.

    Returns:
        CompatibilityReport for the observed access.
    """
    if realtime:
        return CompatibilityReport(
            tier=CompatibilityTier.Realtime,
            features=FeatureSupport(
                realtime_voice=True,
                chat_completion=True,
                text_to_speech=True,
                speech_to_text=True,
                function_calling=True,
            ),
            recommendations=[
                "Full access to all voice features",
                "Use realtime mode for the lowest latency",
            ],
        )

    if standard and tts:
        return CompatibilityReport(
            tier=CompatibilityTier.Standard,
            features=FeatureSupport(
                chat_completion=True,
                text_to_speech=True,
                speech_to_text=True,
                function_calling=True,
            ),
            limitations=[
                "Realtime API not available on current tier",
                "Higher latency with chat completion plus text-to-speech",
            ],
            recommendations=[
                "Proxy mode will be used automatically",
                "Consider upgrading for realtime voice",
            ],
            upgrade_info=UpgradeInfo(
                required=False,
                tier_name="Realtime API Access",
                benefits=["Low latency voice conversations", "Realtime audio streaming"],
                upgrade_url="https://platform.openai.com/docs/guides/realtime",
            ),
        )

    if standard:
        return CompatibilityReport(
            tier=CompatibilityTier.Standard,
            features=FeatureSupport(
                chat_completion=True,
                speech_to_text=True,
                function_calling=True,
            ),
            limitations=[
                "Realtime API not available",
                "Text-to-speech API not available",
                "Text-only conversations supported",
            ],
            recommendations=["Text chat is available", "Upgrade to access voice output"],
            upgrade_info=UpgradeInfo(
                required=True,
                tier_name="Full API Access",
                benefits=["Text-to-speech synthesis", "Complete voice functionality"],
                upgrade_url="https://platform.openai.com/account/billing",
            ),
        )

    return CompatibilityReport(
        tier=CompatibilityTier.Unknown,
        features=FeatureSupport(),
        limitations=[
            "Unable to access the provider API",
            "API key may be invalid or expired",
            "All features disabled",
        ],
        recommendations=[
            "Verify the API key is valid and active",
            "Check account billing status",
            "Ensure network connectivity",
        ],
        upgrade_info=UpgradeInfo(
            required=True,
            tier_name="API Access",
            benefits=["Basic chat functionality", "Foundation for voice features"],
            upgrade_url="https://platform.openai.com/account/api-keys",
        ),
    )


class CapabilityDetector:
    """Probes the provider with the vaulted key and reports the access tier.

    Results are cached so repeated compatibility checks do not multiply
    provider traffic.
    """

    CACHE_TTL_SECONDS = 300.0

    def __init__(
        self,
        adapter: OpenAIAdapter,
        key_vault: KeyVault,
        realtime_model: str,
        realtime_voice: str = "alloy",
        demo_mode: bool = False,
        cache_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize CapabilityDetector.

        Args:
            adapter: Provider HTTP adapter.
            key_vault: Vault holding the provider secret.
            realtime_model: Model used for the realtime probe.
            realtime_voice: Voice used for the realtime probe.
            demo_mode: When True no probes are sent.
            cache_ttl_seconds: Report cache TTL.
            clock: Returns the current time in epoch seconds.
        """
        self._adapter = adapter
        self._vault = key_vault
        self._realtime_model = realtime_model
        self._realtime_voice = realtime_voice
        self._demo_mode = demo_mode
        self._cache_ttl = self.CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
        self._clock = clock
        self._cached: tuple[CompatibilityReport, float] | None = None

    async def check_compatibility(self, client_ip: str = "system") -> CompatibilityReport:
        """Probe realtime, models and TTS access in parallel.

        Args:
            client_ip: Client the check is performed for, recorded in key usage.

        Returns:
            CompatibilityReport; tier `none` when no key is configured or demo mode is on.
        """
        now = self._clock()
        if self._cached is not None and now - self._cached[1] < self._cache_ttl:
            return self._cached[0]

        if self._demo_mode or not self._vault.has_keys():
            report = _no_key_report()
            if self._demo_mode:
                report.limitations.insert(0, "Demo mode enabled")
            self._cached = (report, now)
            return report

        key_id = self._vault.get_active_key_id()
        api_key = await self._vault.get_key(key_id, client_ip, "compatibility_check") if key_id else None
        if api_key is None:
            report = build_report(False, False, False)
            report.error = "Provider credential unavailable"
            # Not cached: the credential may come back after a block lifts
            return report

        realtime, standard, tts = await self._adapter.probe_all(api_key, self._realtime_model, self._realtime_voice)
        report = build_report(realtime, standard, tts)
        logger.info(
            "compatibility_checked",
            tier=report.tier.value,
            realtime=realtime,
            standard=standard,
            tts=tts,
        )
        self._cached = (report, now)
        return report

    def invalidate(self) -> None:
        """Forget the cached report."""
        self._cached = None
