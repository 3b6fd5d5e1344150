"""KeyVault component for encrypted provider secret storage and usage monitoring."""

import secrets
import time
from collections import Counter
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field

from credbroker.domain.interfaces.event_sink import EventSink, Severity, emit_safely
from credbroker.domain.models.vaulted_key import (
    DeactivationReason,
    KeyEnvironment,
    KeyMetadata,
    OperationCount,
    UsageEvent,
    UsageReport,
    VaultedKey,
)
from credbroker.infrastructure.utils.encryption import (
    EncryptedSecret,
    EncryptionError,
    EncryptionService,
)
from credbroker.infrastructure.utils.signing import (
    derive_key,
    hmac_sha256_hex,
    verify_hmac_sha256_hex,
)

logger = structlog.get_logger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class KeyNotFoundError(Exception):
    """Raised when a key is not found."""

    pass


class AlertThresholds(BaseModel):
    """Thresholds evaluated over the trailing anomaly window."""

    unusual_usage: int = Field(..., ge=1, description="Requests per window that raise a medium alert")
    suspicious_activity: int = Field(..., ge=1, description="Failures per window that block the key")
    error_rate: float = Field(..., gt=0, le=1, description="Failure fraction that raises a high alert")


class KeyVaultConfig(BaseModel):
    """Configuration for KeyVault."""

    environment: KeyEnvironment = KeyEnvironment.Development
    rotation_interval_hours: int = Field(default=168, ge=1)
    max_key_age_ms: int = Field(default=30 * DAY_MS, gt=0)
    enable_auto_rotation: bool = False
    enable_usage_monitoring: bool = True
    alert_thresholds: AlertThresholds = Field(
        default_factory=lambda: AlertThresholds(unusual_usage=100, suspicious_activity=10, error_rate=0.5)
    )
    anomaly_window_ms: int = Field(default=60_000, gt=0)
    block_duration_ms: int = Field(default=300_000, gt=0)
    rotation_grace_ms: int = Field(default=30_000, ge=0)
    usage_retention_ms: int = Field(default=DAY_MS, gt=0)
    inactive_purge_ms: int = Field(default=7 * DAY_MS, gt=0)

    @classmethod
    def for_environment(cls, environment: KeyEnvironment) -> "KeyVaultConfig":
        """Profile defaults for an environment.

        Production rotates every 72 hours, expires keys after 7 days and uses
        strict thresholds; other profiles rotate weekly and keep keys 30 days.

        Args:
            environment: Deployment environment.

        Returns:
            KeyVaultConfig for the environment.
        """
        if environment == KeyEnvironment.Production:
            return cls(
                environment=environment,
                rotation_interval_hours=72,
                max_key_age_ms=7 * DAY_MS,
                enable_auto_rotation=True,
                alert_thresholds=AlertThresholds(unusual_usage=50, suspicious_activity=5, error_rate=0.3),
            )
        return cls(environment=environment)


class KeyVault:
    """Stores provider secrets encrypted and hands them out to trusted callers.

    Plaintext is decrypted only inside `get_key` and returned to the caller
    that needs it for one outbound request. Every access is recorded as a
    signed UsageEvent and checked for anomalies; repeated failures for one
    key and client temporarily block the key.

    Lookup failures return None instead of raising so that callers can make a
    single decision about what to tell their own clients.
    """

    def __init__(
        self,
        encryption_service: EncryptionService,
        event_sink: EventSink,
        config: KeyVaultConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize KeyVault with dependencies.

        Args:
            encryption_service: Service used to seal and open secrets.
            event_sink: Sink receiving audit events and alerts.
            config: Vault configuration. Defaults to the development profile.
            clock: Returns the current time in epoch seconds.
        """
        self._encryption = encryption_service
        self._events = event_sink
        self._config = config or KeyVaultConfig()
        self._clock = clock
        self._audit_key = derive_key(encryption_service.key_bytes, b"credbroker/usage-audit/v1")
        self._keys: dict[str, VaultedKey] = {}
        self._usage_events: list[UsageEvent] = []

    @property
    def config(self) -> KeyVaultConfig:
        """Vault configuration."""
        return self._config

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _generate_key_id() -> str:
        return f"key_{secrets.token_hex(16)}"

    def generate_request_signature(
        self,
        key_id: str,
        timestamp: int,
        client_ip: str,
        operation: str,
    ) -> str:
        """Sign `key_id:timestamp:client_ip:operation` with the vault audit key.

        Args:
            key_id: Key identifier.
            timestamp: Epoch milliseconds.
            client_ip: Client IP address.
            operation: Operation name.

        Returns:
            Hex HMAC-SHA256 signature.
        """
        return hmac_sha256_hex(self._audit_key, f"{key_id}:{timestamp}:{client_ip}:{operation}")

    def verify_request_signature(
        self,
        signature: str,
        key_id: str,
        timestamp: int,
        client_ip: str,
        operation: str,
    ) -> bool:
        """Check a signature produced by generate_request_signature in constant time."""
        return verify_hmac_sha256_hex(
            self._audit_key,
            f"{key_id}:{timestamp}:{client_ip}:{operation}",
            signature,
        )

    async def store_key(
        self,
        plaintext: str,
        environment: KeyEnvironment | None = None,
    ) -> str:
        """Encrypt and store a provider secret.

        Args:
            plaintext: Provider secret.
            environment: Environment the key belongs to. Defaults to the vault's.

        Returns:
            The new key_id.

        Raises:
            EncryptionError: If the secret is empty or encryption fails.
        """
        if not plaintext or not plaintext.strip():
            raise EncryptionError("Cannot store an empty secret")

        sealed = self._encryption.encrypt(plaintext.strip())
        now = self._now_ms()
        key_id = self._generate_key_id()
        rotation_scheduled = None
        if self._config.enable_auto_rotation:
            rotation_scheduled = now + self._config.rotation_interval_hours * HOUR_MS

        self._keys[key_id] = VaultedKey(
            key_id=key_id,
            ciphertext=sealed.ciphertext,
            iv=sealed.iv,
            tag=sealed.tag,
            environment=environment or self._config.environment,
            created_at=now,
            rotation_scheduled=rotation_scheduled,
        )

        logger.info("key_stored", key_id=key_id, environment=(environment or self._config.environment).value)
        await emit_safely(
            self._events,
            "key_stored",
            {"key_id": key_id, "rotation_scheduled": rotation_scheduled},
            severity=Severity.Low,
        )
        return key_id

    async def get_key(
        self,
        key_id: str,
        client_ip: str,
        operation: str,
        request_signature: str | None = None,
        signed_at: int | None = None,
    ) -> str | None:
        """Decrypt and return a provider secret for one operation.

        Args:
            key_id: Key identifier.
            client_ip: IP of the client the operation is performed for.
            operation: Operation name recorded in the usage log.
            request_signature: Optional signature from generate_request_signature.
            signed_at: Timestamp the signature was produced for.

        Returns:
            The plaintext secret, or None when the key is missing, inactive,
            expired, the signature does not verify, or decryption fails.
        """
        now = self._now_ms()
        key = self._keys.get(key_id)
        if key is None:
            await self._record(key_id, client_ip, operation, False, "KEY_NOT_FOUND", now)
            return None

        await self._apply_scheduled_transitions(key, now)
        if not key.is_active:
            await self._record(key_id, client_ip, operation, False, "KEY_INACTIVE", now, check=False)
            return None

        if request_signature is not None and (
            signed_at is None
            or not self.verify_request_signature(request_signature, key_id, signed_at, client_ip, operation)
        ):
            await emit_safely(
                self._events,
                "invalid_request_signature",
                {"key_id": key_id, "operation": operation},
                severity=Severity.High,
                client_ip=client_ip,
            )
            await self._record(key_id, client_ip, operation, False, "INVALID_SIGNATURE", now)
            return None

        if now - key.created_at > self._config.max_key_age_ms:
            await self.deactivate_key(key_id, DeactivationReason.Expired)
            await self._record(key_id, client_ip, operation, False, "KEY_EXPIRED", now, check=False)
            return None

        try:
            plaintext = self._encryption.decrypt(
                EncryptedSecret(ciphertext=key.ciphertext, iv=key.iv, tag=key.tag)
            )
        except EncryptionError as e:
            logger.error("key_decryption_failed", key_id=key_id, error=str(e))
            await emit_safely(
                self._events,
                "key_decryption_failed",
                {"key_id": key_id, "operation": operation},
                severity=Severity.Critical,
                client_ip=client_ip,
            )
            await self._record(key_id, client_ip, operation, False, "DECRYPTION_ERROR", now)
            return None

        key.last_used = now
        key.usage_count += 1
        await self._record(key_id, client_ip, operation, True, None, now)
        return plaintext

    async def record_outcome(
        self,
        key_id: str,
        client_ip: str,
        operation: str,
        success: bool,
        error_code: str | None = None,
    ) -> None:
        """Record the outcome of an operation performed with a key.

        Used by callers to report upstream failures so they count toward
        the key's anomaly checks.

        Args:
            key_id: Key identifier.
            client_ip: Client IP address.
            operation: Operation name.
            success: Whether the operation succeeded.
            error_code: Error code for failures.
        """
        await self._record(key_id, client_ip, operation, success, error_code, self._now_ms())

    async def _record(
        self,
        key_id: str,
        client_ip: str,
        operation: str,
        success: bool,
        error_code: str | None,
        now: int,
        check: bool = True,
    ) -> None:
        event = UsageEvent(
            timestamp=now,
            key_id=key_id,
            client_ip=client_ip,
            operation=operation,
            success=success,
            error_code=error_code,
            signature=self.generate_request_signature(key_id, now, client_ip, operation),
        )
        self._usage_events.append(event)

        if self._config.enable_usage_monitoring:
            logger.debug(
                "key_usage",
                key_id=key_id,
                operation=operation,
                success=success,
                error_code=error_code,
                client_ip=client_ip,
            )

        if check and key_id in self._keys:
            await self._check_usage_patterns(key_id, client_ip, now)

    async def _check_usage_patterns(self, key_id: str, client_ip: str, now: int) -> None:
        """Evaluate the trailing window for one key and client."""
        cutoff = now - self._config.anomaly_window_ms
        recent = [
            event
            for event in list(self._usage_events)
            if event.key_id == key_id and event.client_ip == client_ip and event.timestamp > cutoff
        ]
        if not recent:
            return

        thresholds = self._config.alert_thresholds
        request_count = len(recent)
        failed_attempts = sum(1 for event in recent if not event.success)
        error_rate = failed_attempts / request_count

        if request_count > thresholds.unusual_usage:
            await emit_safely(
                self._events,
                "unusual_usage_pattern",
                {"key_id": key_id, "request_count": request_count, "time_window": "1m"},
                severity=Severity.Medium,
                client_ip=client_ip,
            )

        if error_rate > thresholds.error_rate:
            await emit_safely(
                self._events,
                "high_error_rate",
                {"key_id": key_id, "error_rate": round(error_rate, 3), "request_count": request_count},
                severity=Severity.High,
                client_ip=client_ip,
            )

        key = self._keys.get(key_id)
        if failed_attempts > thresholds.suspicious_activity and key is not None and key.is_active:
            await self._temporarily_block_key(key, now)
            await emit_safely(
                self._events,
                "suspicious_key_activity",
                {
                    "key_id": key_id,
                    "failed_attempts": failed_attempts,
                    "action": "key_temporarily_blocked",
                },
                severity=Severity.Critical,
                client_ip=client_ip,
            )

    async def _temporarily_block_key(self, key: VaultedKey, now: int) -> None:
        key.blocked_until = now + self._config.block_duration_ms
        await self.deactivate_key(key.key_id, DeactivationReason.TemporarySecurityBlock)

    async def _apply_scheduled_transitions(self, key: VaultedKey, now: int) -> None:
        """Lift elapsed security blocks and finish elapsed rotation grace periods."""
        if (
            not key.is_active
            and key.deactivation_reason == DeactivationReason.TemporarySecurityBlock
            and key.blocked_until is not None
            and now >= key.blocked_until
        ):
            key.is_active = True
            key.deactivation_reason = None
            key.deactivated_at = None
            key.blocked_until = None
            logger.info("key_unblocked", key_id=key.key_id)
            await emit_safely(self._events, "key_reactivated", {"key_id": key.key_id}, severity=Severity.Medium)

        if key.pending_deactivation_at is not None and now >= key.pending_deactivation_at:
            key.pending_deactivation_at = None
            await self.deactivate_key(key.key_id, DeactivationReason.Rotated)

    async def deactivate_key(self, key_id: str, reason: DeactivationReason | str) -> bool:
        """Deactivate a key. Idempotent.

        Args:
            key_id: Key identifier.
            reason: Why the key is being deactivated.

        Returns:
            True if the key changed state, False if it was unknown or already inactive.
        """
        reason = DeactivationReason(reason)
        key = self._keys.get(key_id)
        if key is None or not key.is_active:
            return False

        key.is_active = False
        key.deactivation_reason = reason
        key.deactivated_at = self._now_ms()
        if reason != DeactivationReason.TemporarySecurityBlock:
            key.blocked_until = None

        logger.warning("key_deactivated", key_id=key_id, reason=reason.value)
        await emit_safely(
            self._events,
            "key_deactivated",
            {"key_id": key_id, "reason": reason.value},
            severity=Severity.Medium,
            client_ip="system",
        )
        return True

    async def rotate_key(self, old_key_id: str, new_plaintext: str) -> str:
        """Replace a key, keeping the old one usable for a short grace period.

        Args:
            old_key_id: Key being replaced.
            new_plaintext: Replacement secret.

        Returns:
            The new key_id.

        Raises:
            KeyNotFoundError: If old_key_id is unknown.
            EncryptionError: If the new secret cannot be stored.
        """
        old_key = self._keys.get(old_key_id)
        if old_key is None:
            raise KeyNotFoundError(f"Key not found: {old_key_id}")

        new_key_id = await self.store_key(new_plaintext, old_key.environment)
        old_key.pending_deactivation_at = self._now_ms() + self._config.rotation_grace_ms

        logger.info("key_rotated", old_key_id=old_key_id, new_key_id=new_key_id)
        await emit_safely(
            self._events,
            "key_rotated",
            {
                "old_key_id": old_key_id,
                "new_key_id": new_key_id,
                "grace_period_ms": self._config.rotation_grace_ms,
            },
            severity=Severity.Medium,
        )
        return new_key_id

    async def check_rotation_schedule(self) -> list[str]:
        """Report active keys whose scheduled rotation is due.

        Returns:
            key_ids that require rotation.
        """
        now = self._now_ms()
        due = [
            key.key_id
            for key in list(self._keys.values())
            if key.is_active and key.rotation_scheduled is not None and key.rotation_scheduled <= now
        ]
        for key_id in due:
            logger.warning("key_rotation_required", key_id=key_id)
            await emit_safely(
                self._events,
                "key_rotation_required",
                {"key_id": key_id},
                severity=Severity.High,
                client_ip="system",
            )
        return due

    async def sweep(self) -> None:
        """Apply elapsed blocks and rotations, and trim the usage window."""
        now = self._now_ms()
        for key in list(self._keys.values()):
            await self._apply_scheduled_transitions(key, now)
        self._trim_usage(now)

    def _trim_usage(self, now: int) -> None:
        cutoff = now - self._config.usage_retention_ms
        # Rebind rather than mutate in place so concurrent readers keep a consistent list
        self._usage_events = [event for event in self._usage_events if event.timestamp > cutoff]

    async def cleanup(self) -> int:
        """Purge keys inactive for longer than the purge period.

        Temporarily blocked keys are kept since they reactivate on their own.

        Returns:
            Number of keys purged.
        """
        now = self._now_ms()
        purged = 0
        for key_id, key in list(self._keys.items()):
            if key.is_active or key.deactivation_reason == DeactivationReason.TemporarySecurityBlock:
                continue
            last_activity = key.deactivated_at or key.last_used or key.created_at
            if now - last_activity > self._config.inactive_purge_ms:
                self._keys.pop(key_id, None)
                purged += 1
                logger.info("key_purged", key_id=key_id)
        self._trim_usage(now)
        return purged

    def generate_usage_report(self) -> UsageReport:
        """Aggregate the retained usage window."""
        events = list(self._usage_events)
        total = len(events)
        successes = sum(1 for event in events if event.success)
        operations = Counter(event.operation for event in events)
        return UsageReport(
            total_keys=len(self._keys),
            active_keys=sum(1 for key in self._keys.values() if key.is_active),
            total_requests=total,
            success_rate=successes / total if total else 1.0,
            top_operations=[
                OperationCount(operation=operation, count=count)
                for operation, count in operations.most_common(5)
            ],
        )

    def get_key_metadata(self, key_id: str) -> KeyMetadata | None:
        """Public metadata for a key, or None if unknown."""
        key = self._keys.get(key_id)
        return KeyMetadata.from_key(key) if key else None

    def list_active_keys(self) -> list[KeyMetadata]:
        """Metadata for every active key, newest first."""
        keys = [key for key in self._keys.values() if key.is_active]
        keys.sort(key=lambda key: key.created_at, reverse=True)
        return [KeyMetadata.from_key(key) for key in keys]

    def get_active_key_id(self) -> str | None:
        """Pick the key new operations should use.

        Prefers active keys that are not winding down after rotation, newest
        first. A temporarily blocked key whose cooldown has elapsed counts as
        usable; get_key reactivates it.

        Returns:
            A key_id, or None if no key is usable.
        """
        now = self._now_ms()
        candidates = [
            key
            for key in self._keys.values()
            if key.is_active
            or (
                key.deactivation_reason == DeactivationReason.TemporarySecurityBlock
                and key.blocked_until is not None
                and now >= key.blocked_until
            )
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda key: (key.pending_deactivation_at is None, key.created_at), reverse=True)
        return candidates[0].key_id

    def recent_usage(self, key_id: str | None = None) -> list[UsageEvent]:
        """Retained usage events, optionally for one key."""
        events = list(self._usage_events)
        if key_id is None:
            return events
        return [event for event in events if event.key_id == key_id]

    def stats(self) -> dict[str, Any]:
        """Counts used by the health endpoint."""
        return {
            "total_keys": len(self._keys),
            "active_keys": sum(1 for key in self._keys.values() if key.is_active),
            "usage_events": len(self._usage_events),
        }

    def has_keys(self) -> bool:
        """Whether any key, active or not, is stored."""
        return bool(self._keys)
