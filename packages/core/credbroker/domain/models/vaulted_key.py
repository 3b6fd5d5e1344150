"""Vaulted key and key usage models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class KeyEnvironment(str, Enum):
    """Deployment environment a vaulted key belongs to."""

    Development = "development"
    Staging = "staging"
    Production = "production"


class DeactivationReason(str, Enum):
    """Why a vaulted key stopped being usable.

    Only TemporarySecurityBlock is reversed automatically.
    """

    Expired = "EXPIRED"
    """Key exceeded its maximum age."""

    Rotated = "ROTATED"
    """Key was replaced by rotation and its grace period elapsed."""

    TemporarySecurityBlock = "TEMPORARY_SECURITY_BLOCK"
    """Key was blocked after suspicious failures; reactivated after the cooldown."""

    Manual = "MANUAL"
    """Key was deactivated by an operator."""


class VaultedKey(BaseModel):
    """A provider secret stored only in encrypted form.

    The plaintext never lives on this model. Timestamps are epoch milliseconds.
    """

    key_id: str = Field(..., description="Opaque key identifier (key_<32 hex>)")
    ciphertext: bytes = Field(..., repr=False, description="AES-GCM ciphertext without tag")
    iv: bytes = Field(..., repr=False, description="16-byte initialization vector")
    tag: bytes = Field(..., repr=False, description="GCM authentication tag")
    environment: KeyEnvironment = Field(default=KeyEnvironment.Development)
    created_at: int = Field(..., description="Creation time (epoch ms)")
    last_used: int | None = Field(default=None, description="Last successful read (epoch ms)")
    usage_count: int = Field(default=0, ge=0)
    is_active: bool = Field(default=True)
    rotation_scheduled: int | None = Field(default=None, description="When rotation is due (epoch ms)")
    deactivation_reason: DeactivationReason | None = Field(default=None)
    deactivated_at: int | None = Field(default=None)
    blocked_until: int | None = Field(
        default=None,
        description="End of a temporary security block (epoch ms)",
    )
    pending_deactivation_at: int | None = Field(
        default=None,
        description="End of the rotation grace period (epoch ms)",
    )

    model_config = ConfigDict(validate_assignment=False)


class KeyMetadata(BaseModel):
    """Public view of a vaulted key. Carries no key material."""

    key_id: str
    environment: KeyEnvironment
    created_at: int
    last_used: int | None = None
    usage_count: int = 0
    is_active: bool = True
    rotation_scheduled: int | None = None
    deactivation_reason: DeactivationReason | None = None

    @classmethod
    def from_key(cls, key: VaultedKey) -> KeyMetadata:
        """Build metadata from a vaulted key.

        Args:
            key: Vaulted key to describe.

        Returns:
            KeyMetadata without ciphertext, IV or tag.
        """
        return cls(
            key_id=key.key_id,
            environment=key.environment,
            created_at=key.created_at,
            last_used=key.last_used,
            usage_count=key.usage_count,
            is_active=key.is_active,
            rotation_scheduled=key.rotation_scheduled,
            deactivation_reason=key.deactivation_reason,
        )


class UsageEvent(BaseModel):
    """Immutable, signed record of one key access.

    The signature binds key_id, timestamp, client_ip and operation so that
    tampering with the audit trail is detectable. It is not used for
    authorization.
    """

    timestamp: int = Field(..., description="Event time (epoch ms)")
    key_id: str
    client_ip: str
    operation: str
    success: bool
    error_code: str | None = None
    signature: str = Field(..., repr=False)

    model_config = ConfigDict(frozen=True)


class OperationCount(BaseModel):
    """Usage count for one operation name."""

    operation: str
    count: int


class UsageReport(BaseModel):
    """Aggregated vault usage over the retained window."""

    total_keys: int
    active_keys: int
    total_requests: int
    success_rate: float = Field(..., ge=0.0, le=1.0)
    top_operations: list[OperationCount] = Field(default_factory=list)
