"""Credential record model and the results returned by lifecycle operations.

SECURITY: only DecryptedCredential carries plaintext; it has a redacted repr.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .crypto import EncryptedBlob
from .errors import MetadataValidationError
from .metadata import TokenMetadata


class CredentialStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    REAUTH_REQUIRED = "reauth_required"
    ERROR = "error"


@dataclass
class CredentialRecord:
    """Stored credential as read from the account table; tokens still encrypted."""

    id: str
    owner_user_id: str
    organization_id: Optional[str]
    platform: str
    external_username: str
    status: CredentialStatus
    version: int
    encrypted_access_token: Optional[EncryptedBlob] = None
    encrypted_refresh_token: Optional[EncryptedBlob] = None
    metadata: Optional[TokenMetadata] = None
    platform_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_revoked(self) -> bool:
        return self.status == CredentialStatus.DISCONNECTED

    @property
    def revoked_at(self) -> Optional[str]:
        return self.platform_metadata.get("revokedAt")

    @property
    def revocation_reason(self) -> Optional[str]:
        return self.platform_metadata.get("reason")

    @classmethod
    def from_row(cls, row: Any) -> "CredentialRecord":
        """Parse a SocialAccount row.

        Raises DecryptionError (or MetadataValidationError) when the stored
        envelopes or metadata are corrupted.
        """
        platform_metadata = dict(row.platform_metadata or {})
        try:
            status = CredentialStatus(row.status)
        except ValueError as exc:
            raise MetadataValidationError(f"unknown status: {row.status}") from exc

        metadata = None
        raw_metadata = platform_metadata.get("tokenMetadata")
        if raw_metadata is not None:
            metadata = TokenMetadata.from_dict(raw_metadata)
            # No issued_at <= now check: the writing host may run ahead of this clock
            metadata.check_ranges()

        access = EncryptedBlob.from_json(row.access_token) if row.access_token else None
        refresh = EncryptedBlob.from_json(row.refresh_token) if row.refresh_token else None
        if access is not None and metadata is None:
            raise MetadataValidationError("token metadata missing for stored token")

        return cls(
            id=row.id,
            owner_user_id=row.user_id,
            organization_id=row.organization_id,
            platform=row.platform,
            external_username=row.username,
            status=status,
            version=row.version,
            encrypted_access_token=access,
            encrypted_refresh_token=refresh,
            metadata=metadata,
            platform_metadata=platform_metadata,
        )


@dataclass
class DecryptedCredential:
    """Plaintext view of a credential. Handle with care and never log."""

    id: str
    platform: str
    username: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    scopes: list[str]
    status: CredentialStatus
    last_rotated_at: datetime
    rotation_count: int
    organization_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == CredentialStatus.CONNECTED

    def __repr__(self) -> str:
        return (
            f"DecryptedCredential(id={self.id!r}, platform={self.platform!r}, "
            f"username={self.username!r}, status={self.status.value!r}, "
            f"access_token='[REDACTED]')"
        )


@dataclass
class RotationResult:
    """Outcome of rotate_token. Does NOT include token values."""

    success: bool
    new_expires_at: Optional[datetime] = None
    error: Optional[str] = None
    requires_reauth: bool = False
    error_code: Optional[str] = None


@dataclass
class TokenHealth:
    is_valid: bool
    is_expired: bool
    needs_rotation: bool
    days_until_expiry: int
    last_rotated_at: Optional[datetime] = None

    @classmethod
    def unavailable(cls) -> "TokenHealth":
        return cls(
            is_valid=False,
            is_expired=True,
            needs_rotation=True,
            days_until_expiry=0,
            last_rotated_at=None,
        )


@dataclass
class OwnerHealthEntry:
    credential: DecryptedCredential
    health: TokenHealth


@dataclass
class OwnerHealthReport:
    entries: list[OwnerHealthEntry]

    @property
    def total(self) -> int:
        return len(self.entries)

    @property
    def healthy(self) -> int:
        return sum(1 for e in self.entries if e.health.is_valid)

    @property
    def expired(self) -> int:
        return sum(1 for e in self.entries if e.health.is_expired)

    @property
    def needs_rotation(self) -> int:
        return sum(1 for e in self.entries if e.health.needs_rotation)
