"""Token metadata bound to every ciphertext as additional authenticated data."""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from .errors import MetadataValidationError

MAX_ROTATION_COUNT = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MetadataValidationError(f"{name} is not an ISO-8601 timestamp") from exc
    else:
        raise MetadataValidationError(f"{name} is missing")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class TokenMetadata:
    """Non-secret attributes of a credential.

    Serialized canonically and used as AES-GCM associated data, so metadata
    moved onto a different ciphertext fails authentication.
    """

    platform: str
    issued_at: datetime
    expires_at: datetime
    last_rotated_at: datetime
    rotation_count: int = 0
    scopes: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def issue(
        cls,
        platform: str,
        expires_in_seconds: int,
        scopes: Iterable[str] = (),
        now: datetime | None = None,
    ) -> "TokenMetadata":
        """Metadata for a freshly obtained token pair."""
        if expires_in_seconds <= 0:
            raise ValueError("expires_in_seconds must be positive")
        now = now or utcnow()
        return cls(
            platform=platform,
            issued_at=now,
            expires_at=now + timedelta(seconds=expires_in_seconds),
            last_rotated_at=now,
            rotation_count=0,
            scopes=frozenset(scopes),
        )

    def rotated(
        self,
        expires_in_seconds: int | None = None,
        new_expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> "TokenMetadata":
        """Metadata for the token pair that replaces this one."""
        now = now or utcnow()
        if new_expires_at is None:
            if not expires_in_seconds or expires_in_seconds <= 0:
                raise ValueError("expires_in_seconds or new_expires_at is required")
            new_expires_at = now + timedelta(seconds=expires_in_seconds)

        count = self.rotation_count + 1
        if count > MAX_ROTATION_COUNT:
            raise MetadataValidationError("rotation_count exceeds supported range")

        return replace(
            self,
            expires_at=_parse_timestamp(new_expires_at, "expires_at"),
            last_rotated_at=now,
            rotation_count=count,
        )

    def validate(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        if self.issued_at > now:
            raise MetadataValidationError("issued_at is in the future")
        self.check_ranges()

    def check_ranges(self) -> None:
        """Clock-independent checks, safe to run on metadata written by another host."""
        if self.issued_at > self.expires_at:
            raise MetadataValidationError("issued_at is after expires_at")
        if not 0 <= self.rotation_count <= MAX_ROTATION_COUNT:
            raise MetadataValidationError("rotation_count outside supported range")

    def is_valid(self, now: datetime | None = None) -> bool:
        try:
            self.validate(now)
        except MetadataValidationError:
            return False
        return True

    @property
    def lifetime_start(self) -> datetime:
        """Start of the current token's lifetime (issue time or last rotation)."""
        return max(self.issued_at, self.last_rotated_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "scopes": sorted(self.scopes),
            "issuedAt": self.issued_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "lastRotated": self.last_rotated_at.isoformat(),
            "rotationCount": self.rotation_count,
        }

    def canonical_bytes(self) -> bytes:
        return json.dumps(
            self.to_dict(), separators=(",", ":"), sort_keys=True
        ).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TokenMetadata":
        if not isinstance(data, Mapping):
            raise MetadataValidationError("token metadata must be an object")

        platform = data.get("platform")
        if not isinstance(platform, str) or not platform:
            raise MetadataValidationError("platform is missing")

        scopes = data.get("scopes") or []
        if not isinstance(scopes, (list, tuple, set, frozenset)):
            raise MetadataValidationError("scopes must be a list")

        rotation_count = data.get("rotationCount", 0)
        if isinstance(rotation_count, bool) or not isinstance(rotation_count, int):
            raise MetadataValidationError("rotationCount must be an integer")

        issued_at = _parse_timestamp(data.get("issuedAt"), "issuedAt")
        return cls(
            platform=platform,
            issued_at=issued_at,
            expires_at=_parse_timestamp(data.get("expiresAt"), "expiresAt"),
            last_rotated_at=_parse_timestamp(
                data.get("lastRotated") or issued_at, "lastRotated"
            ),
            rotation_count=rotation_count,
            scopes=frozenset(str(s) for s in scopes),
        )
