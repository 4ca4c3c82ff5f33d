from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .config import NINETY_DAYS_SECONDS, Settings
from .metadata import TokenMetadata, utcnow


@dataclass(frozen=True)
class RotationPolicy:
    """When stored credentials should be exchanged for a fresh pair."""

    max_age_seconds: int = NINETY_DAYS_SECONDS
    rotation_threshold_percent: float = 20
    auto_rotate_enabled: bool = True

    def __post_init__(self) -> None:
        if self.max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        if not 0 <= self.rotation_threshold_percent <= 100:
            raise ValueError("rotation_threshold_percent must be between 0 and 100")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RotationPolicy":
        return cls(
            max_age_seconds=settings.ROTATION_MAX_AGE_SECONDS,
            rotation_threshold_percent=settings.ROTATION_THRESHOLD_PERCENT,
            auto_rotate_enabled=settings.AUTO_ROTATE_ENABLED,
        )

    def with_overrides(self, **overrides) -> "RotationPolicy":
        return replace(self, **overrides)


def should_rotate(
    metadata: TokenMetadata,
    policy: RotationPolicy,
    now: datetime | None = None,
) -> bool:
    """True once the token has expired or entered the rotation window.

    The window is the last `rotation_threshold_percent` of the current
    token's lifetime.
    """
    if not policy.auto_rotate_enabled:
        return False

    now = now or utcnow()
    if now >= metadata.expires_at:
        return True

    lifetime = metadata.expires_at - metadata.lifetime_start
    remaining = metadata.expires_at - now
    window = lifetime * (policy.rotation_threshold_percent / 100)
    return remaining <= max(window, timedelta(0))
