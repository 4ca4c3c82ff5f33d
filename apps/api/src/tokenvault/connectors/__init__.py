"""Platform refresh collaborators invoked during token rotation."""

from .base import BasePlatformRefresher, RefreshOutcome
from .factory import RefresherRegistry, build_default_registry
from .platforms import (
    FacebookRefresher,
    InstagramRefresher,
    LinkedInRefresher,
    NoopRefresher,
)

__all__ = [
    "BasePlatformRefresher",
    "RefreshOutcome",
    "RefresherRegistry",
    "build_default_registry",
    "FacebookRefresher",
    "InstagramRefresher",
    "LinkedInRefresher",
    "NoopRefresher",
]
