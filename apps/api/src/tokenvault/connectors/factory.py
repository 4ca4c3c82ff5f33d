from __future__ import annotations

from typing import Dict

import httpx

from ..core.config import Settings
from .base import BasePlatformRefresher
from .platforms import (
    FacebookRefresher,
    InstagramRefresher,
    LinkedInRefresher,
    NoopRefresher,
)


class RefresherRegistry:
    """Platform id -> refresher; unknown platforms get a NoopRefresher."""

    def __init__(self, refreshers: Dict[str, BasePlatformRefresher] | None = None):
        self._refreshers: Dict[str, BasePlatformRefresher] = {}
        for platform, refresher in (refreshers or {}).items():
            self.register(platform, refresher)

    def register(self, platform: str, refresher: BasePlatformRefresher) -> None:
        self._refreshers[platform.lower()] = refresher

    def get(self, platform: str) -> BasePlatformRefresher:
        return self._refreshers.get(platform.lower()) or NoopRefresher(platform)

    def platforms(self) -> list[str]:
        return sorted(self._refreshers)


def build_default_registry(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RefresherRegistry:
    """Registry with every built-in platform flow, configured from settings."""
    timeout = settings.REFRESH_TIMEOUT_SECONDS
    return RefresherRegistry({
        "facebook": FacebookRefresher(
            settings.FACEBOOK_APP_ID,
            settings.FACEBOOK_APP_SECRET,
            graph_version=settings.FACEBOOK_GRAPH_VERSION,
            timeout=timeout,
            transport=transport,
        ),
        "instagram": InstagramRefresher(timeout=timeout, transport=transport),
        "linkedin": LinkedInRefresher(
            settings.LINKEDIN_CLIENT_ID,
            settings.LINKEDIN_CLIENT_SECRET,
            timeout=timeout,
            transport=transport,
        ),
    })
