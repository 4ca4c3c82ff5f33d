"""Platform-specific refresh flows."""
from __future__ import annotations

from typing import Any, Optional

import httpx

from .base import BasePlatformRefresher, RefreshOutcome


class FacebookRefresher(BasePlatformRefresher):
    """Exchanges a long-lived user token for a new one (fb_exchange_token)."""

    platform = "facebook"
    default_expires_in = 5_184_000  # ~60 days

    def __init__(
        self,
        app_id: str | None,
        app_secret: str | None,
        graph_version: str = "v18.0",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._app_id = app_id
        self._app_secret = app_secret
        self._url = f"https://graph.facebook.com/{graph_version}/oauth/access_token"

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        if not self._app_id or not self._app_secret:
            return RefreshOutcome.failed("Facebook OAuth credentials not configured")

        return await self._exchange(
            "GET",
            self._url,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self._app_id,
                "client_secret": self._app_secret,
                "fb_exchange_token": refresh_token,
            },
        )

    def _next_refresh_token(self, data: dict[str, Any]) -> Optional[str]:
        # The long-lived token is its own refresh credential
        return data["access_token"]


class InstagramRefresher(BasePlatformRefresher):
    """Refreshes a long-lived Instagram token (ig_refresh_token grant)."""

    platform = "instagram"
    default_expires_in = 5_184_000

    _URL = "https://graph.instagram.com/refresh_access_token"

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        return await self._exchange(
            "GET",
            self._URL,
            params={
                "grant_type": "ig_refresh_token",
                "access_token": refresh_token,
            },
        )

    def _next_refresh_token(self, data: dict[str, Any]) -> Optional[str]:
        return data["access_token"]


class LinkedInRefresher(BasePlatformRefresher):
    """Standard OAuth 2.0 refresh_token grant against LinkedIn."""

    platform = "linkedin"
    default_expires_in = 5_184_000

    _URL = "https://www.linkedin.com/oauth/v2/accessToken"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._client_id = client_id
        self._client_secret = client_secret

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        if not self._client_id or not self._client_secret:
            return RefreshOutcome.failed("LinkedIn OAuth credentials not configured")

        return await self._exchange(
            "POST",
            self._URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )


class NoopRefresher(BasePlatformRefresher):
    """Placeholder for platforms without a supported refresh flow."""

    def __init__(self, platform: str):
        super().__init__()
        self.platform = platform

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        return RefreshOutcome.failed(
            f"No refresh handler for platform: {self.platform}",
            requires_reauth=True,
        )
