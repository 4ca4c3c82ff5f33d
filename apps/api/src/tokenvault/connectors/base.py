from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from ..core.logging import get_logger
from ..core.metadata import utcnow

logger = get_logger(__name__)

# Platform answers meaning the refresh token itself is no longer usable
REAUTH_STATUS_CODES = frozenset({400, 401})


@dataclass
class RefreshOutcome:
    """Result of exchanging a refresh token with a platform.

    SECURITY: carries new token values; never log instances.
    """

    success: bool
    new_access_token: Optional[str] = None
    new_refresh_token: Optional[str] = None
    new_expires_at: Optional[datetime] = None
    error: Optional[str] = None
    requires_reauth: bool = False

    @classmethod
    def failed(cls, error: str, requires_reauth: bool = False) -> "RefreshOutcome":
        return cls(success=False, error=error, requires_reauth=requires_reauth)

    def __repr__(self) -> str:
        return (
            f"RefreshOutcome(success={self.success}, new_expires_at={self.new_expires_at!r}, "
            f"error={self.error!r}, requires_reauth={self.requires_reauth})"
        )


class BasePlatformRefresher(ABC):
    """Exchanges a refresh token for a fresh token pair on one platform."""

    platform: str = ""
    default_expires_in: int = 60 * 60 * 24 * 60

    def __init__(
        self,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @abstractmethod
    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        """Exchange `refresh_token`; must not raise for platform-side failures."""

    async def _exchange(self, method: str, url: str, **kwargs: Any) -> RefreshOutcome:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.warning("Token refresh timed out", extra={"platform": self.platform})
            return RefreshOutcome.failed(f"{self.platform} token refresh timed out")
        except httpx.HTTPError as exc:
            logger.warning(
                "Token refresh request failed",
                extra={"platform": self.platform, "error_type": type(exc).__name__},
            )
            return RefreshOutcome.failed(f"{self.platform} token refresh request failed")

        return self._parse(response)

    def _parse(self, response: httpx.Response) -> RefreshOutcome:
        if response.status_code != 200:
            logger.warning(
                "Platform rejected token refresh",
                extra={"platform": self.platform, "status_code": response.status_code},
            )
            return RefreshOutcome.failed(
                f"{self.platform} token refresh failed: {response.status_code}",
                requires_reauth=response.status_code in REAUTH_STATUS_CODES,
            )

        try:
            data = response.json()
        except ValueError:
            return RefreshOutcome.failed(f"{self.platform} returned a non-JSON response")

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            return RefreshOutcome.failed(f"{self.platform} response missing access_token")

        expires_in = data.get("expires_in") or self.default_expires_in
        return RefreshOutcome(
            success=True,
            new_access_token=access_token,
            new_refresh_token=self._next_refresh_token(data),
            new_expires_at=utcnow() + timedelta(seconds=int(expires_in)),
        )

    def _next_refresh_token(self, data: dict[str, Any]) -> Optional[str]:
        return data.get("refresh_token")
