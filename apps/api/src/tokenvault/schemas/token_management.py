"""Request and response bodies for the token management endpoint.

Wire format is camelCase (accountId, accessToken, ...).
"""
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TokenActionRequest(CamelModel):
    """POST body. Which fields are required depends on `action`."""
    action: str
    account_id: str | None = None
    reason: str | None = None

    # action=store
    platform: str | None = None
    username: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = Field(default=None, gt=0)
    scopes: list[str] = []
    organization_id: str | None = None


class TokenHealthItem(CamelModel):
    account_id: str
    platform: str
    username: str
    is_valid: bool
    is_expired: bool
    needs_rotation: bool
    days_until_expiry: int
    last_rotated: datetime | None = None


class HealthSummary(CamelModel):
    total: int
    healthy: int
    expired: int
    needs_rotation: int


class HealthResponse(CamelModel):
    success: bool = True
    data: list[TokenHealthItem]
    summary: HealthSummary


class RotationStatusItem(CamelModel):
    account_id: str
    platform: str
    username: str
    expires_at: datetime
    last_rotated: datetime
    rotation_count: int


class RotationStatusResponse(CamelModel):
    success: bool = True
    data: list[RotationStatusItem]
    count: int


class TokenHealthData(CamelModel):
    is_valid: bool
    is_expired: bool
    needs_rotation: bool
    days_until_expiry: int
    last_rotated: datetime | None = None


class ActionResponse(CamelModel):
    success: bool = True
    message: str | None = None
    data: dict[str, Any] | None = None


class ErrorResponse(CamelModel):
    success: Literal[False] = False
    error: str
    requires_reauth: bool | None = None
