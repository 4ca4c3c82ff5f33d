"""
Token management endpoint.

GET  ?action=health | rotation-status | encryption-status
POST {"action": "rotate" | "revoke" | "store" | "validate", ...}

Every operation is scoped to the authenticated caller: accounts owned by
someone else are reported as not found.
"""
from json import JSONDecodeError

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ...core.crypto import CryptoEngine
from ...core.errors import RecordNotFoundError
from ...core.logging import get_logger
from ...dependencies import get_crypto_engine, get_current_user_id, get_lifecycle_manager
from ...schemas.token_management import (
    ActionResponse,
    ErrorResponse,
    HealthResponse,
    HealthSummary,
    RotationStatusItem,
    RotationStatusResponse,
    TokenActionRequest,
    TokenHealthData,
    TokenHealthItem,
)
from ...services import CredentialLifecycleManager

logger = get_logger(__name__)

router = APIRouter(tags=["token-management"])

GET_ACTIONS = ("health", "rotation-status", "encryption-status")
POST_ACTIONS = ("rotate", "revoke", "store", "validate")


def _bad_request(error: str, requires_reauth: bool | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, requires_reauth=requires_reauth)
    return JSONResponse(
        status_code=400,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def _ok(model) -> JSONResponse:
    return JSONResponse(content=model.model_dump(mode="json", by_alias=True, exclude_none=True))


@router.get("")
async def get_token_status(
    action: str | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
    crypto: CryptoEngine = Depends(get_crypto_engine),
):
    """Read-only views over the caller's credentials."""
    if action == "health":
        report = await manager.owner_health_report(user_id)
        return _ok(HealthResponse(
            data=[
                TokenHealthItem(
                    account_id=entry.credential.id,
                    platform=entry.credential.platform,
                    username=entry.credential.username,
                    is_valid=entry.health.is_valid,
                    is_expired=entry.health.is_expired,
                    needs_rotation=entry.health.needs_rotation,
                    days_until_expiry=entry.health.days_until_expiry,
                    last_rotated=entry.health.last_rotated_at,
                )
                for entry in report.entries
            ],
            summary=HealthSummary(
                total=report.total,
                healthy=report.healthy,
                expired=report.expired,
                needs_rotation=report.needs_rotation,
            ),
        ))

    if action == "rotation-status":
        due = await manager.list_tokens_needing_rotation(user_id)
        return _ok(RotationStatusResponse(
            data=[
                RotationStatusItem(
                    account_id=credential.id,
                    platform=credential.platform,
                    username=credential.username,
                    expires_at=credential.expires_at,
                    last_rotated=credential.last_rotated_at,
                    rotation_count=credential.rotation_count,
                )
                for credential in due
            ],
            count=len(due),
        ))

    if action == "encryption-status":
        return {"success": True, "data": crypto.health_status().to_dict()}

    return _bad_request(f"Invalid action. Expected one of: {', '.join(GET_ACTIONS)}")


@router.post("")
async def post_token_action(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Mutating operations on a single credential."""
    try:
        payload = TokenActionRequest.model_validate(await request.json())
    except (JSONDecodeError, UnicodeDecodeError):
        return _bad_request("Request body must be JSON")
    except ValidationError as exc:
        logger.info("Rejected token action body", extra={"error_count": exc.error_count()})
        return _bad_request("Invalid request body")

    if payload.action == "store":
        return await _store(payload, user_id, manager)

    if payload.action not in POST_ACTIONS:
        return _bad_request(f"Invalid action. Expected one of: {', '.join(POST_ACTIONS)}")

    if not payload.account_id:
        return _bad_request("Account ID required")

    if payload.action == "rotate":
        result = await manager.rotate_token(payload.account_id, owner_user_id=user_id)
        if result.error_code == "not_found":
            raise RecordNotFoundError(payload.account_id)
        if not result.success:
            return _bad_request(result.error or "Rotation failed", result.requires_reauth)
        return _ok(ActionResponse(
            message="Token rotated successfully",
            data={"newExpiresAt": result.new_expires_at.isoformat()},
        ))

    if payload.action == "revoke":
        revoked = await manager.revoke_token(
            payload.account_id,
            reason=payload.reason or "user_revoked",
            owner_user_id=user_id,
        )
        if not revoked:
            raise RecordNotFoundError(payload.account_id)
        return _ok(ActionResponse(message="Token revoked successfully"))

    health = await manager.validate_token_health(payload.account_id, owner_user_id=user_id)
    return _ok(ActionResponse(
        data=TokenHealthData(
            is_valid=health.is_valid,
            is_expired=health.is_expired,
            needs_rotation=health.needs_rotation,
            days_until_expiry=health.days_until_expiry,
            last_rotated=health.last_rotated_at,
        ).model_dump(mode="json", by_alias=True),
    ))


async def _store(
    payload: TokenActionRequest,
    user_id: str,
    manager: CredentialLifecycleManager,
) -> JSONResponse:
    if not payload.platform or not payload.username or not payload.access_token:
        return _bad_request("platform, username and accessToken are required")

    try:
        account_id = await manager.store_token(
            user_id,
            payload.organization_id,
            payload.platform,
            payload.username,
            payload.access_token,
            refresh_token=payload.refresh_token,
            expires_in_seconds=payload.expires_in,
            scopes=payload.scopes,
        )
    except ValueError:
        return _bad_request("Invalid token parameters")

    return _ok(ActionResponse(
        message="Token stored successfully",
        data={"accountId": account_id},
    ))
