"""
Credential lifecycle management for connected social accounts.

SECURITY REQUIREMENTS:
- Tokens are encrypted (CryptoEngine) before they reach the account store
- Token metadata is bound to every ciphertext as associated data
- Plaintext tokens never appear in logs, errors or RotationResult
- Allowed in logs: record id, platform, username, error type

State machine:
    [none] --store--> connected
    connected --rotate(success)--> connected (rotation_count+1)
    connected --rotate(no refresh token)--> reauth_required
    connected --rotate(platform failure)--> connected (unchanged)
    connected|reauth_required|error --revoke--> disconnected

Usage:
    manager = CredentialLifecycleManager(engine, AccountRepository(sessions), registry)
    record_id = await manager.store_token(user_id, None, "instagram", "shop", access, refresh)
    result = await manager.rotate_token(record_id)
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from ..connectors import RefresherRegistry, RefreshOutcome
from ..core.crypto import CryptoEngine, EncryptedBlob
from ..core.errors import (
    CollaboratorError,
    CollaboratorTimeoutError,
    ConcurrentRotationError,
    DecryptionError,
)
from ..core.locks import KeyedLock
from ..core.logging import get_logger
from ..core.metadata import MAX_ROTATION_COUNT, TokenMetadata, utcnow
from ..core.policy import RotationPolicy, should_rotate
from ..core.records import (
    CredentialRecord,
    CredentialStatus,
    DecryptedCredential,
    OwnerHealthEntry,
    OwnerHealthReport,
    RotationResult,
    TokenHealth,
)
from ..models import SocialAccount
from ..repositories import AccountRepository

logger = get_logger(__name__)

SECONDS_PER_DAY = 60 * 60 * 24

Opened = tuple[CredentialRecord, DecryptedCredential]


class CredentialLifecycleManager:
    """Stores, reads, rotates and revokes encrypted OAuth credentials."""

    def __init__(
        self,
        engine: CryptoEngine,
        repository: AccountRepository,
        refreshers: RefresherRegistry,
        policy: Optional[RotationPolicy] = None,
        refresh_timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._repo = repository
        self._refreshers = refreshers
        self._policy = policy or RotationPolicy()
        self._refresh_timeout = refresh_timeout
        self._clock = clock
        self._rotation_locks = KeyedLock()

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    @property
    def rotation_policy(self) -> RotationPolicy:
        return self._policy

    def update_rotation_policy(self, **overrides: Any) -> RotationPolicy:
        """Replace individual policy fields; unknown fields raise TypeError."""
        self._policy = self._policy.with_overrides(**overrides)
        logger.info("Rotation policy updated", extra={"policy": asdict(self._policy)})
        return self._policy

    # ------------------------------------------------------------------
    # Store / read
    # ------------------------------------------------------------------

    async def store_token(
        self,
        owner_user_id: str,
        organization_id: Optional[str],
        platform: str,
        username: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
        scopes: Iterable[str] = (),
    ) -> str:
        """
        Encrypt and persist a freshly obtained token pair.

        Returns:
            Id of the new credential record

        Raises:
            ValueError: If a required field is empty or the lifetime is not positive
            EncryptionError: If encryption fails
            StorageError: If the account store write fails
        """
        if not owner_user_id:
            raise ValueError("owner_user_id is required")
        if not platform or not username or not access_token:
            raise ValueError("platform, username and access_token are required")

        now = self._clock()
        metadata = TokenMetadata.issue(
            platform,
            expires_in_seconds or self._policy.max_age_seconds,
            scopes,
            now=now,
        )
        access_blob = self._engine.encrypt(access_token, metadata)
        refresh_blob = (
            self._engine.encrypt(refresh_token, metadata) if refresh_token else None
        )

        try:
            row = await self._repo.insert(
                user_id=owner_user_id,
                organization_id=organization_id,
                platform=platform,
                username=username,
                access_token=access_blob.to_json(),
                refresh_token=refresh_blob.to_json() if refresh_blob else None,
                token_expires_at=metadata.expires_at,
                status=CredentialStatus.CONNECTED.value,
                platform_metadata=self._platform_metadata(metadata, access_blob),
            )
        except Exception as exc:
            logger.error(
                "Credential storage failed",
                extra={
                    "platform": platform,
                    "username": username,
                    "error_type": type(exc).__name__,
                },
            )
            raise

        logger.info(
            "Credential stored",
            extra={
                "record_id": row.id,
                "platform": platform,
                "username": username,
                "has_refresh_token": refresh_blob is not None,
                "expires_at": metadata.expires_at.isoformat(),
            },
        )
        return row.id

    async def get_token(
        self,
        record_id: str,
        owner_user_id: Optional[str] = None,
    ) -> Optional[DecryptedCredential]:
        """
        Read and decrypt one credential.

        Returns None when the record is absent, owned by someone else, revoked,
        or fails to decrypt (the failure is logged, not raised).
        """
        opened = await self._open_by_id(record_id, owner_user_id)
        return opened[1] if opened else None

    async def list_owner_tokens(
        self,
        owner_user_id: str,
        organization_id: Optional[str] = None,
    ) -> list[DecryptedCredential]:
        """Decrypt every credential of an owner; one bad record never fails the list."""
        return [credential for _, credential in await self._open_owner(owner_user_id, organization_id)]

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def needs_rotation(
        self,
        record_id: str,
        owner_user_id: Optional[str] = None,
    ) -> bool:
        """Policy check on stored metadata; no decryption, no side effects.

        Unparseable metadata answers False: rotating cannot repair the record.
        validate_token_health reports the same record as unavailable, which
        does carry needs_rotation=True so the health view flags it.
        """
        row = await self._fetch(record_id, owner_user_id)
        if row is None:
            return False
        try:
            record = CredentialRecord.from_row(row)
        except DecryptionError as exc:
            self._log_unreadable(record_id, exc)
            return False
        if record.metadata is None or record.encrypted_access_token is None:
            return False
        return should_rotate(record.metadata, self._policy, self._clock())

    async def list_tokens_needing_rotation(
        self,
        owner_user_id: str,
        organization_id: Optional[str] = None,
    ) -> list[DecryptedCredential]:
        now = self._clock()
        return [
            credential
            for record, credential in await self._open_owner(owner_user_id, organization_id)
            if should_rotate(record.metadata, self._policy, now)
        ]

    async def rotate_token(
        self,
        record_id: str,
        owner_user_id: Optional[str] = None,
    ) -> RotationResult:
        """
        Exchange the stored refresh token for a fresh pair.

        The read-refresh-write sequence holds a per-record lock and the final
        write is a compare-and-swap on the record version, so a refresh token
        is never exchanged twice. The write is the last step; a platform
        failure, timeout or cancellation leaves the record untouched.

        Raises:
            StorageError: If the account store fails
            EncryptionError: If the new tokens cannot be encrypted
        """
        async with self._rotation_locks.hold(record_id):
            row = await self._fetch(record_id, owner_user_id)
            if row is None:
                return RotationResult(success=False, error="Token not found", error_code="not_found")

            try:
                record = CredentialRecord.from_row(row)
            except DecryptionError as exc:
                return await self._mark_corrupted(record_id, exc)

            if record.is_revoked or record.encrypted_access_token is None:
                return RotationResult(
                    success=False, error="Token has been revoked", error_code="inactive"
                )

            if record.encrypted_refresh_token is None:
                return await self._require_reauth(record)

            if record.metadata.rotation_count >= MAX_ROTATION_COUNT:
                return RotationResult(
                    success=False,
                    error="Rotation limit reached; re-authentication required",
                    requires_reauth=True,
                    error_code="rotation_limit",
                )

            try:
                refresh_token = self._engine.decrypt(
                    record.encrypted_refresh_token, record.metadata
                )
            except DecryptionError as exc:
                return await self._mark_corrupted(record_id, exc)

            outcome = await self._call_refresher(record, refresh_token)
            if isinstance(outcome, RotationResult):
                return outcome

            return await self._write_rotation(record, outcome, refresh_token)

    async def _call_refresher(self, record: CredentialRecord, refresh_token: str):
        refresher = self._refreshers.get(record.platform)
        try:
            outcome: RefreshOutcome = await asyncio.wait_for(
                refresher.refresh(refresh_token), timeout=self._refresh_timeout
            )
        except (asyncio.TimeoutError, CollaboratorTimeoutError):
            logger.warning(
                "Platform token refresh timed out",
                extra={
                    "record_id": record.id,
                    "platform": record.platform,
                    "timeout_seconds": self._refresh_timeout,
                },
            )
            return RotationResult(
                success=False, error="Platform token refresh timed out", error_code="timeout"
            )
        except CollaboratorError as exc:
            return self._collaborator_failed(record, str(exc))
        except Exception as exc:  # noqa: BLE001 - platform code must not abort rotation
            return self._collaborator_failed(
                record, f"Platform token refresh failed: {type(exc).__name__}"
            )

        if not outcome.success or not outcome.new_access_token:
            return self._collaborator_failed(
                record,
                outcome.error or "Platform token refresh failed",
                requires_reauth=outcome.requires_reauth,
            )
        return outcome

    async def _write_rotation(
        self,
        record: CredentialRecord,
        outcome: RefreshOutcome,
        current_refresh_token: str,
    ) -> RotationResult:
        now = self._clock()
        new_expires_at = outcome.new_expires_at or now + timedelta(
            seconds=self._policy.max_age_seconds
        )
        new_metadata = record.metadata.rotated(new_expires_at=new_expires_at, now=now)

        # Platforms that do not rotate refresh tokens keep the current one,
        # re-sealed under the new metadata.
        access_blob = self._engine.encrypt(outcome.new_access_token, new_metadata)
        refresh_blob = self._engine.encrypt(
            outcome.new_refresh_token or current_refresh_token, new_metadata
        )

        platform_metadata = self._platform_metadata(
            new_metadata, access_blob, base=record.platform_metadata
        )
        platform_metadata["lastRotation"] = now.isoformat()

        try:
            await self._repo.update_tokens(
                record.id,
                expected_version=record.version,
                access_token=access_blob.to_json(),
                refresh_token=refresh_blob.to_json(),
                token_expires_at=new_metadata.expires_at,
                platform_metadata=platform_metadata,
                status=CredentialStatus.CONNECTED.value,
            )
        except ConcurrentRotationError:
            logger.warning(
                "Rotation discarded: credential changed concurrently",
                extra={"record_id": record.id, "expected_version": record.version},
            )
            return RotationResult(
                success=False,
                error="Credential was modified concurrently; rotation discarded",
                error_code="conflict",
            )

        logger.info(
            "Credential rotated",
            extra={
                "record_id": record.id,
                "platform": record.platform,
                "rotation_count": new_metadata.rotation_count,
                "new_expires_at": new_metadata.expires_at.isoformat(),
                "refresh_token_rotated": bool(outcome.new_refresh_token),
            },
        )
        return RotationResult(success=True, new_expires_at=new_metadata.expires_at)

    async def _require_reauth(self, record: CredentialRecord) -> RotationResult:
        if record.status != CredentialStatus.REAUTH_REQUIRED:
            await self._repo.set_status(record.id, CredentialStatus.REAUTH_REQUIRED.value)
        logger.info(
            "Rotation impossible without refresh token",
            extra={"record_id": record.id, "platform": record.platform},
        )
        return RotationResult(
            success=False,
            error="No refresh token available",
            requires_reauth=True,
            error_code="reauth_required",
        )

    async def _mark_corrupted(self, record_id: str, exc: DecryptionError) -> RotationResult:
        self._log_unreadable(record_id, exc)
        await self._repo.set_status(record_id, CredentialStatus.ERROR.value)
        return RotationResult(
            success=False,
            error="Stored credential could not be decrypted",
            error_code="corrupted",
        )

    def _collaborator_failed(
        self,
        record: CredentialRecord,
        message: str,
        requires_reauth: bool = False,
    ) -> RotationResult:
        logger.warning(
            "Platform token refresh failed",
            extra={
                "record_id": record.id,
                "platform": record.platform,
                "error": message,
                "requires_reauth": requires_reauth,
            },
        )
        return RotationResult(
            success=False,
            error=message,
            requires_reauth=requires_reauth,
            error_code="collaborator_failed",
        )

    # ------------------------------------------------------------------
    # Revocation / health
    # ------------------------------------------------------------------

    async def revoke_token(
        self,
        record_id: str,
        reason: str = "user_revoked",
        owner_user_id: Optional[str] = None,
    ) -> bool:
        """
        Soft-revoke a credential: status disconnected, secrets and expiry nulled.

        Idempotent: an already disconnected record returns True without a write.
        Returns False when the record does not exist.
        """
        row = await self._fetch(record_id, owner_user_id)
        if row is None:
            return False
        if row.status == CredentialStatus.DISCONNECTED.value:
            return True

        platform_metadata = dict(row.platform_metadata or {})
        platform_metadata["revokedAt"] = self._clock().isoformat()
        platform_metadata["reason"] = reason

        revoked = await self._repo.revoke(
            record_id,
            status=CredentialStatus.DISCONNECTED.value,
            platform_metadata=platform_metadata,
        )
        if revoked:
            logger.info(
                "Credential revoked",
                extra={"record_id": record_id, "platform": row.platform, "reason": reason},
            )
        return revoked

    async def validate_token_health(
        self,
        record_id: str,
        owner_user_id: Optional[str] = None,
    ) -> TokenHealth:
        opened = await self._open_by_id(record_id, owner_user_id)
        if opened is None:
            return TokenHealth.unavailable()
        return self._health(*opened, now=self._clock())

    async def owner_health_report(
        self,
        owner_user_id: str,
        organization_id: Optional[str] = None,
    ) -> OwnerHealthReport:
        now = self._clock()
        return OwnerHealthReport(entries=[
            OwnerHealthEntry(credential=credential, health=self._health(record, credential, now))
            for record, credential in await self._open_owner(owner_user_id, organization_id)
        ])

    def _health(
        self,
        record: CredentialRecord,
        credential: DecryptedCredential,
        now: datetime,
    ) -> TokenHealth:
        remaining = (credential.expires_at - now).total_seconds()
        is_expired = remaining <= 0
        return TokenHealth(
            is_valid=not is_expired and credential.is_active,
            is_expired=is_expired,
            needs_rotation=should_rotate(record.metadata, self._policy, now),
            days_until_expiry=max(0, math.ceil(remaining / SECONDS_PER_DAY)),
            last_rotated_at=credential.last_rotated_at,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        record_id: str,
        owner_user_id: Optional[str],
    ) -> Optional[SocialAccount]:
        row = await self._repo.get(record_id)
        if row is None:
            return None
        if owner_user_id is not None and row.user_id != owner_user_id:
            return None
        return row

    async def _open_by_id(
        self,
        record_id: str,
        owner_user_id: Optional[str],
    ) -> Optional[Opened]:
        row = await self._fetch(record_id, owner_user_id)
        return self._open(row) if row is not None else None

    async def _open_owner(
        self,
        owner_user_id: str,
        organization_id: Optional[str],
    ) -> list[Opened]:
        rows = await self._repo.list_by_owner(owner_user_id, organization_id)
        opened = []
        for row in rows:
            item = self._open(row)
            if item is not None:
                opened.append(item)
        return opened

    def _open(self, row: SocialAccount) -> Optional[Opened]:
        """Parse and decrypt one row; failures are logged and yield None."""
        try:
            record = CredentialRecord.from_row(row)
            if record.encrypted_access_token is None:
                return None
            access_token = self._engine.decrypt(record.encrypted_access_token, record.metadata)
            refresh_token = (
                self._engine.decrypt(record.encrypted_refresh_token, record.metadata)
                if record.encrypted_refresh_token
                else None
            )
        except DecryptionError as exc:
            self._log_unreadable(row.id, exc)
            return None

        metadata = record.metadata
        return record, DecryptedCredential(
            id=record.id,
            platform=record.platform,
            username=record.external_username,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=metadata.expires_at,
            scopes=sorted(metadata.scopes),
            status=record.status,
            last_rotated_at=metadata.last_rotated_at,
            rotation_count=metadata.rotation_count,
            organization_id=record.organization_id,
        )

    def _platform_metadata(
        self,
        metadata: TokenMetadata,
        blob: EncryptedBlob,
        base: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        platform_metadata = dict(base or {})
        platform_metadata.update({
            "tokenMetadata": metadata.to_dict(),
            "scopes": sorted(metadata.scopes),
            "encryptionVersion": blob.schema_version,
            "keyId": blob.key_id,
        })
        return platform_metadata

    @staticmethod
    def _log_unreadable(record_id: str, exc: Exception) -> None:
        logger.warning(
            "Credential could not be decrypted",
            extra={"record_id": record_id, "error_type": type(exc).__name__},
        )
