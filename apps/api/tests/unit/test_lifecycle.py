"""Tests for CredentialLifecycleManager."""
import asyncio
import json
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from tokenvault.connectors import RefresherRegistry, RefreshOutcome
from tokenvault.core.crypto import EncryptedBlob
from tokenvault.core.errors import CollaboratorError, StorageError
from tokenvault.core.metadata import TokenMetadata
from tokenvault.core.policy import RotationPolicy
from tokenvault.core.records import CredentialStatus
from tokenvault.services import CredentialLifecycleManager

OWNER = "user-1"
NINETY_DAYS = 90 * 24 * 60 * 60


async def _store(manager, refresh_token="refresh-token-1", **overrides):
    values = {
        "organization_id": None,
        "platform": "instagram",
        "username": "shop",
        "access_token": "access-token-1",
        "refresh_token": refresh_token,
        "expires_in_seconds": NINETY_DAYS,
        "scopes": ["basic"],
    }
    values.update(overrides)
    return await manager.store_token(OWNER, **values)


class TestStoreAndRead:

    @pytest.mark.asyncio
    async def test_store_encrypts_tokens_at_rest(self, manager, repository):
        record_id = await _store(manager)

        row = await repository.get(record_id)
        assert "access-token-1" not in row.access_token
        assert "refresh-token-1" not in row.refresh_token
        assert EncryptedBlob.from_json(row.access_token).schema_version == "2.0"
        assert row.status == "connected"
        assert row.platform_metadata["tokenMetadata"]["platform"] == "instagram"
        assert row.platform_metadata["scopes"] == ["basic"]
        assert row.platform_metadata["encryptionVersion"] == "2.0"

    @pytest.mark.asyncio
    async def test_get_token_decrypts(self, manager):
        record_id = await _store(manager)

        credential = await manager.get_token(record_id)

        assert credential.access_token == "access-token-1"
        assert credential.refresh_token == "refresh-token-1"
        assert credential.scopes == ["basic"]
        assert credential.status is CredentialStatus.CONNECTED
        assert credential.rotation_count == 0
        assert "access-token-1" not in repr(credential)

    @pytest.mark.asyncio
    async def test_store_without_refresh_token(self, manager):
        record_id = await _store(manager, refresh_token=None)

        credential = await manager.get_token(record_id)
        assert credential.refresh_token is None

    @pytest.mark.asyncio
    async def test_store_defaults_lifetime_to_policy(self, manager, clock):
        record_id = await _store(manager, expires_in_seconds=None)

        credential = await manager.get_token(record_id)
        assert credential.expires_at == clock.now + timedelta(seconds=NINETY_DAYS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"platform": ""}, {"username": ""}, {"access_token": ""}, {"expires_in_seconds": -1}],
    )
    async def test_store_rejects_invalid_input(self, manager, overrides):
        with pytest.raises(ValueError):
            await _store(manager, **overrides)

    @pytest.mark.asyncio
    async def test_store_propagates_storage_failure(self, manager, repository, caplog):
        repository.insert = AsyncMock(side_effect=StorageError("insert failed"))

        with caplog.at_level(logging.ERROR), pytest.raises(StorageError):
            await _store(manager)

        assert "access-token-1" not in caplog.text

    @pytest.mark.asyncio
    async def test_get_missing_or_foreign_token(self, manager):
        record_id = await _store(manager)

        assert await manager.get_token("missing") is None
        assert await manager.get_token(record_id, owner_user_id="someone-else") is None
        assert await manager.get_token(record_id, owner_user_id=OWNER) is not None

    @pytest.mark.asyncio
    async def test_tampered_metadata_is_not_decrypted(self, manager, repository, caplog):
        record_id = await _store(manager)
        row = await repository.get(record_id)
        tampered = dict(row.platform_metadata)
        tampered["tokenMetadata"] = {**tampered["tokenMetadata"], "scopes": ["admin"]}
        await repository.update_tokens(
            record_id,
            expected_version=row.version,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            token_expires_at=row.token_expires_at,
            platform_metadata=tampered,
        )

        with caplog.at_level(logging.WARNING):
            assert await manager.get_token(record_id) is None

        assert "Credential could not be decrypted" in caplog.text

    @pytest.mark.asyncio
    async def test_record_written_by_a_clock_running_ahead(
        self, manager, crypto_engine, refresher, repository, clock
    ):
        clock.advance(seconds=2)
        record_id = await _store(manager)
        reader = CredentialLifecycleManager(
            crypto_engine,
            repository,
            RefresherRegistry({"instagram": refresher}),
        )

        credential = await reader.get_token(record_id)
        health = await reader.validate_token_health(record_id)
        result = await reader.rotate_token(record_id)

        assert credential is not None
        assert credential.access_token == "access-token-1"
        assert (health.is_valid, health.is_expired, health.needs_rotation) == (True, False, False)
        assert result.success is True
        assert (await repository.get(record_id)).status == "connected"

    @pytest.mark.asyncio
    async def test_list_owner_tokens_isolates_bad_records(self, manager, repository):
        good_id = await _store(manager, username="good")
        bad_id = await _store(manager, username="bad")
        await manager.store_token("user-2", None, "instagram", "other", "tok")
        await repository.set_status(bad_id, "not-a-status")

        tokens = await manager.list_owner_tokens(OWNER)

        assert [t.id for t in tokens] == [good_id]


class TestNeedsRotation:

    @pytest.mark.asyncio
    async def test_threshold(self, manager, clock):
        manager.update_rotation_policy(rotation_threshold_percent=20)
        record_id = await _store(manager, expires_in_seconds=100)

        clock.advance(seconds=50)
        assert await manager.needs_rotation(record_id) is False
        clock.advance(seconds=31)
        assert await manager.needs_rotation(record_id) is True
        clock.advance(seconds=19)
        assert await manager.needs_rotation(record_id) is True

    @pytest.mark.asyncio
    async def test_absent_revoked_or_disabled(self, manager, clock):
        record_id = await _store(manager, expires_in_seconds=100)
        clock.advance(seconds=100)

        assert await manager.needs_rotation("missing") is False

        manager.update_rotation_policy(auto_rotate_enabled=False)
        assert await manager.needs_rotation(record_id) is False

        manager.update_rotation_policy(auto_rotate_enabled=True)
        await manager.revoke_token(record_id)
        assert await manager.needs_rotation(record_id) is False

    @pytest.mark.asyncio
    async def test_unparseable_metadata_is_skipped_but_flagged_by_health(self, manager, repository):
        record_id = await _store(manager)
        row = await repository.get(record_id)
        broken = dict(row.platform_metadata)
        broken["tokenMetadata"] = {**broken["tokenMetadata"], "rotationCount": -1}
        await repository.update_tokens(
            record_id,
            expected_version=row.version,
            access_token=row.access_token,
            refresh_token=row.refresh_token,
            token_expires_at=row.token_expires_at,
            platform_metadata=broken,
        )

        assert await manager.needs_rotation(record_id) is False
        health = await manager.validate_token_health(record_id)
        assert (health.is_valid, health.needs_rotation) == (False, True)

    @pytest.mark.asyncio
    async def test_list_tokens_needing_rotation(self, manager, clock):
        soon = await _store(manager, username="soon", expires_in_seconds=100)
        await _store(manager, username="later", expires_in_seconds=NINETY_DAYS)
        clock.advance(seconds=90)

        due = await manager.list_tokens_needing_rotation(OWNER)

        assert [c.id for c in due] == [soon]

    @pytest.mark.asyncio
    async def test_update_rotation_policy_rejects_unknown_field(self, manager):
        with pytest.raises(TypeError):
            manager.update_rotation_policy(nonsense=1)
        assert manager.rotation_policy == RotationPolicy()


class TestRotate:

    @pytest.mark.asyncio
    async def test_successful_rotation(self, manager, refresher, clock):
        record_id = await _store(manager)
        clock.advance(days=80)

        result = await manager.rotate_token(record_id)

        assert result.success is True
        assert result.new_expires_at == clock.now + timedelta(seconds=NINETY_DAYS)
        refresher.refresh.assert_awaited_once_with("refresh-token-1")

        credential = await manager.get_token(record_id)
        assert credential.access_token == "new-access-token"
        assert credential.refresh_token == "new-refresh-token"
        assert credential.rotation_count == 1
        assert credential.last_rotated_at == clock.now

    @pytest.mark.asyncio
    async def test_rotation_uses_platform_expiry(self, manager, refresher, clock):
        record_id = await _store(manager)
        platform_expiry = clock.now + timedelta(days=60)
        refresher.refresh.return_value = RefreshOutcome(
            success=True, new_access_token="next", new_expires_at=platform_expiry
        )

        result = await manager.rotate_token(record_id)

        assert result.new_expires_at == platform_expiry

    @pytest.mark.asyncio
    async def test_existing_refresh_token_is_kept(self, manager, refresher, repository):
        record_id = await _store(manager)
        before = (await repository.get(record_id)).refresh_token
        refresher.refresh.return_value = RefreshOutcome(success=True, new_access_token="next")

        assert (await manager.rotate_token(record_id)).success

        row = await repository.get(record_id)
        assert row.refresh_token != before
        credential = await manager.get_token(record_id)
        assert credential.refresh_token == "refresh-token-1"
        assert row.platform_metadata["lastRotation"]

    @pytest.mark.asyncio
    async def test_no_refresh_token_requires_reauth(self, manager, refresher, repository):
        record_id = await _store(manager, refresh_token=None)

        result = await manager.rotate_token(record_id)

        assert result.success is False
        assert result.requires_reauth is True
        assert result.error_code == "reauth_required"
        refresher.refresh.assert_not_called()
        assert (await repository.get(record_id)).status == "reauth_required"

    @pytest.mark.asyncio
    async def test_missing_and_revoked(self, manager, refresher):
        record_id = await _store(manager)
        await manager.revoke_token(record_id)

        assert (await manager.rotate_token("missing")).error_code == "not_found"
        assert (await manager.rotate_token(record_id)).error_code == "inactive"
        refresher.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_foreign_owner_is_not_found(self, manager, refresher):
        record_id = await _store(manager)

        result = await manager.rotate_token(record_id, owner_user_id="someone-else")

        assert result.error_code == "not_found"
        refresher.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_platform_failure_leaves_record_untouched(self, manager, refresher, repository):
        record_id = await _store(manager)
        before = await repository.get(record_id)
        refresher.refresh.return_value = RefreshOutcome.failed(
            "instagram token refresh failed: 401", requires_reauth=True
        )

        result = await manager.rotate_token(record_id)

        assert result.success is False
        assert result.requires_reauth is True
        assert result.error == "instagram token refresh failed: 401"
        after = await repository.get(record_id)
        assert after.version == before.version
        assert after.access_token == before.access_token
        assert after.status == "connected"

    @pytest.mark.asyncio
    async def test_refresher_exception_is_contained(self, manager, refresher):
        record_id = await _store(manager)
        refresher.refresh.side_effect = CollaboratorError("platform unavailable")

        result = await manager.rotate_token(record_id)

        assert result.success is False
        assert result.error == "platform unavailable"
        assert result.error_code == "collaborator_failed"

    @pytest.mark.asyncio
    async def test_refresher_timeout(self, manager, refresher, repository):
        record_id = await _store(manager)

        async def hang(_token):
            await asyncio.sleep(10)

        refresher.refresh.side_effect = hang

        result = await manager.rotate_token(record_id)

        assert result.success is False
        assert result.error_code == "timeout"
        assert (await repository.get(record_id)).version == 1

    @pytest.mark.asyncio
    async def test_unknown_platform_requires_reauth(self, manager):
        record_id = await _store(manager, platform="myspace")

        result = await manager.rotate_token(record_id)

        assert result.success is False
        assert result.requires_reauth is True

    @pytest.mark.asyncio
    async def test_corrupted_blob_marks_error(self, manager, refresher, repository):
        record_id = await _store(manager)
        row = await repository.get(record_id)
        blob = json.loads(row.refresh_token)
        blob["authTag"] = "00" * 16
        await repository.update_tokens(
            record_id,
            expected_version=row.version,
            access_token=row.access_token,
            refresh_token=json.dumps(blob),
            token_expires_at=row.token_expires_at,
            platform_metadata=row.platform_metadata,
        )

        result = await manager.rotate_token(record_id)

        assert result.error_code == "corrupted"
        assert (await repository.get(record_id)).status == "error"
        refresher.refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_rotations_rotate_once(self, manager, refresher):
        record_id = await _store(manager)
        refresher.refresh.return_value = RefreshOutcome(
            success=True, new_access_token="next", new_refresh_token="next-refresh"
        )

        results = await asyncio.gather(
            manager.rotate_token(record_id),
            manager.rotate_token(record_id),
        )

        assert all(r.success for r in results)
        credential = await manager.get_token(record_id)
        assert credential.rotation_count == 2
        # Second rotation saw the first one's refresh token
        assert refresher.refresh.await_args_list[1].args == ("next-refresh",)

    @pytest.mark.asyncio
    async def test_lost_compare_and_swap_is_a_conflict(self, manager, refresher, repository):
        record_id = await _store(manager)

        async def rotate_elsewhere(_token):
            row = await repository.get(record_id)
            await repository.revoke(
                record_id, status="disconnected", platform_metadata=row.platform_metadata
            )
            return RefreshOutcome(success=True, new_access_token="next")

        refresher.refresh.side_effect = rotate_elsewhere

        result = await manager.rotate_token(record_id)

        assert result.success is False
        assert result.error_code == "conflict"
        assert (await repository.get(record_id)).status == "disconnected"

    @pytest.mark.asyncio
    async def test_rotation_never_logs_tokens(self, manager, caplog):
        record_id = await _store(manager)

        with caplog.at_level(logging.DEBUG):
            await manager.rotate_token(record_id)
            await manager.get_token(record_id)

        for secret in ("access-token-1", "refresh-token-1", "new-access-token", "new-refresh-token"):
            assert secret not in caplog.text


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_clears_secrets(self, manager, repository):
        record_id = await _store(manager)

        assert await manager.revoke_token(record_id, reason="security_incident") is True

        row = await repository.get(record_id)
        assert row.status == "disconnected"
        assert row.access_token is None
        assert row.refresh_token is None
        assert row.platform_metadata["reason"] == "security_incident"
        assert row.platform_metadata["revokedAt"]
        assert await manager.get_token(record_id) is None

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, manager, repository):
        record_id = await _store(manager)

        assert await manager.revoke_token(record_id) is True
        version = (await repository.get(record_id)).version
        assert await manager.revoke_token(record_id) is True
        assert (await repository.get(record_id)).version == version

    @pytest.mark.asyncio
    async def test_revoke_missing_or_foreign(self, manager):
        record_id = await _store(manager)

        assert await manager.revoke_token("missing") is False
        assert await manager.revoke_token(record_id, owner_user_id="someone-else") is False


class TestHealth:

    @pytest.mark.asyncio
    async def test_fresh_instagram_token_is_healthy(self, manager):
        record_id = await _store(manager, expires_in_seconds=NINETY_DAYS)

        health = await manager.validate_token_health(record_id)

        assert health.is_valid is True
        assert health.is_expired is False
        assert health.needs_rotation is False
        assert health.days_until_expiry == 90
        assert health.last_rotated_at is not None

    @pytest.mark.asyncio
    async def test_days_round_up_and_floor_at_zero(self, manager, clock):
        record_id = await _store(manager, expires_in_seconds=NINETY_DAYS)

        clock.advance(days=88, hours=12)
        assert (await manager.validate_token_health(record_id)).days_until_expiry == 2

        clock.advance(days=5)
        health = await manager.validate_token_health(record_id)
        assert health.days_until_expiry == 0
        assert health.is_expired is True
        assert health.is_valid is False
        assert health.needs_rotation is True

    @pytest.mark.asyncio
    async def test_unavailable_record(self, manager):
        health = await manager.validate_token_health("missing")

        assert (health.is_valid, health.is_expired, health.needs_rotation) == (False, True, True)
        assert health.days_until_expiry == 0
        assert health.last_rotated_at is None

    @pytest.mark.asyncio
    async def test_reauth_required_token_is_not_valid(self, manager):
        record_id = await _store(manager, refresh_token=None)
        await manager.rotate_token(record_id)

        health = await manager.validate_token_health(record_id)

        assert health.is_expired is False
        assert health.is_valid is False

    @pytest.mark.asyncio
    async def test_owner_health_report(self, manager, clock):
        await _store(manager, username="fresh", expires_in_seconds=NINETY_DAYS)
        await _store(manager, username="expiring", expires_in_seconds=3600)
        clock.advance(hours=2)

        report = await manager.owner_health_report(OWNER)

        assert report.total == 2
        assert report.healthy == 1
        assert report.expired == 1
        assert report.needs_rotation == 1


@pytest.mark.asyncio
async def test_manager_with_stub_repository_never_stores_plaintext(crypto_engine):
    stored = {}

    class _Row:
        id = "row-1"

    async def insert(**values):
        stored.update(values)
        return _Row()

    repository = AsyncMock()
    repository.insert.side_effect = insert
    manager = CredentialLifecycleManager(crypto_engine, repository, RefresherRegistry())

    record_id = await manager.store_token(OWNER, None, "linkedin", "me", "AQsecret", "AQrefresh")

    assert record_id == "row-1"
    assert "AQsecret" not in json.dumps(stored, default=str)
    metadata = TokenMetadata.from_dict(stored["platform_metadata"]["tokenMetadata"])
    blob = EncryptedBlob.from_json(stored["access_token"])
    assert crypto_engine.decrypt(blob, metadata) == "AQsecret"
