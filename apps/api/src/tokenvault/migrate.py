"""
tokenvault-migrate: encrypt social account tokens stored before envelope encryption.

Usage:
    tokenvault-migrate [--dry-run] [--batch-size N]

Each legacy row gets fresh token metadata (90-day lifetime, no scopes) and both
tokens are sealed under it. Rows are paged by id, so a failing row is reported
once and never retried within the same run.

Exit codes: 0=all rows migrated or skipped, 1=configuration error or any row failed
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .core.config import NINETY_DAYS_SECONDS, settings
from .core.crypto import CryptoEngine, EncryptedBlob, load_default_engine
from .core.database import create_engine, create_session_factory
from .core.errors import ConfigurationError, DecryptionError, TokenVaultError
from .core.logging import get_logger, setup_logging
from .core.metadata import TokenMetadata, utcnow
from .models import SocialAccount
from .repositories import AccountRepository

logger = get_logger(__name__)

MIGRATION_SOURCE = "legacy_unencrypted"
MAX_REPORTED_ERRORS = 10


@dataclass
class MigrationReport:
    processed: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


def is_encrypted_envelope(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        EncryptedBlob.from_json(value)
    except DecryptionError:
        return False
    return True


class LegacyTokenMigrator:
    """Seals plaintext tokens of legacy rows in place."""

    def __init__(
        self,
        engine: CryptoEngine,
        repository: AccountRepository,
        lifetime_seconds: int = NINETY_DAYS_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._repo = repository
        self._lifetime_seconds = lifetime_seconds
        self._clock = clock

    async def run(self, batch_size: int = 100, dry_run: bool = False) -> MigrationReport:
        report = MigrationReport()
        after_id: Optional[str] = None

        while True:
            rows = await self._repo.list_legacy_plaintext(batch_size, after_id=after_id)
            if not rows:
                break

            for row in rows:
                report.processed += 1
                try:
                    migrated = await self._migrate_row(row, dry_run)
                except TokenVaultError as exc:
                    report.failed += 1
                    report.errors.append(f"{row.id} ({row.platform}): {type(exc).__name__}")
                    logger.error(
                        "Legacy token migration failed",
                        extra={
                            "record_id": row.id,
                            "platform": row.platform,
                            "error_type": type(exc).__name__,
                        },
                    )
                    continue

                if migrated:
                    report.migrated += 1
                else:
                    report.skipped += 1

            after_id = rows[-1].id
            logger.info(
                "Migration batch processed",
                extra={"processed": report.processed, "dry_run": dry_run},
            )

        return report

    async def _migrate_row(self, row: SocialAccount, dry_run: bool) -> bool:
        if is_encrypted_envelope(row.access_token):
            return False

        now = self._clock()
        metadata = TokenMetadata.issue(row.platform, self._lifetime_seconds, (), now=now)
        access_blob = self._engine.encrypt(row.access_token, metadata)
        refresh_blob = (
            self._engine.encrypt(row.refresh_token, metadata)
            if row.refresh_token and not is_encrypted_envelope(row.refresh_token)
            else None
        )

        if dry_run:
            logger.info(
                "[DRY RUN] Would encrypt legacy token",
                extra={"record_id": row.id, "platform": row.platform, "username": row.username},
            )
            return True

        platform_metadata = dict(row.platform_metadata or {})
        platform_metadata.update({
            "tokenMetadata": metadata.to_dict(),
            "scopes": [],
            "encryptionVersion": access_blob.schema_version,
            "keyId": access_blob.key_id,
            "migratedAt": now.isoformat(),
            "migrationSource": MIGRATION_SOURCE,
        })

        replaced = await self._repo.replace_tokens(
            row.id,
            expected_access_token=row.access_token,
            access_token=access_blob.to_json(),
            refresh_token=refresh_blob.to_json() if refresh_blob else None,
            token_expires_at=metadata.expires_at,
            platform_metadata=platform_metadata,
        )
        if replaced:
            logger.info(
                "Legacy token encrypted",
                extra={"record_id": row.id, "platform": row.platform, "username": row.username},
            )
        return replaced


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokenvault-migrate",
        description="Encrypt social account tokens stored as plaintext",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--batch-size", type=int, default=100, help="Rows fetched per batch (default: 100)")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    return parser


def print_report(report: MigrationReport, dry_run: bool) -> None:
    print("=" * 50)
    print("MIGRATION SUMMARY" + (" (dry run)" if dry_run else ""))
    print("=" * 50)
    print(f"Rows processed:  {report.processed}")
    print(f"Migrated:        {report.migrated}")
    print(f"Skipped:         {report.skipped}")
    print(f"Failed:          {report.failed}")
    if report.errors:
        print("\nErrors encountered:")
        for error in report.errors[:MAX_REPORTED_ERRORS]:
            print(f"  - {error}")
        if len(report.errors) > MAX_REPORTED_ERRORS:
            print(f"  ... and {len(report.errors) - MAX_REPORTED_ERRORS} more errors")


async def run_migration(
    engine: CryptoEngine,
    database_url: str,
    batch_size: int,
    dry_run: bool,
) -> MigrationReport:
    db_engine = create_engine(database_url)
    try:
        repository = AccountRepository(
            create_session_factory(db_engine), timeout=settings.STORE_TIMEOUT_SECONDS
        )
        return await LegacyTokenMigrator(engine, repository).run(batch_size, dry_run)
    finally:
        await db_engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=settings.LOG_LEVEL, format_style="standard")

    if args.batch_size <= 0:
        print("Error: --batch-size must be positive", file=sys.stderr)
        return 1

    try:
        engine = load_default_engine(settings)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    health = engine.health_status()
    if health.key_source == "ephemeral" and not args.dry_run:
        print("Error: refusing to migrate with an ephemeral key; set ENCRYPTION_MASTER_KEY", file=sys.stderr)
        return 1

    report = asyncio.run(run_migration(
        engine,
        args.database_url or settings.DATABASE_URL,
        args.batch_size,
        args.dry_run,
    ))
    print_report(report, args.dry_run)
    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
