from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Optional, TypeVar

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.errors import ConcurrentRotationError, StorageError, StorageTimeoutError
from ..core.logging import get_logger
from ..models import SocialAccount

logger = get_logger(__name__)

T = TypeVar("T")


class AccountRepository:
    """Persistence for social account rows. Knows nothing about encryption.

    Every call is bounded by `timeout` seconds; driver failures surface as
    StorageError and timeouts as StorageTimeoutError.
    """

    def __init__(self, session_factory: async_sessionmaker, timeout: float = 5.0):
        self._session_factory = session_factory
        self._timeout = timeout

    async def _bounded(self, operation: str, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error(
                "Account store timed out",
                extra={"operation": operation, "timeout_seconds": self._timeout},
            )
            raise StorageTimeoutError(f"{operation} timed out after {self._timeout}s") from exc
        except SQLAlchemyError as exc:
            logger.error(
                "Account store failure",
                extra={"operation": operation, "error_type": type(exc).__name__},
            )
            raise StorageError(f"{operation} failed") from exc

    async def insert(
        self,
        *,
        user_id: str,
        organization_id: Optional[str],
        platform: str,
        username: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: datetime,
        status: str,
        platform_metadata: dict[str, Any],
    ) -> SocialAccount:
        async def _insert() -> SocialAccount:
            async with self._session_factory() as session:
                row = SocialAccount(
                    user_id=user_id,
                    organization_id=organization_id,
                    platform=platform,
                    username=username,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=token_expires_at,
                    status=status,
                    platform_metadata=platform_metadata,
                    version=1,
                )
                session.add(row)
                await session.commit()
                return row

        return await self._bounded("insert", _insert())

    async def get(self, account_id: str) -> Optional[SocialAccount]:
        async def _get() -> Optional[SocialAccount]:
            async with self._session_factory() as session:
                return await session.get(SocialAccount, account_id)

        return await self._bounded("get", _get())

    async def list_by_owner(
        self,
        user_id: str,
        organization_id: Optional[str] = None,
    ) -> list[SocialAccount]:
        async def _list() -> list[SocialAccount]:
            async with self._session_factory() as session:
                query = select(SocialAccount).where(SocialAccount.user_id == user_id)
                if organization_id:
                    query = query.where(SocialAccount.organization_id == organization_id)
                result = await session.execute(query.order_by(SocialAccount.created_at))
                return list(result.scalars().all())

        return await self._bounded("list_by_owner", _list())

    async def list_legacy_plaintext(
        self,
        limit: int,
        after_id: Optional[str] = None,
    ) -> list[SocialAccount]:
        """Rows whose access token predates envelope encryption."""
        async def _list() -> list[SocialAccount]:
            async with self._session_factory() as session:
                query = select(SocialAccount).where(
                    SocialAccount.access_token.is_not(None),
                    or_(
                        ~SocialAccount.access_token.startswith("{"),
                        ~SocialAccount.access_token.contains('"encrypted"'),
                    ),
                )
                if after_id:
                    query = query.where(SocialAccount.id > after_id)
                result = await session.execute(
                    query.order_by(SocialAccount.id).limit(limit)
                )
                return list(result.scalars().all())

        return await self._bounded("list_legacy_plaintext", _list())

    async def update_tokens(
        self,
        account_id: str,
        *,
        expected_version: int,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: datetime,
        platform_metadata: dict[str, Any],
        status: Optional[str] = None,
    ) -> None:
        """Compare-and-swap token write.

        Raises ConcurrentRotationError when the row's version moved on since
        it was read.
        """
        values: dict[str, Any] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_expires_at": token_expires_at,
            "platform_metadata": platform_metadata,
            "version": expected_version + 1,
        }
        if status is not None:
            values["status"] = status

        async def _update() -> int:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(SocialAccount)
                    .where(
                        SocialAccount.id == account_id,
                        SocialAccount.version == expected_version,
                    )
                    .values(**values)
                )
                await session.commit()
                return result.rowcount

        if await self._bounded("update_tokens", _update()) != 1:
            raise ConcurrentRotationError(
                f"account {account_id} changed since version {expected_version}"
            )

    async def replace_tokens(
        self,
        account_id: str,
        *,
        expected_access_token: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expires_at: datetime,
        platform_metadata: dict[str, Any],
    ) -> bool:
        """Overwrite a legacy row's tokens, only if they are still the ones read."""
        async def _replace() -> bool:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(SocialAccount)
                    .where(
                        SocialAccount.id == account_id,
                        SocialAccount.access_token == expected_access_token,
                    )
                    .values(
                        access_token=access_token,
                        refresh_token=refresh_token,
                        token_expires_at=token_expires_at,
                        platform_metadata=platform_metadata,
                        version=SocialAccount.version + 1,
                    )
                )
                await session.commit()
                return result.rowcount == 1

        return await self._bounded("replace_tokens", _replace())

    async def set_status(self, account_id: str, status: str) -> bool:
        async def _set() -> bool:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(SocialAccount)
                    .where(SocialAccount.id == account_id)
                    .values(status=status)
                )
                await session.commit()
                return result.rowcount == 1

        return await self._bounded("set_status", _set())

    async def revoke(
        self,
        account_id: str,
        *,
        status: str,
        platform_metadata: dict[str, Any],
    ) -> bool:
        async def _revoke() -> bool:
            async with self._session_factory() as session:
                row = await session.get(SocialAccount, account_id)
                if row is None:
                    return False
                row.status = status
                row.access_token = None
                row.refresh_token = None
                row.token_expires_at = None
                row.platform_metadata = platform_metadata
                row.version = (row.version or 0) + 1
                await session.commit()
                return True

        return await self._bounded("revoke", _revoke())
