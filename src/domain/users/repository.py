from collections.abc import Callable
from typing import Any

from loguru import logger
from sqlalchemy import func, update
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import db_operation
from src.core.errors import ConflictError, ProviderError, UserNotFoundError
from src.domain.users.models import Listing, RoleAuditLog, UserRecord, utcnow


class UserRepository:
    """Narrow data-access interface over the user, content and audit tables.

    Every call runs under ``db_operation`` so failures surface as categorized
    provider errors and the synchronizer can retry the transient ones.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_user_by_external_id(self, external_id: str, include_deleted: bool = False) -> UserRecord | None:
        async with db_operation("find_user_by_external_id"):
            statement = select(UserRecord).where(UserRecord.external_id == external_id)
            if not include_deleted:
                statement = statement.where(UserRecord.is_deleted == False)  # noqa: E712
            result = await self.session.exec(statement)
            return result.first()

    async def save_user(self, user: UserRecord, expected_version: int | None = None) -> UserRecord:
        """Upserts a user record and bumps its version.

        Args:
            user: The record to persist (new or already loaded through this session).
            expected_version: When supplied, the write only succeeds if the stored
                version still equals this value.

        Raises:
            ConflictError: A concurrent writer bumped the version first.
        """
        async with db_operation("save_user"):
            if expected_version is not None and user.id is not None:
                # Rollback expires the instance; its attributes cannot be read afterwards
                external_id = user.external_id
                result = await self.session.execute(
                    update(UserRecord)
                    .where(col(UserRecord.id) == user.id, col(UserRecord.version) == expected_version)
                    .values(version=expected_version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await self.session.rollback()
                    logger.warning(f"Version conflict saving {external_id}: expected v{expected_version}")
                    raise ConflictError(
                        f"User {external_id} was modified concurrently (expected version {expected_version})"
                    )
                user.version = expected_version + 1
            else:
                user.version = (user.version or 0) + 1

            user.updated_at = utcnow()
            self.session.add(user)
            await self.session.commit()
            await self.session.refresh(user)
            return user

    async def update_user(
        self,
        external_id: str,
        mutate: Callable[[UserRecord], None],
        expected_version: int | None = None,
    ) -> UserRecord:
        """Loads, mutates and saves one user as a single retryable unit.

        A failed attempt rolls the session back, so the next attempt re-applies
        ``mutate`` to freshly loaded state instead of a half-flushed object.

        Raises:
            UserNotFoundError: No live record exists for the id.
            ConflictError: ``expected_version`` no longer matches.
        """
        try:
            user = await self.find_user_by_external_id(external_id)
            if user is None:
                raise UserNotFoundError(external_id)
            mutate(user)
            return await self.save_user(user, expected_version=expected_version)
        except ProviderError:
            await self.session.rollback()
            raise

    async def soft_delete_user(self, external_id: str) -> bool:
        def _mark_deleted(user: UserRecord) -> None:
            user.is_deleted = True
            user.deleted_at = utcnow()

        try:
            await self.update_user(external_id, _mark_deleted)
        except UserNotFoundError:
            return False
        return True

    async def update_many_content_by_author(self, author_id: str, snapshot: dict[str, Any]) -> int:
        """Rewrites the denormalized author snapshot on every listing by this author."""
        async with db_operation("update_many_content_by_author"):
            result = await self.session.execute(
                update(Listing)
                .where(col(Listing.author_id) == author_id)
                .values(author_snapshot=snapshot, last_sync=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount or 0

    async def list_users(self, limit: int = 100, offset: int = 0, include_deleted: bool = False) -> list[UserRecord]:
        async with db_operation("list_users"):
            statement = select(UserRecord).order_by(col(UserRecord.id)).offset(offset).limit(limit)
            if not include_deleted:
                statement = statement.where(UserRecord.is_deleted == False)  # noqa: E712
            result = await self.session.exec(statement)
            return list(result.all())

    async def append_audit(self, entry: RoleAuditLog) -> RoleAuditLog:
        async with db_operation("append_audit"):
            self.session.add(entry)
            await self.session.commit()
            await self.session.refresh(entry)
            return entry

    async def list_audit(
        self, user_id: str | None = None, page: int = 1, page_size: int = 20
    ) -> tuple[list[RoleAuditLog], int]:
        async with db_operation("list_audit"):
            statement = select(RoleAuditLog)
            count_statement = select(func.count()).select_from(RoleAuditLog)
            if user_id:
                statement = statement.where(RoleAuditLog.user_id == user_id)
                count_statement = count_statement.where(RoleAuditLog.user_id == user_id)

            total = (await self.session.exec(count_statement)).one()
            statement = (
                statement.order_by(col(RoleAuditLog.timestamp).desc(), col(RoleAuditLog.id).desc())
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            rows = (await self.session.exec(statement)).all()
            return list(rows), total
