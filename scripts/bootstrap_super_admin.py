"""Mints a super admin outside the transition matrix.

Role transitions can never produce ``super_admin``; this operator script is the
only path. It provisions the user from the identity provider if needed, writes
the role to both systems and leaves an audit row.

Usage:
    python -m scripts.bootstrap_super_admin <user_id> [--reason "..."]
"""

import argparse
import asyncio

from loguru import logger

from src.core.clients import HTTPClientManager, IdentityProviderClient
from src.core.database import async_session_maker, init_db
from src.core.logger import configure_logging
from src.domain.permissions.cache import PermissionCache
from src.domain.roles.sync import RoleSynchronizer, append_sync_history
from src.domain.roles.taxonomy import Role, coerce_role
from src.domain.users.models import RoleAuditLog, SyncStatus, UserRecord, utcnow
from src.domain.users.repository import UserRepository


async def bootstrap_super_admin(user_id: str, reason: str) -> None:
    await init_db()
    async with async_session_maker() as session:
        repository = UserRepository(session)
        synchronizer = RoleSynchronizer(repository, IdentityProviderClient(), PermissionCache())

        record = await synchronizer.load_record(user_id)
        if record is None:
            logger.info(f"{user_id} has no local record; provisioning from identity")
            await synchronizer.full_user_sync(user_id)
            record = await synchronizer.load_record(user_id)
        if record is None:
            raise SystemExit(f"User {user_id} is soft-deleted and cannot be bootstrapped")

        previous_role, previous_approved = coerce_role(record.role), record.approved
        if previous_role == Role.SUPER_ADMIN:
            logger.info(f"{user_id} is already a super admin")
            return

        def _promote(user: UserRecord) -> None:
            user.role = Role.SUPER_ADMIN.value
            user.approved = True
            user.role_change_history = [
                *(user.role_change_history or []),
                {
                    "from": previous_role.value,
                    "to": Role.SUPER_ADMIN.value,
                    "previousApproved": previous_approved,
                    "approved": True,
                    "changedAt": utcnow().isoformat(),
                    "changedBy": "bootstrap",
                    "reason": reason,
                },
            ]
            append_sync_history(user, SyncStatus.SUCCESS, source="bootstrap")

        await synchronizer.update_record(user_id, _promote)
        await synchronizer.push_role_to_identity(user_id, Role.SUPER_ADMIN, True, source="bootstrap")
        await repository.append_audit(
            RoleAuditLog(
                user_id=user_id,
                previous_role=previous_role.value,
                new_role=Role.SUPER_ADMIN.value,
                previous_approved=previous_approved,
                new_approved=True,
                acting_admin_id=None,
                reason=reason,
            )
        )
        logger.info(f"{user_id} promoted from {previous_role.value} to super_admin")


async def main() -> None:
    parser = argparse.ArgumentParser(description="Promote a user to super_admin in both systems.")
    parser.add_argument("user_id", help="Identity provider user id")
    parser.add_argument("--reason", default="Initial super admin bootstrap")
    args = parser.parse_args()

    configure_logging()
    try:
        await bootstrap_super_admin(args.user_id, args.reason)
    finally:
        await HTTPClientManager.teardown()


if __name__ == "__main__":
    asyncio.run(main())
