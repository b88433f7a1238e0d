"""Reconciles a user's identity-provider record with the database record.

Role and approval follow the precedence chosen by ``SyncDirection``; profile
fields (name, email, avatar) always flow identity -> database because the
identity provider owns them. Every external call is categorized by the client
or repository and retried through ``with_retry``.
"""

from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

from loguru import logger
from tenacity.wait import wait_base

from src.config.settings import settings
from src.core.clients import IdentityProviderClient, IdentityUser
from src.core.errors import (
    ConsistencyError,
    NotFoundError,
    ProviderError,
    RoleSystemError,
    UserNotFoundError,
)
from src.core.retry import with_retry
from src.domain.permissions.cache import PermissionCache
from src.domain.roles.taxonomy import Role, coerce_role, effective_approval, is_valid_role
from src.domain.users.models import SyncStatus, UserRecord, ensure_utc, utcnow
from src.domain.users.repository import UserRepository

NO_CHANGES_MESSAGE = "Roles already match, no changes needed"


class SyncDirection(StrEnum):
    DB_WINS = "db_wins"
    IDENTITY_WINS = "identity_wins"


@dataclass
class SyncResult:
    user_id: str
    direction: SyncDirection
    changed: bool
    role_changed: bool
    approval_changed: bool
    profile_changed: bool
    created: bool
    role: Role
    approved: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "userId": self.user_id,
            "direction": self.direction.value,
            "changed": self.changed,
            "changes": {
                "roleChanged": self.role_changed,
                "approvalChanged": self.approval_changed,
                "profileChanged": self.profile_changed,
                "created": self.created,
            },
            "role": self.role.value,
            "approved": self.approved,
            "message": self.message,
        }


@dataclass
class FullSyncResult:
    user_id: str
    created: bool
    profile_changed: bool
    content_updated: int
    attempts: int
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"success": not self.skipped, **asdict(self)}


def profile_from_identity(identity: IdentityUser) -> dict[str, Any]:
    return {
        "email": identity.primary_email,
        "first_name": identity.first_name,
        "last_name": identity.last_name,
        "profile_image": identity.image_url,
    }


def apply_profile(user: UserRecord, identity: IdentityUser) -> bool:
    """Copies identity-owned profile fields onto the record; True if anything changed."""
    changed = False
    for field, value in profile_from_identity(identity).items():
        if getattr(user, field) != value:
            setattr(user, field, value)
            changed = True
    return changed


def identity_role_state(identity: IdentityUser) -> tuple[Role, bool]:
    role = coerce_role(identity.metadata_role)
    return role, effective_approval(role, identity.metadata_approved)


def db_role_state(user: UserRecord) -> tuple[Role, bool]:
    role = coerce_role(user.role)
    return role, effective_approval(role, user.approved)


def append_sync_history(user: UserRecord, status: SyncStatus, source: str, error: str | None = None) -> None:
    entry = {"timestamp": utcnow().isoformat(), "status": status.value, "source": source, "error": error}
    # Reassign rather than append so the JSON column is marked dirty
    user.sync_history = [*(user.sync_history or []), entry][-settings.SYNC_HISTORY_LIMIT :]
    user.sync_status = status.value
    user.last_sync_error = error
    if status == SyncStatus.SUCCESS:
        user.last_synced = utcnow()


class RoleSynchronizer:
    def __init__(
        self,
        repository: UserRepository,
        identity: IdentityProviderClient,
        cache: PermissionCache,
        retry_wait: wait_base | None = None,
    ) -> None:
        self.repository = repository
        self.identity = identity
        self.cache = cache
        self.retry_wait = retry_wait

    async def _retry(self, operation: Callable[[], Any], op_name: str, max_attempts: int | None = None) -> Any:
        return await with_retry(operation, op_name=op_name, max_attempts=max_attempts, wait=self.retry_wait)

    async def fetch_identity(self, user_id: str) -> IdentityUser:
        try:
            return await self._retry(lambda: self.identity.get_user(user_id), op_name=f"identity.get_user({user_id})")
        except NotFoundError as e:
            raise UserNotFoundError(user_id, system="identity provider") from e

    async def load_record(self, user_id: str) -> UserRecord | None:
        return await self._retry(
            lambda: self.repository.find_user_by_external_id(user_id),
            op_name=f"db.find_user({user_id})",
        )

    async def update_record(
        self, user_id: str, mutate: Callable[[UserRecord], None], expected_version: int | None = None
    ) -> UserRecord:
        return await self._retry(
            lambda: self.repository.update_user(user_id, mutate, expected_version=expected_version),
            op_name=f"db.update_user({user_id})",
        )

    async def create_record(self, record: UserRecord) -> UserRecord:
        async def _create() -> UserRecord:
            try:
                return await self.repository.save_user(record)
            except ProviderError:
                await self.repository.session.rollback()
                raise

        return await self._retry(_create, op_name=f"db.create_user({record.external_id})")

    async def push_role_to_identity(self, user_id: str, role: Role, approved: bool, source: str) -> IdentityUser:
        """Merges role and approval into the identity provider's public metadata."""
        metadata = {
            "role": role.value,
            "approved": approved,
            "syncSource": source,
            "lastSyncedAt": utcnow().isoformat(),
        }
        logger.info(f"Pushing role {role.value} (approved={approved}) to identity for {user_id}")
        return await self._retry(
            lambda: self.identity.update_user_metadata(user_id, metadata),
            op_name=f"identity.update_user_metadata({user_id})",
        )

    async def reconcile(self, user_id: str, direction: SyncDirection) -> SyncResult:
        """Detects role/approval drift and resolves it in the given direction.

        Raises:
            UserNotFoundError: The user is missing from the identity provider, or
                from the database when the database is authoritative.
            ConsistencyError: Identity is authoritative but carries no role.
        """
        logger.info(f"Reconciling roles for {user_id} ({direction.value})")
        identity = await self.fetch_identity(user_id)
        record = await self.load_record(user_id)
        identity_role, identity_approved = identity_role_state(identity)

        if direction == SyncDirection.DB_WINS:
            if record is None:
                raise UserNotFoundError(user_id, system="database")
            target_role, target_approved = db_role_state(record)
        else:
            if identity.metadata_role is None:
                raise ConsistencyError(f"User {user_id} has no role defined in the identity provider")
            if not is_valid_role(identity.metadata_role):
                logger.warning(f"Identity role {identity.metadata_role!r} for {user_id} is unknown; using user")
            target_role, target_approved = identity_role, identity_approved

        if record is None:
            record = UserRecord(external_id=user_id, role=target_role.value, approved=target_approved)
            apply_profile(record, identity)
            append_sync_history(record, SyncStatus.SUCCESS, source=direction.value)
            await self.create_record(record)
            self.cache.invalidate(user_id)
            logger.info(f"Created database record for {user_id} from identity (role={target_role.value})")
            return SyncResult(
                user_id, direction, True, True, True, True, True, target_role, target_approved,
                "Database record created from identity provider",
            )

        db_role, db_approved = db_role_state(record)
        # A missing or unknown identity role coerces to user but still needs repairing
        identity_role_unset = direction == SyncDirection.DB_WINS and not is_valid_role(identity.metadata_role)
        role_changed = db_role != identity_role or identity_role_unset
        approval_changed = db_approved != identity_approved
        drift = role_changed or approval_changed
        profile_drift = any(getattr(record, k) != v for k, v in profile_from_identity(identity).items())
        pending_push = record.sync_status == SyncStatus.IDENTITY_PENDING.value

        if direction == SyncDirection.DB_WINS and (drift or pending_push):
            await self.push_role_to_identity(user_id, target_role, target_approved, source="database")

        if not (drift or profile_drift or pending_push):
            logger.debug(f"No drift for {user_id}")
            return SyncResult(
                user_id, direction, False, False, False, False, False, target_role, target_approved,
                NO_CHANGES_MESSAGE,
            )

        def _apply(user: UserRecord) -> None:
            apply_profile(user, identity)
            if direction == SyncDirection.IDENTITY_WINS and drift:
                user.role_change_history = [
                    *(user.role_change_history or []),
                    {
                        "from": db_role.value,
                        "to": target_role.value,
                        "approved": target_approved,
                        "changedAt": utcnow().isoformat(),
                        "changedBy": "identity_sync",
                        "reason": "Role synchronized from identity provider",
                    },
                ]
                user.role = target_role.value
                user.approved = target_approved
            if drift or pending_push:
                append_sync_history(user, SyncStatus.SUCCESS, source=direction.value)

        await self.update_record(user_id, _apply)
        if drift:
            self.cache.invalidate(user_id)
            logger.info(
                f"Resolved drift for {user_id} ({direction.value}): "
                f"db={db_role.value}/{db_approved} identity={identity_role.value}/{identity_approved}"
            )

        return SyncResult(
            user_id,
            direction,
            changed=drift or profile_drift,
            role_changed=role_changed,
            approval_changed=approval_changed,
            profile_changed=profile_drift,
            created=False,
            role=target_role,
            approved=target_approved,
            message="Roles synchronized" if drift else "Profile synchronized",
        )

    async def sync_role_to_identity(self, user_id: str) -> SyncResult:
        return await self.reconcile(user_id, SyncDirection.DB_WINS)

    async def sync_role_from_identity(self, user_id: str) -> SyncResult:
        return await self.reconcile(user_id, SyncDirection.IDENTITY_WINS)

    async def apply_identity_role_update(self, user_id: str) -> SyncResult | None:
        """Adopts a role or approval edited directly in the identity provider.

        Skipped for users the worker has not provisioned yet and for records
        whose own change is still waiting to reach identity, where the database
        holds the newer state.
        """
        record = await self.load_record(user_id)
        if record is None:
            logger.debug(f"No database record for {user_id}; provisioning is left to the worker")
            return None
        if record.sync_status == SyncStatus.IDENTITY_PENDING.value:
            logger.info(f"Ignoring identity role update for {user_id}: a database change is pending push")
            return None

        try:
            return await self.reconcile(user_id, SyncDirection.IDENTITY_WINS)
        except ConsistencyError as e:
            logger.warning(f"Identity role update for {user_id} not applied: {e}")
            return None

    async def full_user_sync(self, user_id: str) -> FullSyncResult:
        """Upserts the profile from identity, records the outcome, then refreshes content snapshots.

        The role is taken from identity only when the record is created; after that
        role changes go through the orchestrator, ``apply_identity_role_update`` or an
        explicit reconcile.
        """
        attempts = 0

        async def _attempt() -> tuple[UserRecord, bool, bool]:
            nonlocal attempts
            attempts += 1
            try:
                return await self._sync_profile(user_id)
            except ProviderError as e:
                await self._record_failure(user_id, e)
                raise

        record, created, profile_changed = await with_retry(
            _attempt,
            op_name=f"full_user_sync({user_id})",
            max_attempts=settings.SYNC_MAX_RETRIES + 1,
            wait=self.retry_wait,
        )
        if record is None:
            return FullSyncResult(user_id, False, False, 0, attempts, skipped=True)

        content_updated = await self.refresh_content_snapshots(record)
        logger.info(
            f"Full sync for {user_id} complete (created={created}, profile_changed={profile_changed}, "
            f"listings={content_updated}, attempts={attempts})"
        )
        return FullSyncResult(user_id, created, profile_changed, content_updated, attempts)

    async def _sync_profile(self, user_id: str) -> tuple[UserRecord | None, bool, bool]:
        # Single call per attempt; full_user_sync owns the retry loop
        try:
            identity = await self.identity.get_user(user_id)
        except NotFoundError as e:
            raise UserNotFoundError(user_id, system="identity provider") from e
        record = await self.repository.find_user_by_external_id(user_id, include_deleted=True)

        if record is not None and record.is_deleted:
            logger.info(f"Skipping full sync for soft-deleted user {user_id}")
            return None, False, False

        if record is None:
            role, approved = identity_role_state(identity)
            record = UserRecord(external_id=user_id, role=role.value, approved=approved)
            apply_profile(record, identity)
            append_sync_history(record, SyncStatus.SUCCESS, source="identity")
            record = await self.repository.save_user(record)
            self.cache.invalidate(user_id)
            logger.info(f"Provisioned {user_id} from identity (role={role.value})")
            if not is_valid_role(identity.metadata_role):
                record = await self._seed_identity_role(record, role, approved)
            return record, True, True

        profile_changed = False

        def _apply(user: UserRecord) -> None:
            nonlocal profile_changed
            profile_changed = apply_profile(user, identity)
            append_sync_history(user, SyncStatus.SUCCESS, source="identity")

        record = await self.repository.update_user(user_id, _apply)
        return record, False, profile_changed

    async def _seed_identity_role(self, record: UserRecord, role: Role, approved: bool) -> UserRecord:
        """Writes the provisioned default role back to an identity record that had none."""
        user_id = record.external_id
        try:
            await self.push_role_to_identity(user_id, role, approved, source="provisioning")
            return record
        except (ProviderError, NotFoundError) as e:
            logger.error(f"Could not seed identity role for {user_id}; flagged for re-push: {e}")
            return await self.repository.update_user(
                user_id,
                lambda user: append_sync_history(user, SyncStatus.IDENTITY_PENDING, "provisioning", error=str(e)),
            )

    async def _record_failure(self, user_id: str, error: Exception) -> None:
        await self.repository.session.rollback()
        try:
            await self.repository.update_user(
                user_id, lambda user: append_sync_history(user, SyncStatus.FAILED, "identity", error=str(error))
            )
        except RoleSystemError as e:
            logger.warning(f"Could not record sync failure for {user_id}: {e}")

    async def refresh_content_snapshots(self, record: UserRecord) -> int:
        """Bounded fan-out of the author snapshot; failure is logged and reported as 0."""
        # Captured up front; a rollback below expires the record
        author_id = record.external_id
        snapshot = {
            "authorId": author_id,
            "name": record.full_name or None,
            "email": record.email,
            "image": record.profile_image,
            "role": coerce_role(record.role).value,
            "updatedAt": utcnow().isoformat(),
        }

        async def _update() -> int:
            try:
                return await self.repository.update_many_content_by_author(author_id, snapshot)
            except ProviderError:
                await self.repository.session.rollback()
                raise

        try:
            return await with_retry(
                _update,
                op_name=f"content_snapshot({author_id})",
                max_attempts=settings.CONTENT_SNAPSHOT_ATTEMPTS,
                wait=self.retry_wait,
            )
        except RoleSystemError as e:
            logger.error(f"Content snapshot update failed for {author_id}: {e}")
            return 0

    async def inspect(self, user_id: str) -> dict[str, Any]:
        """Both systems' view of a user plus the consistency verdict and suggested fixes."""
        try:
            identity: IdentityUser | None = await self.fetch_identity(user_id)
        except UserNotFoundError:
            identity = None
        record = await self.load_record(user_id)

        if identity is None and record is None:
            raise UserNotFoundError(user_id, system="either system")

        identity_view = {
            "exists": identity is not None,
            "role": identity.metadata_role if identity else None,
            "approved": identity.metadata_approved if identity else None,
            "email": identity.primary_email if identity else None,
            "firstName": identity.first_name if identity else None,
            "lastName": identity.last_name if identity else None,
        }
        database_view = {
            "exists": record is not None,
            "role": record.role if record else None,
            "approved": record.approved if record else None,
            "email": record.email if record else None,
            "firstName": record.first_name if record else None,
            "lastName": record.last_name if record else None,
            "syncStatus": record.sync_status if record else None,
            "lastSynced": ensure_utc(record.last_synced).isoformat() if record and record.last_synced else None,
            "version": record.version if record else None,
        }

        role_match = approval_match = False
        if identity is not None and record is not None:
            identity_role, identity_approved = identity_role_state(identity)
            db_role, db_approved = db_role_state(record)
            role_match = is_valid_role(identity.metadata_role) and identity_role == db_role
            approval_match = identity_approved == db_approved

        is_consistent = role_match and approval_match
        return {
            "userId": user_id,
            "identity": identity_view,
            "database": database_view,
            "roleMatch": role_match,
            "approvalMatch": approval_match,
            "isConsistent": is_consistent,
            "possibleFixActions": [] if is_consistent else self._fix_actions(user_id, identity, record),
        }

    @staticmethod
    def _fix_actions(user_id: str, identity: IdentityUser | None, record: UserRecord | None) -> list[dict[str, str]]:
        actions = []
        if record is not None and identity is not None:
            actions.append(
                {
                    "action": "sync_to_identity",
                    "description": "Push the database role and approval to the identity provider",
                    "endpoint": f"/api/v1/roles/sync-to-identity?userId={user_id}",
                }
            )
        if identity is not None and identity.metadata_role is not None:
            actions.append(
                {
                    "action": "sync_from_identity",
                    "description": "Overwrite the database role and approval from the identity provider",
                    "endpoint": f"/api/v1/roles/sync-from-identity?userId={user_id}",
                }
            )
        if record is None and identity is not None:
            actions.append(
                {
                    "action": "full_sync",
                    "description": "Create the database record from the identity provider",
                    "endpoint": f"/api/v1/roles/sync-user?userId={user_id}",
                }
            )
        return actions

    async def verify_consistency(
        self, limit: int = 100, auto_fix: bool = False, direction: SyncDirection = SyncDirection.DB_WINS
    ) -> dict[str, Any]:
        """Scans non-deleted database users and optionally repairs drift in one direction."""
        users = await self._retry(lambda: self.repository.list_users(limit=limit), op_name="db.list_users")
        summary: dict[str, Any] = {"checked": 0, "consistent": 0, "inconsistent": 0, "fixed": 0, "errors": 0}
        results = []

        for user in users:
            summary["checked"] += 1
            entry: dict[str, Any] = {"userId": user.external_id, "dbRole": user.role, "fixed": False}
            try:
                report = await self.inspect(user.external_id)
                entry.update(
                    identityRole=report["identity"]["role"],
                    roleMatch=report["roleMatch"],
                    approvalMatch=report["approvalMatch"],
                )
                if report["isConsistent"]:
                    summary["consistent"] += 1
                else:
                    summary["inconsistent"] += 1
                    if auto_fix and report["identity"]["exists"]:
                        result = await self.reconcile(user.external_id, direction)
                        if result.changed:
                            entry["fixed"] = True
                            summary["fixed"] += 1
            except RoleSystemError as e:
                summary["errors"] += 1
                entry["error"] = e.message
                logger.warning(f"Consistency check failed for {user.external_id}: {e}")
            results.append(entry)

        logger.info(
            f"Consistency scan: {summary['checked']} checked, {summary['inconsistent']} inconsistent, "
            f"{summary['fixed']} fixed, {summary['errors']} errors"
        )
        return {**summary, "autoFix": auto_fix, "direction": direction.value, "results": results}
