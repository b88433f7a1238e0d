from dataclasses import dataclass
from typing import Any

from loguru import logger

from src.core.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    RoleSystemError,
    UserNotFoundError,
)
from src.core.retry import with_retry
from src.domain.roles.resolver import resolve
from src.domain.roles.sync import RoleSynchronizer, append_sync_history, db_role_state
from src.domain.roles.taxonomy import Role, is_valid_role, role_index
from src.domain.roles.transitions import can_change_role
from src.domain.users.models import RoleAuditLog, SyncStatus, UserRecord, utcnow

NO_CHANGES_MESSAGE = "No changes needed"


@dataclass
class RoleChangeResult:
    user_id: str
    previous_role: Role
    new_role: Role
    previous_approved: bool
    approved: bool
    changed: bool
    role_changed: bool
    approval_changed: bool
    identity_synced: bool
    audit_recorded: bool
    message: str
    version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "userId": self.user_id,
            "previousRole": self.previous_role.value,
            "newRole": self.new_role.value,
            "approved": self.approved,
            "changed": self.changed,
            "changes": {"roleChanged": self.role_changed, "approvalChanged": self.approval_changed},
            "identitySynced": self.identity_synced,
            "auditRecorded": self.audit_recorded,
            "version": self.version,
            "message": self.message,
        }


def resolve_new_approval(new_role: Role, requested: bool | None, current_role: Role, current_approved: bool) -> bool:
    """Approval is derived from the target role; only agents take the caller's flag."""
    if new_role == Role.AGENT:
        if requested is None:
            return current_approved if current_role == Role.AGENT else False
        return requested is True
    return new_role != Role.AGENT_PENDING


class RoleChangeService:
    """The role write path: validate, persist, push to identity, invalidate, audit."""

    def __init__(self, synchronizer: RoleSynchronizer) -> None:
        self.synchronizer = synchronizer
        self.repository = synchronizer.repository
        self.cache = synchronizer.cache

    async def change_user_role(
        self,
        user_id: str,
        new_role: str,
        approved: bool | None = None,
        *,
        acting_admin: UserRecord | Any | None = None,
        reason: str | None = None,
        expected_version: int | None = None,
    ) -> RoleChangeResult:
        """Applies a role change to both systems.

        Args:
            user_id: Identity id of the target user.
            new_role: Requested role value.
            approved: Requested approval flag; only honored when the target role is agent.
            acting_admin: Record of the actor; its resolved role must satisfy the
                transition's required role. Omitted for trusted internal callers.
            reason: Free-text justification stored in history and audit.
            expected_version: Optional optimistic-lock guard on the database write.

        Returns:
            RoleChangeResult: ``changed=False`` with "No changes needed" when the
            user already holds the requested state.

        Raises:
            UserNotFoundError: No live database record for the user.
            InvalidTransitionError: Invalid role value or a transition the matrix forbids.
            AuthorizationError: The actor ranks below the transition's required role.
            ConflictError: ``expected_version`` is stale.
        """
        actor_id = getattr(acting_admin, "external_id", None)
        logger.info(f"Role change requested for {user_id}: -> {new_role} (approved={approved}, actor={actor_id})")

        # 1. Load
        record = await self.synchronizer.load_record(user_id)
        if record is None:
            raise UserNotFoundError(user_id)
        current_role, current_approved = db_role_state(record)

        # 2. Validate
        if not is_valid_role(new_role):
            raise InvalidTransitionError(f"Invalid roles: {new_role}", reason=f"Invalid roles: {new_role}")
        target_role = Role(new_role)
        decision = can_change_role(current_role, target_role, acting_admin, log_rejection=True)
        if not decision.allowed:
            required = decision.required_role.value if decision.required_role else None
            if decision.insufficient_privilege:
                raise AuthorizationError(decision.reason, reason=decision.reason, required_role=required)
            raise InvalidTransitionError(decision.reason, reason=decision.reason, required_role=required)

        # 3. Approval
        new_approved = resolve_new_approval(target_role, approved, current_role, current_approved)
        role_changed = current_role != target_role
        approval_changed = current_approved != new_approved

        if not role_changed and approval_changed and acting_admin is not None:
            if role_index(resolve(acting_admin).role) < role_index(Role.ADMIN):
                reason_text = "Insufficient privileges: requires admin or higher"
                logger.warning(f"Rejected approval change for {user_id}: {reason_text}")
                raise AuthorizationError(reason_text, required_role=Role.ADMIN.value)

        if not (role_changed or approval_changed):
            return await self._no_op(record, current_role, current_approved)

        # 4. Persist
        history_entry = {
            "from": current_role.value,
            "to": target_role.value,
            "previousApproved": current_approved,
            "approved": new_approved,
            "changedAt": utcnow().isoformat(),
            "changedBy": actor_id or "system",
            "reason": reason or decision.reason,
        }

        def _apply(user: UserRecord) -> None:
            user.role = target_role.value
            user.approved = new_approved
            user.role_change_history = [*(user.role_change_history or []), history_entry]

        record = await self.synchronizer.update_record(user_id, _apply, expected_version=expected_version)
        version = record.version
        logger.info(f"Persisted role {target_role.value} (approved={new_approved}) for {user_id} (v{version})")

        # 5. Identity
        identity_synced, synced_version = await self._push_identity(user_id, target_role, new_approved)
        version = synced_version or version

        # 6. Cache
        self.cache.invalidate(user_id)

        # 7. Audit
        audit_recorded = await self._audit(
            user_id, current_role, target_role, current_approved, new_approved, actor_id, reason or decision.reason
        )

        message = f"Role changed from {current_role.value} to {target_role.value}"
        if not role_changed:
            message = f"Approval changed to {new_approved}"
        if not identity_synced:
            message += "; identity provider update pending"

        return RoleChangeResult(
            user_id=user_id,
            previous_role=current_role,
            new_role=target_role,
            previous_approved=current_approved,
            approved=new_approved,
            changed=True,
            role_changed=role_changed,
            approval_changed=approval_changed,
            identity_synced=identity_synced,
            audit_recorded=audit_recorded,
            message=message,
            version=version,
        )

    async def _no_op(self, record: UserRecord, role: Role, approved: bool) -> RoleChangeResult:
        """Identical state: nothing is written, except retrying a push that failed earlier."""
        user_id, version = record.external_id, record.version
        identity_synced = True
        if record.sync_status == SyncStatus.IDENTITY_PENDING.value:
            logger.info(f"Re-pushing pending identity update for {user_id}")
            identity_synced, synced_version = await self._push_identity(user_id, role, approved)
            version = synced_version or version

        logger.info(f"No role change needed for {user_id} ({role.value}, approved={approved})")
        return RoleChangeResult(
            user_id=user_id,
            previous_role=role,
            new_role=role,
            previous_approved=approved,
            approved=approved,
            changed=False,
            role_changed=False,
            approval_changed=False,
            identity_synced=identity_synced,
            audit_recorded=False,
            message=NO_CHANGES_MESSAGE,
            version=version,
        )

    async def _push_identity(self, user_id: str, role: Role, approved: bool) -> tuple[bool, int | None]:
        """Pushes to identity; on exhaustion the database stays authoritative and is flagged.

        Returns the push outcome and the record version after the sync status write.
        """
        try:
            await self.synchronizer.push_role_to_identity(user_id, role, approved, source="role_change")
            status, error = SyncStatus.SUCCESS, None
        except (ProviderError, NotFoundError) as e:
            logger.error(f"Identity update failed for {user_id}; database change kept: {e}")
            status, error = SyncStatus.IDENTITY_PENDING, str(e)

        version = None
        try:
            record = await self.synchronizer.update_record(
                user_id, lambda user: append_sync_history(user, status, source="role_change", error=error)
            )
            version = record.version
        except RoleSystemError as e:
            logger.warning(f"Could not record sync status for {user_id}: {e}")

        return status == SyncStatus.SUCCESS, version

    async def _audit(
        self,
        user_id: str,
        previous_role: Role,
        new_role: Role,
        previous_approved: bool,
        new_approved: bool,
        actor_id: str | None,
        reason: str,
    ) -> bool:
        async def _append() -> RoleAuditLog:
            entry = RoleAuditLog(
                user_id=user_id,
                previous_role=previous_role.value,
                new_role=new_role.value,
                previous_approved=previous_approved,
                new_approved=new_approved,
                acting_admin_id=actor_id,
                reason=reason,
            )
            try:
                return await self.repository.append_audit(entry)
            except ProviderError:
                await self.repository.session.rollback()
                raise

        try:
            await with_retry(_append, op_name=f"audit({user_id})", wait=self.synchronizer.retry_wait)
            return True
        except RoleSystemError as e:
            logger.error(f"Audit write failed for {user_id} ({previous_role.value} -> {new_role.value}): {e}")
            return False

    async def promote_to_agent_pending(self, user_id: str, **kwargs: Any) -> RoleChangeResult:
        return await self.change_user_role(user_id, Role.AGENT_PENDING, **kwargs)

    async def approve_agent(self, user_id: str, **kwargs: Any) -> RoleChangeResult:
        return await self.change_user_role(user_id, Role.AGENT, True, **kwargs)

    async def reject_agent(self, user_id: str, **kwargs: Any) -> RoleChangeResult:
        kwargs.setdefault("reason", "Agent application rejected")
        return await self.change_user_role(user_id, Role.USER, **kwargs)

    async def promote_to_admin(self, user_id: str, **kwargs: Any) -> RoleChangeResult:
        return await self.change_user_role(user_id, Role.ADMIN, **kwargs)

    async def demote_to_user(self, user_id: str, **kwargs: Any) -> RoleChangeResult:
        return await self.change_user_role(user_id, Role.USER, **kwargs)
