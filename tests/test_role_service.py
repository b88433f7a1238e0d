import unittest

from sqlmodel import select

from src.core.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    TransientProviderError,
    UserNotFoundError,
)
from src.domain.permissions.catalog import AGENT_PERMISSIONS, USER_PERMISSIONS
from src.domain.permissions.engine import PermissionEngine
from src.domain.roles.service import NO_CHANGES_MESSAGE, RoleChangeService, resolve_new_approval
from src.domain.roles.taxonomy import Role
from src.domain.users.models import RoleAuditLog, SyncStatus
from tests.base import BaseTest


class TestResolveNewApproval(unittest.TestCase):
    def test_approval_rules(self) -> None:
        self.assertFalse(resolve_new_approval(Role.AGENT_PENDING, True, Role.USER, False))
        self.assertTrue(resolve_new_approval(Role.SUPPORT, False, Role.USER, False))
        self.assertTrue(resolve_new_approval(Role.AGENT, True, Role.AGENT_PENDING, False))
        self.assertFalse(resolve_new_approval(Role.AGENT, None, Role.AGENT_PENDING, False))
        # An agent keeps the current flag when none is supplied
        self.assertTrue(resolve_new_approval(Role.AGENT, None, Role.AGENT, True))


class TestRoleChangeService(BaseTest):
    """Test suite for the role write path across database, identity, cache and audit."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.service = RoleChangeService(self.synchronizer)
        self.admin = await self.create_user("admin_1", role="admin", approved=True)
        self.super_admin = await self.create_user("root_1", role="super_admin", approved=True)

    async def _audit_rows(self, user_id: str) -> list[RoleAuditLog]:
        result = await self.session.exec(select(RoleAuditLog).where(RoleAuditLog.user_id == user_id))
        return list(result.all())

    async def test_agent_pending_forces_unapproved(self) -> None:
        await self.create_user("user_1")

        result = await self.service.change_user_role("user_1", "agent_pending", True, acting_admin=self.admin)

        self.assertTrue(result.changed)
        self.assertFalse(result.approved)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent_pending")
        self.assertFalse(record.approved)
        self.assertEqual(self.identity_users["user_1"].public_metadata["role"], "agent_pending")
        self.assertFalse(self.identity_users["user_1"].public_metadata["approved"])

    async def test_super_admin_is_never_reachable(self) -> None:
        await self.create_user("user_1", role="admin", approved=True)

        with self.assertRaises(InvalidTransitionError) as ctx:
            await self.service.change_user_role("user_1", "super_admin", acting_admin=self.super_admin)

        self.assertEqual(ctx.exception.reason, "Super admins cannot be created through role transitions")
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "admin")

    async def test_invalid_role_value(self) -> None:
        await self.create_user("user_1")

        with self.assertRaises(InvalidTransitionError) as ctx:
            await self.service.change_user_role("user_1", "owner", acting_admin=self.admin)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_insufficient_privilege(self) -> None:
        await self.create_user("user_1")

        with self.assertRaises(AuthorizationError) as ctx:
            await self.service.change_user_role("user_1", "admin", acting_admin=self.admin)

        self.assertEqual(ctx.exception.required_role, "super_admin")
        self.assertEqual(ctx.exception.status_code, 403)

    async def test_approval_only_change_requires_admin(self) -> None:
        support = await self.create_user("support_1", role="support", approved=True)
        await self.create_user("agent_1", role="agent", approved=False)

        with self.assertRaises(AuthorizationError):
            await self.service.change_user_role("agent_1", "agent", True, acting_admin=support)

        result = await self.service.change_user_role("agent_1", "agent", True, acting_admin=self.admin)
        self.assertTrue(result.approval_changed)
        self.assertFalse(result.role_changed)

    async def test_unknown_user(self) -> None:
        with self.assertRaises(UserNotFoundError):
            await self.service.change_user_role("ghost", "agent_pending", acting_admin=self.admin)

    async def test_identical_request_is_idempotent(self) -> None:
        await self.create_user("user_1")

        first = await self.service.change_user_role("user_1", "agent_pending", acting_admin=self.admin)
        second = await self.service.change_user_role("user_1", "agent_pending", acting_admin=self.admin)

        self.assertTrue(first.changed)
        self.assertTrue(first.audit_recorded)
        self.assertFalse(second.changed)
        self.assertEqual(second.message, NO_CHANGES_MESSAGE)
        self.assertEqual(len(await self._audit_rows("user_1")), 1)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(len(record.role_change_history), 1)

    async def test_reassigning_current_non_agent_role_is_a_no_op(self) -> None:
        # Stored approval is False, but only agents are gated on it
        await self.create_user("user_1", role="user", approved=False)

        result = await self.service.change_user_role("user_1", "user", acting_admin=self.admin)

        self.assertFalse(result.changed)
        self.assertEqual(result.message, NO_CHANGES_MESSAGE)
        self.assertEqual(await self._audit_rows("user_1"), [])
        self.identity.update_user_metadata.assert_not_awaited()

    async def test_provisioned_user_keeps_role_without_changes(self) -> None:
        self.add_identity_user("user_2", role="user")
        await self.synchronizer.full_user_sync("user_2")

        result = await self.service.change_user_role("user_2", "user", acting_admin=self.admin)

        self.assertFalse(result.changed)
        record = await self.repository.find_user_by_external_id("user_2")
        self.assertEqual(record.role_change_history, [])

    async def test_next_permission_check_recomputes(self) -> None:
        await self.create_user("agent_1", role="agent_pending")
        engine = PermissionEngine(self.session, self.cache)
        self.assertEqual(await engine.get_user_permissions("agent_1"), USER_PERMISSIONS)

        await self.service.approve_agent("agent_1", acting_admin=self.admin)

        self.assertNotIn("agent_1", self.cache)
        self.assertEqual(await engine.get_user_permissions("agent_1"), AGENT_PERMISSIONS)

    async def test_audit_row_records_actor_and_reason(self) -> None:
        await self.create_user("user_1")

        await self.service.change_user_role(
            "user_1", "agent_pending", acting_admin=self.admin, reason="Applied via onboarding"
        )

        rows = await self._audit_rows("user_1")
        self.assertEqual(len(rows), 1)
        self.assertEqual((rows[0].previous_role, rows[0].new_role), ("user", "agent_pending"))
        self.assertEqual(rows[0].acting_admin_id, "admin_1")
        self.assertEqual(rows[0].reason, "Applied via onboarding")

    async def test_identity_outage_keeps_database_change(self) -> None:
        await self.create_user("user_1")
        self.identity.update_user_metadata.side_effect = TransientProviderError("identity down")

        result = await self.service.change_user_role("user_1", "agent_pending", acting_admin=self.admin)

        self.assertTrue(result.changed)
        self.assertFalse(result.identity_synced)
        self.assertIn("pending", result.message)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent_pending")
        self.assertEqual(record.sync_status, SyncStatus.IDENTITY_PENDING.value)

        # Once identity recovers, repeating the request re-pushes without a second audit row
        self.identity.update_user_metadata.side_effect = self._identity_update_metadata
        retry = await self.service.change_user_role("user_1", "agent_pending", acting_admin=self.admin)

        self.assertFalse(retry.changed)
        self.assertTrue(retry.identity_synced)
        self.assertEqual(self.identity_users["user_1"].public_metadata["role"], "agent_pending")
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.sync_status, SyncStatus.SUCCESS.value)
        self.assertEqual(len(await self._audit_rows("user_1")), 1)

    async def test_stale_expected_version_conflicts(self) -> None:
        user = await self.create_user("user_1")
        stale_version = user.version

        result = await self.service.change_user_role(
            "user_1", "agent_pending", acting_admin=self.admin, expected_version=stale_version
        )
        self.assertGreater(result.version, stale_version)

        with self.assertRaises(ConflictError):
            await self.service.change_user_role(
                "user_1", "user", acting_admin=self.admin, expected_version=stale_version
            )
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent_pending")

    async def test_wrappers(self) -> None:
        await self.create_user("user_1")

        await self.service.promote_to_agent_pending("user_1", acting_admin=self.admin)
        approved = await self.service.approve_agent("user_1", acting_admin=self.admin)
        self.assertTrue(approved.approved)

        rejected = await self.service.reject_agent("user_1", acting_admin=self.admin)
        self.assertEqual(rejected.new_role, Role.USER)
        self.assertTrue(rejected.approved)


if __name__ == "__main__":
    unittest.main()
