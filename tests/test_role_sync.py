from unittest.mock import AsyncMock, patch

from src.config.settings import settings
from src.core.errors import ConsistencyError, ProviderError, TransientProviderError, UserNotFoundError
from src.domain.roles.sync import NO_CHANGES_MESSAGE, append_sync_history
from src.domain.users.models import Listing, SyncStatus, UserRecord
from tests.base import BaseTest


class TestRoleReconciliation(BaseTest):
    """Test suite for drift detection and resolution between the two systems."""

    async def test_db_wins_scenario_reported_and_repaired(self) -> None:
        """DB agent/unapproved vs identity agent_pending: debug flags it, db_wins fixes it."""
        await self.create_user("user_1", role="agent", approved=False, in_identity=False)
        self.add_identity_user("user_1", role="agent_pending")

        report = await self.synchronizer.inspect("user_1")
        self.assertFalse(report["roleMatch"])
        self.assertFalse(report["isConsistent"])
        actions = [a["action"] for a in report["possibleFixActions"]]
        self.assertIn("sync_to_identity", actions)

        result = await self.synchronizer.sync_role_to_identity("user_1")

        self.assertTrue(result.changed)
        self.assertTrue(result.role_changed)
        self.identity.update_user_metadata.assert_awaited_once()
        pushed = self.identity.update_user_metadata.await_args.args[1]
        self.assertEqual((pushed["role"], pushed["approved"]), ("agent", False))
        self.assertEqual(pushed["syncSource"], "database")

        report = await self.synchronizer.inspect("user_1")
        self.assertTrue(report["roleMatch"])
        self.assertTrue(report["isConsistent"])
        self.assertEqual(report["possibleFixActions"], [])

    async def test_round_trip_is_a_no_op(self) -> None:
        await self.create_user("user_1", role="support", in_identity=False)
        self.add_identity_user("user_1", role="user")

        first = await self.synchronizer.sync_role_to_identity("user_1")
        second = await self.synchronizer.sync_role_from_identity("user_1")

        self.assertTrue(first.changed)
        self.assertFalse(second.changed)
        self.assertEqual(second.message, NO_CHANGES_MESSAGE)

    async def test_identity_wins_overwrites_database(self) -> None:
        await self.create_user("user_1", role="agent_pending", in_identity=False)
        self.add_identity_user("user_1", role="agent", approved=True)
        self.cache.set("user_1", {"LISTINGS:VIEW_OWN"})

        result = await self.synchronizer.sync_role_from_identity("user_1")

        self.assertTrue(result.role_changed)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent")
        self.assertTrue(record.approved)
        self.assertEqual(record.role_change_history[-1]["changedBy"], "identity_sync")
        self.assertNotIn("user_1", self.cache)
        self.identity.update_user_metadata.assert_not_awaited()

    async def test_identity_wins_requires_identity_role(self) -> None:
        await self.create_user("user_1", role="agent", in_identity=False)
        self.add_identity_user("user_1", role=None)

        with self.assertRaises(ConsistencyError):
            await self.synchronizer.sync_role_from_identity("user_1")

    async def test_db_wins_requires_database_record(self) -> None:
        self.add_identity_user("user_1", role="user")

        with self.assertRaises(UserNotFoundError):
            await self.synchronizer.sync_role_to_identity("user_1")

    async def test_identity_wins_creates_missing_record(self) -> None:
        self.add_identity_user("user_1", role="support", email="s@example.com")

        result = await self.synchronizer.sync_role_from_identity("user_1")

        self.assertTrue(result.created)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "support")
        self.assertEqual(record.email, "s@example.com")

    async def test_unknown_identity_user(self) -> None:
        with self.assertRaises(UserNotFoundError) as ctx:
            await self.synchronizer.sync_role_to_identity("ghost")
        self.assertIn("identity provider", ctx.exception.message)

    async def test_transient_identity_failures_are_retried(self) -> None:
        await self.create_user("user_1", role="agent", approved=True, in_identity=False)
        self.add_identity_user("user_1", role="user")
        attempts = []

        async def flaky_update(user_id, public_metadata):
            attempts.append(user_id)
            if len(attempts) == 1:
                raise TransientProviderError("blip")
            return await self._identity_update_metadata(user_id, public_metadata)

        self.identity.update_user_metadata.side_effect = flaky_update

        result = await self.synchronizer.sync_role_to_identity("user_1")

        self.assertTrue(result.changed)
        self.assertEqual(self.identity.update_user_metadata.await_count, 2)

    async def test_verify_consistency_auto_fix(self) -> None:
        await self.create_user("user_ok", role="user")
        await self.create_user("user_drift", role="agent", approved=True, in_identity=False)
        self.add_identity_user("user_drift", role="user")

        summary = await self.synchronizer.verify_consistency(limit=10, auto_fix=True)

        self.assertEqual(summary["checked"], 2)
        self.assertEqual(summary["consistent"], 1)
        self.assertEqual(summary["inconsistent"], 1)
        self.assertEqual(summary["fixed"], 1)
        self.assertEqual(self.identity_users["user_drift"].metadata_role, "agent")

    async def test_db_wins_repairs_identity_without_role(self) -> None:
        await self.create_user("user_1", role="user", in_identity=False)
        self.add_identity_user("user_1", role=None)

        report = await self.synchronizer.inspect("user_1")
        self.assertFalse(report["roleMatch"])

        result = await self.synchronizer.sync_role_to_identity("user_1")

        self.assertTrue(result.changed)
        self.assertTrue(result.role_changed)
        metadata = self.identity_users["user_1"].public_metadata
        self.assertEqual((metadata["role"], metadata["approved"]), ("user", True))
        self.assertTrue((await self.synchronizer.inspect("user_1"))["isConsistent"])

    async def test_verify_consistency_counts_repairs(self) -> None:
        await self.create_user("user_1", role="user", in_identity=False)
        self.add_identity_user("user_1", role=None)

        summary = await self.synchronizer.verify_consistency(limit=10, auto_fix=True)

        self.assertEqual(summary["inconsistent"], 1)
        self.assertEqual(summary["fixed"], 1)
        self.assertEqual(self.identity_users["user_1"].metadata_role, "user")

        summary = await self.synchronizer.verify_consistency(limit=10, auto_fix=True)
        self.assertEqual((summary["consistent"], summary["fixed"]), (1, 0))

    async def test_unapproved_flag_on_non_agent_roles_is_not_drift(self) -> None:
        await self.create_user("user_1", role="support", approved=False, in_identity=False)
        self.add_identity_user("user_1", role="support", approved=True)

        result = await self.synchronizer.sync_role_to_identity("user_1")

        self.assertFalse(result.changed)
        self.identity.update_user_metadata.assert_not_awaited()


class TestIdentityRoleUpdates(BaseTest):
    """Test suite for adopting role edits made in the identity provider."""

    async def test_identity_edit_is_adopted_and_cache_cleared(self) -> None:
        await self.create_user("agent_1", role="agent_pending", in_identity=False)
        self.add_identity_user("agent_1", role="agent", approved=True)
        self.cache.set("agent_1", {"LISTINGS:VIEW_OWN"})

        result = await self.synchronizer.apply_identity_role_update("agent_1")

        self.assertTrue(result.role_changed)
        record = await self.repository.find_user_by_external_id("agent_1")
        self.assertEqual((record.role, record.approved), ("agent", True))
        self.assertNotIn("agent_1", self.cache)
        self.identity.update_user_metadata.assert_not_awaited()

    async def test_pending_database_change_is_kept(self) -> None:
        await self.create_user(
            "user_1", role="agent_pending", in_identity=False, sync_status=SyncStatus.IDENTITY_PENDING.value
        )
        self.add_identity_user("user_1", role="user")

        self.assertIsNone(await self.synchronizer.apply_identity_role_update("user_1"))

        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent_pending")

    async def test_unprovisioned_user_is_left_to_worker(self) -> None:
        self.add_identity_user("user_1", role="support")

        self.assertIsNone(await self.synchronizer.apply_identity_role_update("user_1"))
        self.assertIsNone(await self.repository.find_user_by_external_id("user_1"))

    async def test_identity_without_role_changes_nothing(self) -> None:
        await self.create_user("user_1", role="agent", approved=True, in_identity=False)
        self.add_identity_user("user_1", role=None)

        self.assertIsNone(await self.synchronizer.apply_identity_role_update("user_1"))

        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent")


class TestFullUserSync(BaseTest):
    """Test suite for the identity -> database profile sync and its fan-out."""

    async def test_provisions_new_user_with_identity_role(self) -> None:
        self.add_identity_user("user_1", role="agent_pending", first_name="Ana")

        result = await self.synchronizer.full_user_sync("user_1")

        self.assertTrue(result.created)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.role, "agent_pending")
        self.assertEqual(record.first_name, "Ana")
        self.assertEqual(record.sync_status, SyncStatus.SUCCESS.value)
        self.identity.update_user_metadata.assert_not_awaited()

    async def test_provisioning_seeds_default_role_into_identity(self) -> None:
        self.add_identity_user("user_1", role=None)

        result = await self.synchronizer.full_user_sync("user_1")

        self.assertTrue(result.created)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual((record.role, record.approved), ("user", True))
        metadata = self.identity_users["user_1"].public_metadata
        self.assertEqual((metadata["role"], metadata["approved"]), ("user", True))
        self.assertEqual(metadata["syncSource"], "provisioning")
        self.assertTrue((await self.synchronizer.inspect("user_1"))["isConsistent"])

    async def test_failed_role_seed_is_flagged_for_repush(self) -> None:
        self.add_identity_user("user_1", role=None)
        self.identity.update_user_metadata.side_effect = ProviderError("metadata rejected")

        result = await self.synchronizer.full_user_sync("user_1")

        self.assertTrue(result.created)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.sync_status, SyncStatus.IDENTITY_PENDING.value)
        self.assertEqual(record.last_sync_error, "metadata rejected")

    async def test_provisioned_non_agent_is_stored_approved(self) -> None:
        self.add_identity_user("user_1", role="support", approved=False)

        await self.synchronizer.full_user_sync("user_1")

        record = await self.repository.find_user_by_external_id("user_1")
        self.assertTrue(record.approved)

        self.assertEqual(record.sync_status, SyncStatus.SUCCESS.value)

    async def test_profile_changes_flow_but_role_is_kept(self) -> None:
        await self.create_user("user_1", role="admin", approved=True, in_identity=False)
        self.add_identity_user("user_1", role="user", first_name="Renamed")

        result = await self.synchronizer.full_user_sync("user_1")

        self.assertFalse(result.created)
        self.assertTrue(result.profile_changed)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.first_name, "Renamed")
        self.assertEqual(record.role, "admin")

    async def test_refreshes_author_snapshots(self) -> None:
        await self.create_user("user_1", in_identity=False)
        self.add_identity_user("user_1", first_name="Renamed", last_name="Author")
        self.session.add_all(
            [
                Listing(title="Flat", author_id="user_1"),
                Listing(title="House", author_id="user_1"),
                Listing(title="Other", author_id="user_2"),
            ]
        )
        await self.session.commit()

        result = await self.synchronizer.full_user_sync("user_1")

        self.assertEqual(result.content_updated, 2)

    async def test_snapshot_failure_does_not_fail_sync(self) -> None:
        self.add_identity_user("user_1")
        with patch.object(
            self.repository,
            "update_many_content_by_author",
            AsyncMock(side_effect=TransientProviderError("locked", system="database")),
        ) as mock_update:
            result = await self.synchronizer.full_user_sync("user_1")

        self.assertEqual(result.content_updated, 0)
        self.assertEqual(mock_update.await_count, settings.CONTENT_SNAPSHOT_ATTEMPTS)

    async def test_soft_deleted_user_is_skipped(self) -> None:
        await self.create_user("user_1")
        await self.repository.soft_delete_user("user_1")

        result = await self.synchronizer.full_user_sync("user_1")

        self.assertTrue(result.skipped)
        self.assertIsNone(await self.repository.find_user_by_external_id("user_1"))

    async def test_failure_is_recorded_in_sync_history(self) -> None:
        await self.create_user("user_1")
        self.identity.get_user.side_effect = TransientProviderError("identity down")

        with self.assertRaises(TransientProviderError):
            await self.synchronizer.full_user_sync("user_1")

        self.assertEqual(self.identity.get_user.await_count, settings.SYNC_MAX_RETRIES + 1)
        record = await self.repository.find_user_by_external_id("user_1")
        self.assertEqual(record.sync_status, SyncStatus.FAILED.value)
        self.assertEqual(record.last_sync_error, "identity down")

    def test_sync_history_is_capped(self) -> None:
        record = UserRecord(external_id="user_1")
        for _ in range(settings.SYNC_HISTORY_LIMIT + 5):
            append_sync_history(record, SyncStatus.SUCCESS, source="identity")

        self.assertEqual(len(record.sync_history), settings.SYNC_HISTORY_LIMIT)
        self.assertIsNotNone(record.last_synced)
