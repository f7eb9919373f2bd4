"""Tests for ChatGroupReconciler branch and member passes."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from apps.chat_sync.reconciliation import ChatGroupReconciler
from apps.chat_sync.schemas import (
    UNKNOWN_VENDOR_ID,
    Branch,
    GroupType,
    MembershipRecord,
)
from libs.common.exceptions import IdentityMissingError, NotFoundError
from tests.apps.chat_sync.fakes import FIXED_NOW, ROOT_VENDOR_ID, make_member

ALL = "All Members - North (#B1)"
CLINICAL = "Clinical - North (#B1)"
NON_CLINICAL = "Non-Clinical - North (#B1)"


def individual(ps_id: str) -> str:
    return f"Member {ps_id} - North (#B1)"


@pytest.fixture()
def roster(seed):
    """One admin and three field staff: two clinical, one non-clinical."""
    return seed(
        make_member("A1", level=3, job_id="MGR"),
        make_member("F1", job_id="RN"),
        make_member("F2", job_id="CNA"),
        make_member("F3", job_id="CLERK"),
    )


class TestNewBranch:
    @pytest.mark.asyncio()
    async def test_creates_broadcast_and_individual_groups(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        """A fresh branch gets three broadcast groups and one group per field staff member."""
        assert await reconciler.reconcile_branch("B1") is True

        assert len(vendor.groups) == 6
        assert vendor.occupants(ALL) - {ROOT_VENDOR_ID} == {"v-A1", "v-F1", "v-F2", "v-F3"}
        assert vendor.occupants(CLINICAL) - {ROOT_VENDOR_ID} == {"v-A1", "v-F1", "v-F2"}
        assert vendor.occupants(NON_CLINICAL) - {ROOT_VENDOR_ID} == {"v-A1", "v-F3"}
        for ps_id in ("F1", "F2", "F3"):
            assert vendor.occupants(individual(ps_id)) - {ROOT_VENDOR_ID} == {"v-A1", f"v-{ps_id}"}

    @pytest.mark.asyncio()
    async def test_broadcast_groups_are_announcements(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")

        (all_group,) = vendor.groups_named(ALL)
        (own_group,) = vendor.groups_named(individual("F1"))
        assert all_group.is_announcement is True
        assert own_group.is_announcement is False
        assert own_group.primary_member_ps_id == "F1"

    @pytest.mark.asyncio()
    async def test_mirrors_every_membership(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")

        (all_group,) = vendor.groups_named(ALL)
        (own_group,) = vendor.groups_named(individual("F1"))
        assert {r.employee_ps_id for r in mirror.for_group(all_group.id)} == {"A1", "F1", "F2", "F3"}
        creators = [r for r in mirror.for_group(own_group.id) if r.is_group_creator]
        assert [r.employee_ps_id for r in creators] == ["F1"]
        assert all(r.group_type == GroupType.GROUP for r in mirror.for_group(own_group.id))


class TestIdempotence:
    @pytest.mark.asyncio()
    async def test_second_pass_makes_no_vendor_mutations(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        mutations = len(vendor.mutations)

        assert await reconciler.reconcile_branch("B1") is True

        assert len(vendor.mutations) == mutations

    @pytest.mark.asyncio()
    async def test_members_sharing_a_display_name_keep_their_groups(
        self, reconciler: ChatGroupReconciler, vendor, mirror, seed
    ) -> None:
        seed(
            make_member("A1", level=3, job_id="MGR"),
            make_member("F1", display_name="John Smith"),
            make_member("F2", display_name="John Smith"),
        )
        name = "John Smith - North (#B1)"

        await reconciler.reconcile_branch("B1")
        groups = {g.primary_member_ps_id: g.id for g in vendor.groups_named(name)}
        mutations = len(vendor.mutations)

        for _ in range(3):
            assert await reconciler.reconcile_branch("B1") is True

        assert len(vendor.mutations) == mutations
        assert {g.primary_member_ps_id: g.id for g in vendor.groups_named(name)} == groups
        assert set(groups) == {"F1", "F2"}
        for ps_id, group_id in groups.items():
            assert [r.group_id for r in mirror.creators(ps_id)] == [group_id]
            assert vendor.groups[group_id].occupant_ids.count(f"v-{ps_id}") == 1

    @pytest.mark.asyncio()
    async def test_refused_delete_is_not_retried(
        self, reconciler: ChatGroupReconciler, vendor, monkeypatch, roster
    ) -> None:
        """A group the vendor archived instead of deleting is left alone afterwards."""

        async def archive_instead(group_id: str) -> None:
            vendor._record("delete_group", group_id)
            await vendor.update_group(group_id, is_archived=True)

        monkeypatch.setattr(vendor, "delete_group", archive_instead)
        await reconciler.reconcile_branch("B1")
        leftover = vendor.add_group(individual("F1"), ["v-F1"])

        await reconciler.reconcile_branch("B1")
        assert vendor.groups[leftover.id].is_archived is True
        mutations = len(vendor.mutations)

        await reconciler.reconcile_branch("B1")

        assert len(vendor.mutations) == mutations

    @pytest.mark.asyncio()
    async def test_second_pass_keeps_mirror_unchanged(
        self, reconciler: ChatGroupReconciler, mirror, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        snapshot = list(mirror.records)

        await reconciler.reconcile_branch("B1")

        assert mirror.records == snapshot


class TestConvergence:
    @pytest.mark.asyncio()
    async def test_repairs_existing_groups(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        """Strangers are removed, missing members added and the root account kept."""
        existing = vendor.add_group(ALL, ["v-A1", "v-STRANGER", ROOT_VENDOR_ID], is_announcement=True)

        await reconciler.reconcile_branch("B1")

        assert set(vendor.groups[existing.id].occupant_ids) == {
            "v-A1",
            "v-F1",
            "v-F2",
            "v-F3",
            ROOT_VENDOR_ID,
        }

    @pytest.mark.asyncio()
    async def test_keeps_oldest_duplicate_broadcast_group(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        older = vendor.add_group(ALL, ["v-A1"], is_announcement=True)
        newer = vendor.add_group(ALL, ["v-A1"], is_announcement=True)

        await reconciler.reconcile_branch("B1")

        assert older.id in vendor.groups
        assert newer.id not in vendor.groups
        assert len(vendor.groups_named(ALL)) == 1

    @pytest.mark.asyncio()
    async def test_replaces_orphaned_individual_group(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        """A same-named group without a mirror record is left over from a failed run."""
        orphan = vendor.add_group(individual("F1"), ["v-F1"])

        await reconciler.reconcile_branch("B1")

        (replacement,) = vendor.groups_named(individual("F1"))
        assert replacement.id != orphan.id
        assert [r.group_id for r in mirror.creators("F1")] == [replacement.id]

    @pytest.mark.asyncio()
    async def test_recreates_vanished_individual_group(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        (original,) = vendor.groups_named(individual("F1"))
        del vendor.groups[original.id]

        await reconciler.reconcile_branch("B1")

        (replacement,) = vendor.groups_named(individual("F1"))
        assert replacement.id != original.id
        assert mirror.for_group(original.id) == []
        assert [r.group_id for r in mirror.creators("F1")] == [replacement.id]

    @pytest.mark.asyncio()
    async def test_unarchives_individual_group(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        (group,) = vendor.groups_named(individual("F1"))
        await vendor.update_group(group.id, is_archived=True)
        mirror.records = [
            r.model_copy(update={"is_archived": True}) if r.group_id == group.id else r
            for r in mirror.records
        ]

        await reconciler.reconcile_branch("B1")

        assert vendor.groups[group.id].is_archived is False
        assert all(not r.is_archived for r in mirror.for_group(group.id))

    @pytest.mark.asyncio()
    async def test_adds_new_admin_to_every_group(
        self, reconciler: ChatGroupReconciler, vendor, seed, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        seed(make_member("A2", level=4, job_id="MGR"))

        await reconciler.reconcile_branch("B1")

        for name in (ALL, CLINICAL, NON_CLINICAL, individual("F1"), individual("F3")):
            assert "v-A2" in vendor.occupants(name)
        assert vendor.groups_named(individual("A2")) == []

    @pytest.mark.asyncio()
    async def test_removes_departed_member(
        self, reconciler: ChatGroupReconciler, vendor, directory, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        directory.update("F2", active_status="Inactive")

        await reconciler.reconcile_branch("B1")

        assert "v-F2" not in vendor.occupants(ALL)
        assert "v-F2" not in vendor.occupants(CLINICAL)


class TestNoDuplicateCreator:
    @pytest.mark.asyncio()
    async def test_duplicate_individual_group_is_deleted(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        (original,) = vendor.groups_named(individual("F1"))
        duplicate = vendor.add_group("Old name - North (#B1)", ["v-F1", "v-A1"])
        await mirror.insert_many(
            [
                MembershipRecord(
                    group_id=duplicate.id,
                    branch_id="B1",
                    vendor_id="v-F1",
                    employee_ps_id="F1",
                    group_name=duplicate.name,
                    group_type=GroupType.GROUP,
                    is_group_creator=True,
                    created_at=FIXED_NOW + timedelta(hours=1),
                )
            ]
        )

        await reconciler.reconcile_branch("B1")

        assert duplicate.id not in vendor.groups
        assert original.id in vendor.groups
        active = [r for r in mirror.creators("F1") if not r.is_archived]
        assert [r.group_id for r in active] == [original.id]


class TestIdentity:
    @pytest.mark.asyncio()
    async def test_unknown_identity_is_excluded_until_created(
        self, reconciler: ChatGroupReconciler, vendor, directory, seed, roster
    ) -> None:
        seed(make_member("F9", vendor_id=UNKNOWN_VENDOR_ID))
        vendor.fail["create_user"] = {"F9"}

        assert await reconciler.reconcile_branch("B1") is True

        assert ("create_user", "F9") in vendor.calls
        assert vendor.groups_named(individual("F9")) == []
        assert all(UNKNOWN_VENDOR_ID not in g.occupant_ids for g in vendor.groups.values())

        vendor.fail.clear()
        assert await reconciler.reconcile_branch("B1") is True

        new_id = directory.members["F9"].vendor_id
        assert new_id in vendor.users
        assert new_id in vendor.occupants(ALL)
        assert vendor.occupants(individual("F9")) - {ROOT_VENDOR_ID} == {"v-A1", new_id}

    @pytest.mark.asyncio()
    async def test_missing_identity_is_created_linked_and_grouped(
        self, reconciler: ChatGroupReconciler, vendor, directory, seed, roster
    ) -> None:
        seed(make_member("F4", vendor_id=None, job_id="RN"))

        await reconciler.reconcile_branch("B1")

        new_id = directory.members["F4"].vendor_id
        assert new_id is not None and new_id in vendor.users
        assert ("F4", new_id) in directory.linked
        assert new_id in vendor.occupants(ALL)
        assert new_id in vendor.occupants(CLINICAL)
        assert new_id in vendor.occupants(individual("F4"))

    @pytest.mark.asyncio()
    async def test_identity_is_created_once(
        self, reconciler: ChatGroupReconciler, vendor, seed, roster
    ) -> None:
        seed(make_member("F4", vendor_id=None))

        await reconciler.reconcile_branch("B1")
        await reconciler.reconcile_branch("B1")

        assert [c for c in vendor.calls if c[0] == "create_user"] == [("create_user", "F4")]

    @pytest.mark.asyncio()
    async def test_failed_link_keeps_member_out_of_groups(
        self, reconciler: ChatGroupReconciler, vendor, directory, seed, roster
    ) -> None:
        seed(make_member("F4", vendor_id=None))
        directory.fail.add("link_vendor_identity")

        assert await reconciler.reconcile_branch("B1") is True

        assert vendor.groups_named(individual("F4")) == []
        assert len(vendor.occupants(ALL) - {ROOT_VENDOR_ID}) == 4


class TestIsolation:
    @pytest.mark.asyncio()
    async def test_failed_group_create_does_not_block_siblings(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        vendor.fail["create_group"] = {individual("F1")}

        assert await reconciler.reconcile_branch("B1") is True

        assert vendor.groups_named(individual("F1")) == []
        for ps_id in ("F2", "F3"):
            (group,) = vendor.groups_named(individual(ps_id))
            assert {r.employee_ps_id for r in mirror.for_group(group.id)} == {"A1", ps_id}

    @pytest.mark.asyncio()
    async def test_failed_occupant_update_does_not_block_siblings(
        self, reconciler: ChatGroupReconciler, vendor, seed, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")
        (all_group,) = vendor.groups_named(ALL)
        vendor.fail["add_occupants"] = {all_group.id}
        seed(make_member("F4", job_id="RN"))

        assert await reconciler.reconcile_branch("B1") is True

        assert "v-F4" not in vendor.occupants(ALL)
        assert "v-F4" in vendor.occupants(CLINICAL)
        assert "v-F4" in vendor.occupants(individual("F4"))

    @pytest.mark.asyncio()
    async def test_failed_retry_pass_converges(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        vendor.fail["create_group"] = {individual("F1")}
        await reconciler.reconcile_branch("B1")
        vendor.fail.clear()

        await reconciler.reconcile_branch("B1")

        assert len(vendor.groups_named(individual("F1"))) == 1

    @pytest.mark.asyncio()
    async def test_mirror_outage_does_not_undo_vendor_changes(
        self, reconciler: ChatGroupReconciler, vendor, mirror, roster
    ) -> None:
        mirror.fail_writes = True

        assert await reconciler.reconcile_branch("B1") is True

        assert len(vendor.groups) == 6
        assert mirror.records == []


class TestFatalReads:
    @pytest.mark.asyncio()
    async def test_unknown_branch_raises(self, reconciler: ChatGroupReconciler) -> None:
        with pytest.raises(NotFoundError):
            await reconciler.reconcile_branch("NOPE")

    @pytest.mark.asyncio()
    async def test_roster_failure_returns_false(
        self, reconciler: ChatGroupReconciler, vendor, directory, roster
    ) -> None:
        directory.fail.add("get_active_members")

        assert await reconciler.reconcile_branch("B1") is False
        assert vendor.mutations == []

    @pytest.mark.asyncio()
    async def test_group_listing_failure_returns_false(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        vendor.fail["list_groups"] = None

        assert await reconciler.reconcile_branch("B1") is False
        assert [c for c in vendor.mutations if c[0] != "create_user"] == []


class TestBranchLock:
    @staticmethod
    def _redis(lock: MagicMock) -> MagicMock:
        redis_client = MagicMock()
        redis_client.lock.return_value = lock
        return redis_client

    @pytest.mark.asyncio()
    async def test_busy_branch_is_skipped(self, ctx, vendor, roster) -> None:
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        ctx.redis_client = self._redis(lock)

        assert await ChatGroupReconciler(ctx).reconcile_branch("B1") is False
        assert vendor.calls == []

    @pytest.mark.asyncio()
    async def test_lock_is_released_after_pass(self, ctx, roster) -> None:
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()
        ctx.redis_client = self._redis(lock)

        assert await ChatGroupReconciler(ctx).reconcile_branch("B1") is True

        ctx.redis_client.lock.assert_called_once_with(
            "chat_sync:branch_lock:B1", timeout=900, blocking_timeout=0
        )
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_redis_outage_runs_unlocked(self, ctx, vendor, roster) -> None:
        lock = MagicMock()
        lock.acquire = AsyncMock(side_effect=RedisError("down"))
        ctx.redis_client = self._redis(lock)

        assert await ChatGroupReconciler(ctx).reconcile_branch("B1") is True
        assert len(vendor.groups) == 6


class TestReconcileMember:
    @pytest.mark.asyncio()
    async def test_unknown_member_raises(self, reconciler: ChatGroupReconciler) -> None:
        with pytest.raises(NotFoundError):
            await reconciler.reconcile_member("NOPE")

    @pytest.mark.asyncio()
    async def test_member_without_identity_raises(
        self, reconciler: ChatGroupReconciler, seed
    ) -> None:
        seed(make_member("F9", vendor_id=None))

        with pytest.raises(IdentityMissingError):
            await reconciler.reconcile_member("F9")

    @pytest.mark.asyncio()
    async def test_deleted_vendor_user_raises(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        del vendor.users["v-F1"]

        with pytest.raises(IdentityMissingError):
            await reconciler.reconcile_member("F1")

    @pytest.mark.asyncio()
    async def test_drift_is_pushed_once(
        self, reconciler: ChatGroupReconciler, vendor, roster
    ) -> None:
        await reconciler.reconcile_branch("B1")

        await reconciler.reconcile_member("F1")
        mutations = len(vendor.mutations)
        await reconciler.reconcile_member("F1")

        assert vendor.users["v-F1"].custom_data is not None
        assert vendor.users["v-F1"].custom_data.ps_id == "F1"
        assert len(vendor.mutations) == mutations

    @pytest.mark.asyncio()
    async def test_field_staff_promoted_to_admin(
        self, reconciler: ChatGroupReconciler, vendor, directory, mirror, roster
    ) -> None:
        """The former individual group is archived and the new admin joins everyone else's."""
        await reconciler.reconcile_branch("B1")
        (own_group,) = vendor.groups_named(individual("F1"))
        directory.update("F1", job_level=3)

        await reconciler.reconcile_member("F1")

        assert vendor.groups[own_group.id].is_archived is True
        assert all(r.is_archived for r in mirror.for_group(own_group.id))
        assert "v-F1" in vendor.occupants(individual("F2"))
        assert "v-F1" in vendor.occupants(individual("F3"))
        assert "v-F1" in vendor.occupants(NON_CLINICAL)

    @pytest.mark.asyncio()
    async def test_admin_demoted_to_field_staff(
        self, reconciler: ChatGroupReconciler, vendor, directory, mirror, seed, roster
    ) -> None:
        """The member leaves other individual groups and gets one of their own."""
        seed(make_member("A2", level=4, job_id="CLERK"))
        await reconciler.reconcile_branch("B1")
        directory.update("A2", job_level=1)

        await reconciler.reconcile_member("A2")

        (f1_group,) = vendor.groups_named(individual("F1"))
        assert "v-A2" not in f1_group.occupant_ids
        assert [r for r in mirror.for_group(f1_group.id) if r.employee_ps_id == "A2"] == []
        assert vendor.occupants(individual("A2")) - {ROOT_VENDOR_ID} == {"v-A1", "v-A2"}
        assert "v-A2" in vendor.occupants(NON_CLINICAL)
        assert "v-A2" not in vendor.occupants(CLINICAL)

    @pytest.mark.asyncio()
    async def test_branch_failure_is_isolated(
        self, reconciler: ChatGroupReconciler, vendor, directory, seed
    ) -> None:
        directory.branches["B2"] = Branch(branch_id="B2", branch_name="South")
        seed(
            make_member("A1", level=3, branches=("B1", "B2")),
            make_member("F1", branches=("B1", "B2")),
        )
        vendor.fail["list_groups"] = {"B2"}

        await reconciler.reconcile_member("F1")

        assert vendor.occupants(individual("F1")) - {ROOT_VENDOR_ID} == {"v-A1", "v-F1"}
