"""Tests for vendor identity resolution."""

from __future__ import annotations

import pytest

from apps.chat_sync.reconciliation import IdentityResolver
from apps.chat_sync.reconciliation.identity import build_user_payload
from apps.chat_sync.schemas import UNKNOWN_VENDOR_ID, VendorUser
from libs.common.exceptions import DirectoryCallFailedError
from tests.apps.chat_sync.fakes import ROOT_VENDOR_ID, make_member


class TestBuildUserPayload:
    def test_payload_carries_effective_values(self) -> None:
        member = make_member("F1", level=1, branches=("B1", "B2"), job_id="RN").model_copy(
            update={"access_level": 2, "access_job_id": "CNA", "profile_image_url": "http://img"}
        )

        payload = build_user_payload(member)

        assert payload.employee_ps_id == "F1"
        assert payload.email == "f1@example.com"
        assert payload.custom_data.branch_ids == ["B1", "B2"]
        assert payload.custom_data.job_id == "CNA"
        assert payload.custom_data.job_level == 1
        assert payload.custom_data.access_level == 2
        assert payload.custom_data.profile_image == "http://img"


class TestResolve:
    @pytest.mark.asyncio()
    async def test_pages_roster_and_keeps_active_members(self, ctx, seed) -> None:
        seed(
            make_member("F1"),
            make_member("F2"),
            make_member("F3", active=False),
            make_member("F4"),
            make_member("F5"),
        )

        resolution = await IdentityResolver(ctx).resolve("B1")

        assert [m.employee_ps_id for m in resolution.active_members] == ["F1", "F2", "F4", "F5"]
        assert [m.employee_ps_id for m in resolution.valid_members] == ["F1", "F2", "F4", "F5"]
        assert resolution.missing_identities == []

    @pytest.mark.asyncio()
    async def test_roster_outside_job_levels_is_ignored(self, ctx, seed) -> None:
        seed(make_member("F1"), make_member("X1", level=7))

        resolution = await IdentityResolver(ctx).resolve("B1")

        assert [m.employee_ps_id for m in resolution.active_members] == ["F1"]

    @pytest.mark.asyncio()
    async def test_unknown_vendor_id_is_missing(self, ctx, seed, vendor) -> None:
        seed(make_member("F1"))
        directory_only = make_member("F2")
        ctx.directory.add(directory_only)

        resolution = await IdentityResolver(ctx).resolve("B1")

        assert [m.employee_ps_id for m in resolution.valid_members] == ["F1"]
        assert [p.employee_ps_id for p in resolution.missing_identities] == ["F2"]

    @pytest.mark.asyncio()
    async def test_placeholder_identity_is_queued_for_creation(self, ctx, seed, vendor) -> None:
        seed(make_member("F1", vendor_id=UNKNOWN_VENDOR_ID))
        vendor.users["stale"] = VendorUser(id="stale", email="f1@example.com")

        resolution = await IdentityResolver(ctx).resolve("B1")

        assert resolution.valid_members == []
        assert [p.employee_ps_id for p in resolution.missing_identities] == ["F1"]
        assert "stale" not in vendor.users
        assert not any(c == ("list_users", UNKNOWN_VENDOR_ID) for c in vendor.calls)

    @pytest.mark.asyncio()
    async def test_failed_id_lookup_keeps_members_valid(self, ctx, seed, vendor) -> None:
        seed(make_member("F1"), make_member("F2"))
        vendor.fail["list_users"] = {"v-F1,v-F2"}

        resolution = await IdentityResolver(ctx).resolve("B1")

        assert [m.employee_ps_id for m in resolution.valid_members] == ["F1", "F2"]
        assert resolution.missing_identities == []

    @pytest.mark.asyncio()
    async def test_stale_account_with_same_email_is_deleted(self, ctx, seed, vendor) -> None:
        seed(make_member("F1", vendor_id=None))
        vendor.users["stale"] = VendorUser(id="stale", email="F1@example.com")

        resolution = await IdentityResolver(ctx).resolve("B1")

        assert "stale" not in vendor.users
        assert [p.employee_ps_id for p in resolution.missing_identities] == ["F1"]

    @pytest.mark.asyncio()
    async def test_root_account_is_never_deleted(self, ctx, seed, vendor) -> None:
        seed(make_member("F1", vendor_id=None, email="ops@example.com"))
        vendor.users[ROOT_VENDOR_ID] = VendorUser(id=ROOT_VENDOR_ID, email="ops@example.com")

        await IdentityResolver(ctx).resolve("B1")

        assert ROOT_VENDOR_ID in vendor.users

    @pytest.mark.asyncio()
    async def test_roster_failure_propagates(self, ctx, directory) -> None:
        directory.fail.add("get_active_members")

        with pytest.raises(DirectoryCallFailedError):
            await IdentityResolver(ctx).resolve("B1")


class TestCreateMissing:
    @pytest.mark.asyncio()
    async def test_creates_links_and_returns_members(self, ctx, seed, vendor, directory) -> None:
        seed(make_member("F1", vendor_id=None), make_member("F2", vendor_id=None))
        resolver = IdentityResolver(ctx)
        resolution = await resolver.resolve("B1")

        created = await resolver.create_missing(resolution)

        assert sorted(m.employee_ps_id for m in created) == ["F1", "F2"]
        for member in created:
            assert member.vendor_id in vendor.users
            assert directory.members[member.employee_ps_id].vendor_id == member.vendor_id

    @pytest.mark.asyncio()
    async def test_placeholder_identity_is_replaced(self, ctx, seed, vendor, directory) -> None:
        seed(make_member("F1", vendor_id=UNKNOWN_VENDOR_ID))
        resolver = IdentityResolver(ctx)

        (created,) = await resolver.create_missing(await resolver.resolve("B1"))

        assert created.vendor_id in vendor.users
        assert directory.members["F1"].vendor_id == created.vendor_id != UNKNOWN_VENDOR_ID

    @pytest.mark.asyncio()
    async def test_failed_create_is_isolated(self, ctx, seed, vendor) -> None:
        seed(make_member("F1", vendor_id=None), make_member("F2", vendor_id=None))
        vendor.fail["create_user"] = {"F1"}
        resolver = IdentityResolver(ctx)

        created = await resolver.create_missing(await resolver.resolve("B1"))

        assert [m.employee_ps_id for m in created] == ["F2"]

    @pytest.mark.asyncio()
    async def test_reread_failure_falls_back_to_local_copy(
        self, ctx, seed, directory
    ) -> None:
        seed(make_member("F1", vendor_id=None))
        resolver = IdentityResolver(ctx)
        resolution = await resolver.resolve("B1")
        directory.fail.add("get_members")

        created = await resolver.create_missing(resolution)

        assert len(created) == 1
        assert created[0].vendor_id == directory.members["F1"].vendor_id

    @pytest.mark.asyncio()
    async def test_mirror_rows_follow_new_identity(self, ctx, seed, mirror) -> None:
        from apps.chat_sync.schemas import GroupType, MembershipRecord

        seed(make_member("F1", vendor_id=None))
        await mirror.insert_many(
            [
                MembershipRecord(
                    group_id="g-old",
                    branch_id="B1",
                    vendor_id="gone",
                    employee_ps_id="F1",
                    group_name="Member F1 - North (#B1)",
                    group_type=GroupType.GROUP,
                    is_group_creator=True,
                )
            ]
        )
        resolver = IdentityResolver(ctx)

        (created,) = await resolver.create_missing(await resolver.resolve("B1"))

        assert mirror.records[0].vendor_id == created.vendor_id

    @pytest.mark.asyncio()
    async def test_nothing_missing_is_a_no_op(self, ctx, seed, vendor) -> None:
        seed(make_member("F1"))
        resolver = IdentityResolver(ctx)

        assert await resolver.create_missing(await resolver.resolve("B1")) == []
        assert vendor.mutations == []
