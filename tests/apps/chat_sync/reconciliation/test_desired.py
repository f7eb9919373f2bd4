"""Tests for the desired group topology."""

from __future__ import annotations

import pytest

from apps.chat_sync.reconciliation import DesiredStateComputer, build_desired_groups
from apps.chat_sync.reconciliation.desired import split_roster
from apps.chat_sync.schemas import (
    UNKNOWN_VENDOR_ID,
    Branch,
    GroupCategory,
    GroupType,
    JobCategory,
    MemberRef,
)
from tests.apps.chat_sync.fakes import make_member

BRANCH = Branch(branch_id="B1", branch_name="North")
CATEGORIES = {
    "RN": frozenset({JobCategory.CLINICAL}),
    "CLERK": frozenset({JobCategory.NON_CLINICAL}),
    "FLOAT": frozenset({JobCategory.CLINICAL, JobCategory.NON_CLINICAL}),
}


def ref(ps_id: str) -> MemberRef:
    return MemberRef(f"v-{ps_id}", ps_id)


def by_category(groups):
    return {g.category: g for g in groups if g.category != GroupCategory.INDIVIDUAL}


class TestSplitRoster:
    def test_splits_field_staff_and_branch_admins(self) -> None:
        members = [
            make_member("F1", level=1),
            make_member("A1", level=2),
            make_member("A2", level=5),
            make_member("C1", level=6),
        ]

        field_staff, admins = split_roster(members)

        assert [m.employee_ps_id for m in field_staff] == ["F1"]
        assert [m.employee_ps_id for m in admins] == ["A1", "A2"]

    def test_members_without_identity_are_skipped(self) -> None:
        members = [make_member("F1", vendor_id=None), make_member("F2", vendor_id=UNKNOWN_VENDOR_ID)]

        assert split_roster(members) == ([], [])


class TestBuildDesiredGroups:
    def test_broadcast_membership(self) -> None:
        members = [
            make_member("A1", level=3, job_id="MGR"),
            make_member("F1", job_id="RN"),
            make_member("F2", job_id="CLERK"),
            make_member("F3", job_id="FLOAT"),
            make_member("F4", job_id="UNKNOWN"),
        ]

        groups = by_category(build_desired_groups(BRANCH, members, CATEGORIES))

        assert groups[GroupCategory.ALL_MEMBERS].members == {
            ref("A1"), ref("F1"), ref("F2"), ref("F3"), ref("F4")
        }
        assert groups[GroupCategory.CLINICAL].members == {ref("A1"), ref("F1"), ref("F3")}
        assert groups[GroupCategory.NON_CLINICAL].members == {ref("A1"), ref("F2"), ref("F3")}
        assert all(g.group_type == GroupType.BROADCAST for g in groups.values())
        assert groups[GroupCategory.NON_CLINICAL].name == "Non-Clinical - North (#B1)"

    def test_one_individual_group_per_field_staff(self) -> None:
        members = [
            make_member("A1", level=2),
            make_member("A2", level=4),
            make_member("F1", display_name="Jane Doe"),
            make_member("F2"),
        ]

        individual = [
            g
            for g in build_desired_groups(BRANCH, members, CATEGORIES)
            if g.category == GroupCategory.INDIVIDUAL
        ]

        assert [g.primary_member_ps_id for g in individual] == ["F1", "F2"]
        assert individual[0].name == "Jane Doe - North (#B1)"
        assert individual[0].group_type == GroupType.GROUP
        assert individual[0].members == {ref("A1"), ref("A2"), ref("F1")}

    def test_access_override_decides_job_and_level(self) -> None:
        promoted = make_member("F1", level=1, job_id="CLERK").model_copy(
            update={"access_level": 3}
        )
        reassigned = make_member("F2", job_id="CLERK").model_copy(update={"access_job_id": "RN"})

        groups = build_desired_groups(BRANCH, [promoted, reassigned], CATEGORIES)

        assert [g.primary_member_ps_id for g in groups[3:]] == ["F2"]
        assert by_category(groups)[GroupCategory.CLINICAL].members == {ref("F1"), ref("F2")}

    def test_higher_levels_only_join_all_members(self) -> None:
        members = [make_member("C1", level=6), make_member("S1", level=9)]

        groups = build_desired_groups(BRANCH, members, CATEGORIES)

        assert len(groups) == 3
        categories = by_category(groups)
        assert categories[GroupCategory.ALL_MEMBERS].members == {ref("C1"), ref("S1")}
        assert categories[GroupCategory.CLINICAL].members == frozenset()

    def test_empty_branch_still_wants_broadcast_groups(self) -> None:
        groups = build_desired_groups(BRANCH, [], CATEGORIES)

        assert [g.category for g in groups] == [
            GroupCategory.ALL_MEMBERS,
            GroupCategory.CLINICAL,
            GroupCategory.NON_CLINICAL,
        ]
        assert all(not g.members for g in groups)


class TestDesiredStateComputer:
    @pytest.mark.asyncio()
    async def test_job_lookup_runs_once_per_job(self, ctx, directory) -> None:
        calls: list[str] = []
        original = directory.get_job_categories

        async def tracking(job_id: str):
            calls.append(job_id)
            return await original(job_id)

        directory.get_job_categories = tracking
        members = [make_member("F1"), make_member("F2"), make_member("F3", job_id="CLERK")]

        await DesiredStateComputer(ctx).compute(BRANCH, members)

        assert sorted(calls) == ["CLERK", "RN"]

    @pytest.mark.asyncio()
    async def test_failed_job_lookup_drops_holders_from_category(self, ctx, directory) -> None:
        directory.fail.add("get_job_categories:RN")
        members = [
            make_member("A1", level=2, job_id="MGR"),
            make_member("F1", job_id="RN"),
            make_member("F2", job_id="CNA"),
        ]

        groups = by_category(await DesiredStateComputer(ctx).compute(BRANCH, members))

        assert groups[GroupCategory.CLINICAL].members == {ref("A1"), ref("F2")}
        assert ref("F1") in groups[GroupCategory.ALL_MEMBERS].members
