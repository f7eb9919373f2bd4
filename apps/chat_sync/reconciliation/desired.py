"""Desired group topology of a branch.

Derived fresh from directory data on every pass:
- All Members: every valid member
- Clinical / Non-Clinical: branch admins plus field staff whose job carries the category
- Individual: one group per field staff member, shared with every branch admin
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from apps.chat_sync.metrics import POD_LABEL, batch_failures_total
from apps.chat_sync.naming import broadcast_group_name, individual_group_name
from apps.chat_sync.schemas import (
    Branch,
    DesiredGroup,
    GroupCategory,
    GroupType,
    JobCategory,
    MemberClassification,
    OrgMember,
)
from libs.common.batch import failures

if TYPE_CHECKING:
    from apps.chat_sync.reconciliation.context import ReconciliationContext

logger = logging.getLogger(__name__)

_CATEGORY_FOR_JOB = {
    JobCategory.CLINICAL: GroupCategory.CLINICAL,
    JobCategory.NON_CLINICAL: GroupCategory.NON_CLINICAL,
}


def split_roster(members: Iterable[OrgMember]) -> tuple[list[OrgMember], list[OrgMember]]:
    """Return (field staff, branch admins) among members with a vendor identity."""
    field_staff: list[OrgMember] = []
    admins: list[OrgMember] = []
    for member in members:
        if not member.has_vendor_identity:
            continue
        if member.classification == MemberClassification.FIELD_STAFF:
            field_staff.append(member)
        elif member.classification == MemberClassification.BRANCH_ADMIN:
            admins.append(member)
    return field_staff, admins


def build_desired_groups(
    branch: Branch,
    members: Iterable[OrgMember],
    job_categories: dict[str, frozenset[JobCategory]],
) -> list[DesiredGroup]:
    """Pure computation of every group the branch should have.

    Args:
        branch: Branch the groups belong to
        members: Valid members of the branch
        job_categories: Categories per job id; field staff whose job is absent
            join neither Clinical nor Non-Clinical

    Returns:
        The three broadcast groups followed by one individual group per field staff member
    """
    members = [m for m in members if m.has_vendor_identity]
    field_staff, admins = split_roster(members)
    admin_refs = frozenset(m.ref() for m in admins)

    groups = [
        DesiredGroup(
            branch_id=branch.branch_id,
            category=GroupCategory.ALL_MEMBERS,
            group_type=GroupType.BROADCAST,
            name=broadcast_group_name(GroupCategory.ALL_MEMBERS, branch.branch_id, branch.branch_name),
            members=frozenset(m.ref() for m in members),
        )
    ]

    for job_category, group_category in _CATEGORY_FOR_JOB.items():
        matching = frozenset(
            m.ref()
            for m in field_staff
            if job_category in job_categories.get(m.effective_job_id or "", frozenset())
        )
        groups.append(
            DesiredGroup(
                branch_id=branch.branch_id,
                category=group_category,
                group_type=GroupType.BROADCAST,
                name=broadcast_group_name(group_category, branch.branch_id, branch.branch_name),
                members=admin_refs | matching,
            )
        )

    for member in field_staff:
        groups.append(
            DesiredGroup(
                branch_id=branch.branch_id,
                category=GroupCategory.INDIVIDUAL,
                group_type=GroupType.GROUP,
                name=individual_group_name(member.display_name, branch.branch_id, branch.branch_name),
                members=admin_refs | {member.ref()},
                primary_member_ps_id=member.employee_ps_id,
            )
        )
    return groups


class DesiredStateComputer:
    """Builds the desired topology, resolving job categories through the directory."""

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx

    async def load_job_categories(
        self, members: Iterable[OrgMember]
    ) -> dict[str, frozenset[JobCategory]]:
        """Look up categories once per distinct job id.

        A failed lookup leaves that job out of the result, so its holders
        drop out of Clinical/Non-Clinical for this pass only.
        """
        job_ids = list(dict.fromkeys(m.effective_job_id for m in members if m.effective_job_id))
        results = await self.ctx.executor.run(
            job_ids, self.ctx.config.occupant_chunk_size, self.ctx.directory.get_job_categories
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="get_job_categories", pod=POD_LABEL).inc()
            logger.warning(
                "Job category lookup failed",
                extra={"job_id": failed.item, "error": str(failed.error)},
            )
        return {r.item: frozenset(r.value or ()) for r in results if r.ok}

    async def compute(self, branch: Branch, valid_members: list[OrgMember]) -> list[DesiredGroup]:
        field_staff, _ = split_roster(valid_members)
        job_categories = await self.load_job_categories(field_staff)
        return build_desired_groups(branch, valid_members, job_categories)
