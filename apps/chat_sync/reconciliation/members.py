"""Per-member drift detection and role transitions.

Used by member reconciliation, which runs when one member's directory data
changes rather than on the branch schedule.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apps.chat_sync.metrics import POD_LABEL, batch_failures_total
from apps.chat_sync.reconciliation.identity import build_user_data
from apps.chat_sync.reconciliation.observed import VendorStateFetcher
from apps.chat_sync.schemas import (
    GroupFilter,
    GroupType,
    MembershipFilter,
    MembershipRecord,
    OrgMember,
    VendorUser,
    VendorUserUpdate,
)
from libs.common.batch import failures
from libs.common.exceptions import StoreWriteFailedError

if TYPE_CHECKING:
    from apps.chat_sync.reconciliation.context import ReconciliationContext

logger = logging.getLogger(__name__)


def detect_drift(member: OrgMember, vendor_user: VendorUser) -> tuple[bool, VendorUserUpdate]:
    """Compare a member with the vendor's record of the same identity.

    Returns:
        (drifted, update) where update carries the directory's current values
    """
    expected = build_user_data(member)
    update = VendorUserUpdate(
        email=member.work_email,
        full_name=member.display_name,
        custom_data=expected,
    )
    current = vendor_user.custom_data
    if current is None:
        return True, update

    drifted = (
        (vendor_user.email or "").lower() != member.work_email.lower()
        or vendor_user.full_name != member.display_name
        or sorted(current.branch_ids) != sorted(expected.branch_ids)
        or current.ps_id != expected.ps_id
        or current.profile_image != expected.profile_image
        or current.job_id != expected.job_id
        or current.job_level != expected.job_level
        or current.access_level != expected.access_level
    )
    return drifted, update


class MemberRoleEnforcer:
    """Applies the group consequences of a member's current classification in one branch."""

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx
        self.fetcher = VendorStateFetcher(ctx)

    async def archive_individual_group(self, record: MembershipRecord) -> bool:
        """Archive a branch admin's former individual group.

        Returns:
            True if the group was archived, False if it already was

        Raises:
            VendorCallFailedError: If the vendor update fails
        """
        if record.is_archived:
            return False
        await self.ctx.vendor.update_group(record.group_id, is_archived=True)
        try:
            await self.ctx.store.update_many(
                MembershipFilter(group_id=record.group_id), {"is_archived": True}
            )
        except StoreWriteFailedError as exc:
            logger.warning(
                "Failed to mirror group archive",
                extra={"group_id": record.group_id, "error": str(exc)},
            )
        logger.info(
            "Archived individual group of branch admin",
            extra={
                "branch_id": record.branch_id,
                "group_id": record.group_id,
                "employee_ps_id": record.employee_ps_id,
            },
        )
        return True

    async def leave_admin_groups(
        self, member: OrgMember, branch_id: str, own_group_id: str | None
    ) -> int:
        """Remove a field staff member from other members' individual groups.

        Returns:
            Number of groups the member was removed from

        Raises:
            VendorCallFailedError: If the group listing fails
        """
        if member.vendor_id is None:
            return 0
        vendor_id = member.vendor_id
        groups = await self.fetcher.fetch_all(
            GroupFilter(branch_id=branch_id, vendor_ids=(vendor_id,), group_type=GroupType.GROUP)
        )
        targets = [
            g.id for g in groups if g.id != own_group_id and not g.is_announcement
        ]
        if not targets:
            return 0

        removed = await self.ctx.executor.run(
            targets,
            self.ctx.config.group_create_chunk_size,
            lambda group_id: self.ctx.vendor.remove_occupants(group_id, [vendor_id]),
        )
        for failed in failures(removed):
            batch_failures_total.labels(operation="remove_occupants", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to remove member from group",
                extra={"group_id": failed.item, "vendor_id": vendor_id, "error": str(failed.error)},
            )

        left = [r.item for r in removed if r.ok]
        mirrored = await self.ctx.executor.run(
            left,
            self.ctx.config.mirror_query_chunk_size,
            lambda group_id: self.ctx.store.delete_many(
                MembershipFilter(
                    group_id=group_id,
                    branch_id=branch_id,
                    employee_ps_id=member.employee_ps_id,
                )
            ),
        )
        for failed in failures(mirrored):
            batch_failures_total.labels(operation="mirror_delete", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to delete mirror record",
                extra={"group_id": failed.item, "employee_ps_id": member.employee_ps_id},
            )

        logger.info(
            "Removed field staff from admin groups",
            extra={"branch_id": branch_id, "employee_ps_id": member.employee_ps_id, "groups": len(left)},
        )
        return len(left)
