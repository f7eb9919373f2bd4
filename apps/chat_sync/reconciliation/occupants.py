"""Occupant diffing, application and mirroring.

The diff is a pure set computation. Applying it issues at most one add and
one remove call per group, then mirrors the change into the membership store.
Mirror failures are logged and never undo a vendor change.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from apps.chat_sync.metrics import POD_LABEL, batch_failures_total
from apps.chat_sync.schemas import (
    UNKNOWN_VENDOR_ID,
    ActiveStatus,
    Branch,
    DesiredGroup,
    GroupPayload,
    GroupType,
    MemberRef,
    MembershipFilter,
    MembershipRecord,
    VendorGroup,
    VisibilityLevel,
)
from libs.common.batch import failures, successes
from libs.common.exceptions import StoreWriteFailedError

if TYPE_CHECKING:
    from datetime import datetime

    from apps.chat_sync.reconciliation.context import ReconciliationContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OccupantDiff:
    add: tuple[MemberRef, ...] = ()
    remove: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.add and not self.remove


@dataclass(frozen=True)
class GroupTarget:
    """An observed group paired with the members it should have."""

    group: VendorGroup
    members: frozenset[MemberRef]
    primary_member_ps_id: str | None = None


def compute_occupant_diff(
    desired: Iterable[MemberRef],
    observed_ids: Iterable[str],
    root_vendor_id: str = "",
) -> OccupantDiff:
    """Compute the minimal add/remove sets for one group.

    The root vendor id is never removed and placeholder identities are never
    added.

    Examples:
        >>> diff = compute_occupant_diff(
        ...     [MemberRef("1", "PS-1"), MemberRef("2", "PS-2")], ["2", "3", "root"], "root"
        ... )
        >>> diff.add, diff.remove
        ((MemberRef(vendor_id='1', employee_ps_id='PS-1'),), ('3',))
    """
    observed = set(observed_ids)
    desired_by_id = {
        ref.vendor_id: ref for ref in desired if ref.vendor_id and ref.vendor_id != UNKNOWN_VENDOR_ID
    }
    missing = (ref for vid, ref in desired_by_id.items() if vid not in observed)
    add = tuple(sorted(missing, key=lambda r: r.vendor_id))
    protected = {root_vendor_id} if root_vendor_id else set()
    remove = tuple(sorted(observed - set(desired_by_id) - protected))
    return OccupantDiff(add=add, remove=remove)


def build_records(
    *,
    group_id: str,
    group_name: str,
    group_type: GroupType,
    branch_id: str,
    members: Iterable[MemberRef],
    primary_member_ps_id: str | None,
    now: datetime,
) -> list[MembershipRecord]:
    """Mirror rows for members joining a group. The primary member of an individual group is its creator."""
    return [
        MembershipRecord(
            group_id=group_id,
            branch_id=branch_id,
            vendor_id=ref.vendor_id,
            employee_ps_id=ref.employee_ps_id,
            group_name=group_name,
            group_type=group_type,
            visibility_level=VisibilityLevel.ADMIN,
            is_group_creator=(
                group_type == GroupType.GROUP and ref.employee_ps_id == primary_member_ps_id
            ),
            is_archived=False,
            is_activated=True,
            active_status=ActiveStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        for ref in members
    ]


class OccupantReconciler:
    """Applies occupant diffs and group creation, then mirrors the result."""

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx

    async def apply(self, target: GroupTarget, branch_id: str) -> OccupantDiff:
        """Bring one observed group to its desired occupant set.

        Raises:
            VendorCallFailedError: If the add or remove call fails
        """
        group = target.group
        diff = compute_occupant_diff(
            target.members, group.occupant_ids, self.ctx.config.root_vendor_id
        )
        if diff.is_empty:
            return diff

        if diff.add:
            await self.ctx.vendor.add_occupants(group.id, [ref.vendor_id for ref in diff.add])
            records = build_records(
                group_id=group.id,
                group_name=group.name,
                group_type=group.group_type,
                branch_id=branch_id,
                members=diff.add,
                primary_member_ps_id=target.primary_member_ps_id,
                now=self.ctx.now(),
            )
            await self._mirror_insert(records, group.id)

        if diff.remove:
            await self.ctx.vendor.remove_occupants(group.id, list(diff.remove))
            results = await self.ctx.executor.run(
                list(diff.remove),
                self.ctx.config.occupant_chunk_size,
                lambda vendor_id: self.ctx.store.delete_many(
                    MembershipFilter(group_id=group.id, branch_id=branch_id, vendor_id=vendor_id)
                ),
            )
            for failed in failures(results):
                batch_failures_total.labels(operation="mirror_delete", pod=POD_LABEL).inc()
                logger.warning(
                    "Failed to delete mirror record",
                    extra={"group_id": group.id, "vendor_id": failed.item, "error": str(failed.error)},
                )

        logger.info(
            "Reconciled group occupants",
            extra={
                "branch_id": branch_id,
                "group_id": group.id,
                "added": len(diff.add),
                "removed": len(diff.remove),
            },
        )
        return diff

    async def apply_many(self, targets: list[GroupTarget], branch_id: str) -> int:
        """Apply diffs for many groups; one group's failure never blocks another.

        Returns:
            Number of groups that changed
        """
        results = await self.ctx.executor.run(
            targets,
            self.ctx.config.occupant_chunk_size,
            lambda target: self.apply(target, branch_id),
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="apply_occupants", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to reconcile group occupants",
                extra={
                    "branch_id": branch_id,
                    "group_id": failed.item.group.id,
                    "error": str(failed.error),
                    "error_type": type(failed.error).__name__,
                },
            )
        return sum(1 for r in successes(results) if r.value is not None and not r.value.is_empty)

    async def create(self, desired: DesiredGroup, branch: Branch) -> str:
        """Create a vendor group for a desired group and mirror its members.

        Raises:
            VendorCallFailedError: If the vendor create fails
        """
        members = sorted(
            (ref for ref in desired.members if ref.vendor_id != UNKNOWN_VENDOR_ID),
            key=lambda r: r.vendor_id,
        )
        group_id = await self.ctx.vendor.create_group(
            GroupPayload(
                name=desired.name,
                occupant_ids=[ref.vendor_id for ref in members],
                branch_id=branch.branch_id,
                branch_name=branch.branch_name,
                is_announcement=desired.group_type == GroupType.BROADCAST,
                is_archived=False,
                primary_member_ps_id=desired.primary_member_ps_id,
            )
        )
        records = build_records(
            group_id=group_id,
            group_name=desired.name,
            group_type=desired.group_type,
            branch_id=branch.branch_id,
            members=members,
            primary_member_ps_id=desired.primary_member_ps_id,
            now=self.ctx.now(),
        )
        await self._mirror_insert(records, group_id)
        logger.info(
            "Created chat group",
            extra={
                "branch_id": branch.branch_id,
                "group_id": group_id,
                "category": desired.category.value,
                "members": len(members),
            },
        )
        return group_id

    async def create_many(self, desired_groups: list[DesiredGroup], branch: Branch) -> list[str]:
        """Create groups in chunks. Returns the ids of groups that were created."""
        results = await self.ctx.executor.run(
            desired_groups,
            self.ctx.config.group_create_chunk_size,
            lambda desired: self.create(desired, branch),
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="create_group", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to create chat group",
                extra={
                    "branch_id": branch.branch_id,
                    "group_name": failed.item.name,
                    "error": str(failed.error),
                    "error_type": type(failed.error).__name__,
                },
            )
        return [r.value for r in successes(results) if r.value is not None]

    async def _mirror_insert(self, records: list[MembershipRecord], group_id: str) -> None:
        try:
            await self.ctx.store.insert_many(records)
        except StoreWriteFailedError as exc:
            batch_failures_total.labels(operation="mirror_insert", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to mirror group members",
                extra={"group_id": group_id, "records": len(records), "error": str(exc)},
            )
