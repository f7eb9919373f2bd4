"""Chat group reconciler.

Drives vendor chat groups toward the topology computed from the org
directory. Every pass re-derives desired state and re-reads vendor state, so
an interrupted pass needs no rollback: the next one diffs from scratch.

Public API:
    - async reconcile_branch(branch_id) -> bool
    - async reconcile_member(employee_ps_id) -> None
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

import psycopg
from redis.exceptions import LockError, RedisError

from apps.chat_sync.metrics import (
    POD_LABEL,
    batch_failures_total,
    reconciliation_duration_seconds,
    reconciliations_total,
)
from apps.chat_sync.reconciliation.context import ReconciliationContext
from apps.chat_sync.reconciliation.desired import DesiredStateComputer
from apps.chat_sync.reconciliation.identity import IdentityResolver
from apps.chat_sync.reconciliation.members import MemberRoleEnforcer, detect_drift
from apps.chat_sync.reconciliation.observed import ObservedState, VendorStateFetcher
from apps.chat_sync.reconciliation.occupants import GroupTarget, OccupantReconciler
from apps.chat_sync.schemas import (
    ActiveStatus,
    Branch,
    DesiredGroup,
    GroupCategory,
    GroupType,
    MemberClassification,
    MembershipFilter,
    MembershipRecord,
    OrgMember,
)
from libs.common.batch import failures
from libs.common.exceptions import (
    ChatSyncError,
    IdentityMissingError,
    NotFoundError,
    StoreWriteFailedError,
    VendorCallFailedError,
)
from libs.common.logging import LogContext
from libs.redis_client import RedisKeys

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=UTC)


@dataclass
class IndividualGroupPlan:
    """Lifecycle actions for individual groups, decided before anything is applied."""

    to_create: list[DesiredGroup] = field(default_factory=list)
    outdated_group_ids: set[str] = field(default_factory=set)
    """Vendor groups to delete: orphans of failed runs and duplicates."""
    stale_mirror_group_ids: set[str] = field(default_factory=set)
    """Groups whose mirror rows must go (deleted or vanished vendor groups)."""
    to_unarchive: list[MembershipRecord] = field(default_factory=list)
    targets: list[GroupTarget] = field(default_factory=list)


def _record_key(record: MembershipRecord) -> datetime:
    created = record.created_at or _OLDEST
    return created if created.tzinfo else created.replace(tzinfo=UTC)


def plan_individual_groups(
    desired_groups: list[DesiredGroup],
    records_by_member: dict[str, list[MembershipRecord]],
    observed: ObservedState,
) -> IndividualGroupPlan:
    """Decide create/unarchive/delete/diff actions for every field staff member.

    Args:
        desired_groups: Individual groups the branch should have
        records_by_member: Active creator records keyed by employee id
        observed: Vendor groups of the branch
    """
    plan = IndividualGroupPlan()
    owners = {
        record.group_id: member_ps_id
        for member_ps_id, records in records_by_member.items()
        for record in records
    }
    for desired in desired_groups:
        ps_id = desired.primary_member_ps_id or ""
        # Display names are not unique: skip groups that belong to someone else,
        # and archived groups the vendor refused to delete
        same_name = [
            g
            for g in observed.by_name(desired.name)
            if not g.is_announcement
            and not g.is_archived
            and g.primary_member_ps_id in (None, ps_id)
            and owners.get(g.id, ps_id) == ps_id
        ]
        records = records_by_member.get(ps_id, [])

        if not records:
            # A same-named group without a record is left over from a failed run
            plan.outdated_group_ids.update(g.id for g in same_name)
            plan.to_create.append(desired)
            continue

        keeper = min(records, key=lambda r: (r.group_id not in observed.groups, _record_key(r)))
        duplicates = {r.group_id for r in records if r.group_id != keeper.group_id}
        plan.outdated_group_ids.update(duplicates)
        plan.outdated_group_ids.update(g.id for g in same_name if g.id != keeper.group_id)

        group = observed.groups.get(keeper.group_id)
        if group is None:
            plan.stale_mirror_group_ids.add(keeper.group_id)
            plan.to_create.append(desired)
            continue

        if keeper.is_archived or group.is_archived:
            plan.to_unarchive.append(keeper)
        plan.targets.append(
            GroupTarget(group=group, members=desired.members, primary_member_ps_id=ps_id)
        )

    plan.stale_mirror_group_ids.update(plan.outdated_group_ids)
    return plan


class ChatGroupReconciler:
    """Reconcile vendor chat groups with org directory data.

    Example:
        >>> reconciler = ChatGroupReconciler(ctx)
        >>> await reconciler.reconcile_branch("42")
        True
        >>> await reconciler.reconcile_member("PS-100")
    """

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx
        self.identity = IdentityResolver(ctx)
        self.desired = DesiredStateComputer(ctx)
        self.fetcher = VendorStateFetcher(ctx)
        self.occupants = OccupantReconciler(ctx)
        self.roles = MemberRoleEnforcer(ctx)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def reconcile_branch(self, branch_id: str) -> bool:
        """Converge every chat group of one branch.

        Returns:
            True if the pass ran to completion, False if it failed while
            establishing its working set or another worker holds the branch.

        Raises:
            NotFoundError: If the branch does not exist
        """
        with LogContext() as transaction_id:
            start = time.monotonic()
            async with self._branch_lock(branch_id) as acquired:
                if not acquired:
                    logger.info(
                        "Branch reconciliation already running elsewhere, skipping",
                        extra={"branch_id": branch_id},
                    )
                    reconciliations_total.labels(
                        operation="branch", status="skipped", pod=POD_LABEL
                    ).inc()
                    return False

                try:
                    await self._reconcile_branch(branch_id)
                except NotFoundError:
                    reconciliations_total.labels(
                        operation="branch", status="failed", pod=POD_LABEL
                    ).inc()
                    raise
                except (ChatSyncError, psycopg.Error) as exc:
                    logger.error(
                        "Branch reconciliation failed",
                        extra={
                            "branch_id": branch_id,
                            "transaction_id": transaction_id,
                            "error": str(exc),
                            "error_type": type(exc).__name__,
                        },
                        exc_info=True,
                    )
                    reconciliations_total.labels(
                        operation="branch", status="failed", pod=POD_LABEL
                    ).inc()
                    return False

            duration = time.monotonic() - start
            reconciliation_duration_seconds.labels(operation="branch").observe(duration)
            reconciliations_total.labels(operation="branch", status="success", pod=POD_LABEL).inc()
            logger.info(
                "Branch reconciliation complete",
                extra={"branch_id": branch_id, "duration_seconds": round(duration, 3)},
            )
            return True

    async def reconcile_member(self, employee_ps_id: str) -> None:
        """Converge groups after one member's directory data changed.

        Raises:
            NotFoundError: If the member does not exist
            IdentityMissingError: If the member has no live vendor identity
            VendorCallFailedError: If the member's vendor record cannot be read
        """
        with LogContext():
            start = time.monotonic()
            try:
                await self._reconcile_member(employee_ps_id)
            except (ChatSyncError, psycopg.Error):
                reconciliations_total.labels(
                    operation="member", status="failed", pod=POD_LABEL
                ).inc()
                raise
            reconciliation_duration_seconds.labels(operation="member").observe(
                time.monotonic() - start
            )
            reconciliations_total.labels(operation="member", status="success", pod=POD_LABEL).inc()

    # -------------------------------------------------------------------------
    # Branch pass
    # -------------------------------------------------------------------------

    async def _reconcile_branch(self, branch_id: str) -> None:
        branch = await self.ctx.directory.get_branch(branch_id)
        if branch is None:
            raise NotFoundError(f"Branch {branch_id} not found")
        logger.info("Branch reconciliation started", extra={"branch_id": branch_id})

        # 1. Resolve vendor identities, creating the missing ones
        resolution = await self.identity.resolve(branch_id)
        created = await self.identity.create_missing(resolution)
        valid_members = resolution.valid_members + created

        # 2. Observe vendor groups
        observed = await self.fetcher.fetch_branch(branch_id)

        # 3. Plan from the complete valid-member set
        desired = await self.desired.compute(branch, valid_members)
        broadcast = {g.category: g for g in desired if g.group_type == GroupType.BROADCAST}
        individual = [g for g in desired if g.category == GroupCategory.INDIVIDUAL]
        records = await self._load_creator_records(branch_id, individual)
        plan = plan_individual_groups(individual, records, observed)

        # 4. Individual group lifecycle
        await self._unarchive(plan.to_unarchive)
        outdated = plan.outdated_group_ids | set(observed.duplicate_broadcast_ids)
        await self._delete_groups(branch_id, outdated)
        await self._delete_mirror_groups(branch_id, plan.stale_mirror_group_ids | outdated)
        observed.discard(outdated)
        plan.targets = [t for t in plan.targets if t.group.id not in outdated]
        await self.occupants.create_many(plan.to_create, branch)

        # 5. Individual group occupants (admins + primary member)
        await self.occupants.apply_many(plan.targets, branch_id)

        # 6. Broadcast groups against the final valid-member set
        await self._reconcile_broadcast(branch, broadcast, observed)

        logger.info(
            "Branch plan applied",
            extra={
                "branch_id": branch_id,
                "valid_members": len(valid_members),
                "created_identities": len(created),
                "individual_groups_created": len(plan.to_create),
                "groups_deleted": len(outdated),
                "groups_unarchived": len(plan.to_unarchive),
            },
        )

    async def _reconcile_broadcast(
        self,
        branch: Branch,
        desired: dict[GroupCategory, DesiredGroup],
        observed: ObservedState,
    ) -> None:
        missing = [d for category, d in desired.items() if category not in observed.broadcast]
        await self.occupants.create_many(missing, branch)
        targets = [
            GroupTarget(group=observed.broadcast[category], members=d.members)
            for category, d in desired.items()
            if category in observed.broadcast
        ]
        await self.occupants.apply_many(targets, branch.branch_id)

    async def _load_creator_records(
        self, branch_id: str, individual: list[DesiredGroup]
    ) -> dict[str, list[MembershipRecord]]:
        """Active creator records of the branch's field staff, keyed by employee id.

        A failed read aborts the pass: without it every individual group would
        look orphaned and be recreated.
        """
        refs = [
            ref
            for desired in individual
            for ref in desired.members
            if ref.employee_ps_id == desired.primary_member_ps_id
        ]
        results = await self.ctx.executor.run_chunks(
            refs,
            self.ctx.config.mirror_query_chunk_size,
            lambda chunk: self._find_all(
                MembershipFilter(
                    branch_id=branch_id,
                    employee_ps_ids=tuple(r.employee_ps_id for r in chunk),
                    vendor_ids=tuple(r.vendor_id for r in chunk),
                    group_type=GroupType.GROUP,
                    is_group_creator=True,
                    active_status=ActiveStatus.ACTIVE,
                )
            ),
        )
        failed = failures(results)
        if failed:
            raise failed[0].error  # type: ignore[misc]

        by_member: dict[str, list[MembershipRecord]] = defaultdict(list)
        for result in results:
            for record in result.value or []:
                by_member[record.employee_ps_id].append(record)
        return by_member

    async def _find_all(self, membership_filter: MembershipFilter) -> list[MembershipRecord]:
        page_size = self.ctx.config.mirror_query_chunk_size
        found: list[MembershipRecord] = []
        skip = 0
        while True:
            page = await self.ctx.store.find(membership_filter, skip=skip, limit=page_size)
            found.extend(page)
            if len(page) < page_size:
                return found
            skip += page_size

    async def _unarchive(self, records: list[MembershipRecord]) -> None:
        async def unarchive(record: MembershipRecord) -> None:
            await self.ctx.vendor.update_group(record.group_id, is_archived=False)
            try:
                await self.ctx.store.update_many(
                    MembershipFilter(group_id=record.group_id), {"is_archived": False}
                )
            except StoreWriteFailedError as exc:
                logger.warning(
                    "Failed to mirror group unarchive",
                    extra={"group_id": record.group_id, "error": str(exc)},
                )

        results = await self.ctx.executor.run(
            records, self.ctx.config.group_create_chunk_size, unarchive
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="unarchive_group", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to unarchive individual group",
                extra={"group_id": failed.item.group_id, "error": str(failed.error)},
            )

    async def _delete_groups(self, branch_id: str, group_ids: set[str]) -> None:
        results = await self.ctx.executor.run(
            sorted(group_ids), self.ctx.config.group_create_chunk_size, self.ctx.vendor.delete_group
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="delete_group", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to delete outdated group",
                extra={"branch_id": branch_id, "group_id": failed.item, "error": str(failed.error)},
            )

    async def _delete_mirror_groups(self, branch_id: str, group_ids: set[str]) -> None:
        results = await self.ctx.executor.run_chunks(
            sorted(group_ids),
            self.ctx.config.mirror_query_chunk_size,
            lambda chunk: self.ctx.store.delete_many(
                MembershipFilter(branch_id=branch_id, group_ids=tuple(chunk))
            ),
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="mirror_delete", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to delete mirror records of removed groups",
                extra={"branch_id": branch_id, "groups": len(failed.item), "error": str(failed.error)},
            )

    # -------------------------------------------------------------------------
    # Member pass
    # -------------------------------------------------------------------------

    async def _reconcile_member(self, employee_ps_id: str) -> None:
        member = await self.ctx.directory.get_member(employee_ps_id)
        if member is None:
            raise NotFoundError(f"Member {employee_ps_id} not found")
        if not member.has_vendor_identity or member.vendor_id is None:
            raise IdentityMissingError(f"Member {employee_ps_id} has no vendor identity")
        vendor_id = member.vendor_id

        # 1. Detect and push attribute drift
        users = await self.ctx.vendor.list_users(vendor_ids=[vendor_id], limit=1)
        vendor_user = next((u for u in users if u.id == vendor_id), None)
        if vendor_user is None:
            raise IdentityMissingError(
                f"Vendor identity {vendor_id} of member {employee_ps_id} no longer exists"
            )
        drifted, update = detect_drift(member, vendor_user)
        if drifted:
            try:
                await self.ctx.vendor.update_user(vendor_id, update)
            except VendorCallFailedError as exc:
                logger.warning(
                    "Failed to push member update to vendor",
                    extra={"employee_ps_id": employee_ps_id, "vendor_id": vendor_id, "error": str(exc)},
                )

        # 2. Apply role consequences per branch
        branch_ids = member.effective_branch_ids
        records = await self._find_all(
            MembershipFilter(
                employee_ps_id=employee_ps_id,
                branch_ids=tuple(branch_ids),
                group_type=GroupType.GROUP,
                is_group_creator=True,
                active_status=ActiveStatus.ACTIVE,
            )
        ) if branch_ids else []
        own_records = {r.branch_id: r for r in records}

        results = await self.ctx.executor.run(
            branch_ids,
            self.ctx.config.occupant_chunk_size,
            lambda branch_id: self._enforce_role(member, branch_id, own_records.get(branch_id)),
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="member_branch", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to apply member role in branch",
                extra={
                    "employee_ps_id": employee_ps_id,
                    "branch_id": failed.item,
                    "error": str(failed.error),
                    "error_type": type(failed.error).__name__,
                },
            )

        # 3. A changed role or job can ripple into every branch group
        if drifted:
            await self._ripple(employee_ps_id, branch_ids)

        logger.info(
            "Member reconciliation complete",
            extra={
                "employee_ps_id": employee_ps_id,
                "drifted": drifted,
                "classification": member.classification.value,
                "branches": len(branch_ids),
            },
        )

    async def _enforce_role(
        self, member: OrgMember, branch_id: str, own_record: MembershipRecord | None
    ) -> None:
        if member.classification == MemberClassification.BRANCH_ADMIN:
            if own_record is not None:
                await self.roles.archive_individual_group(own_record)
        elif member.classification == MemberClassification.FIELD_STAFF:
            own_group_id = own_record.group_id if own_record is not None else None
            await self.roles.leave_admin_groups(member, branch_id, own_group_id)

    async def _ripple(self, employee_ps_id: str, branch_ids: list[str]) -> None:
        results = await self.ctx.executor.run(
            branch_ids, self.ctx.config.occupant_chunk_size, self.reconcile_branch
        )
        for result in results:
            if not result.ok or result.value is False:
                logger.warning(
                    "Branch reconciliation after member change did not complete",
                    extra={
                        "employee_ps_id": employee_ps_id,
                        "branch_id": result.item,
                        "error": str(result.error) if result.error else None,
                    },
                )

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _branch_lock(self, branch_id: str) -> AsyncIterator[bool]:
        """Hold the branch lock if locking is configured; yield whether to proceed.

        An unreachable Redis degrades to running unlocked.
        """
        redis_client = self.ctx.redis_client
        if redis_client is None or not self.ctx.config.branch_lock_enabled:
            yield True
            return

        lock = redis_client.lock(
            RedisKeys.branch_lock(branch_id),
            timeout=self.ctx.config.branch_lock_timeout_seconds,
            blocking_timeout=0,
        )
        try:
            acquired = await lock.acquire(blocking=False)
        except RedisError as exc:
            logger.warning(
                "Branch lock unavailable, reconciling without it",
                extra={"branch_id": branch_id, "error": str(exc)},
            )
            yield True
            return

        if not acquired:
            yield False
            return
        try:
            yield True
        finally:
            try:
                await lock.release()
            except LockError as exc:
                logger.warning(
                    "Branch lock expired before release",
                    extra={"branch_id": branch_id, "error": str(exc)},
                )
