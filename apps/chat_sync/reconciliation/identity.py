"""Vendor identity resolution for a branch roster.

Every active member of a branch needs exactly one live vendor user before it
can be placed in any group. Recorded vendor ids are verified against the
vendor. Members whose id is unknown to the vendor, who never had one, or who
carry the placeholder id are queued for creation. Stale vendor users sharing
their email are deleted first so the vendor never holds two accounts for one
person.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from apps.chat_sync.metrics import POD_LABEL, batch_failures_total
from apps.chat_sync.schemas import (
    UNKNOWN_VENDOR_ID,
    ROSTER_JOB_LEVELS,
    MembershipFilter,
    OrgMember,
    VendorUser,
    VendorUserData,
    VendorUserPayload,
)
from libs.common.batch import failures, successes
from libs.common.exceptions import DirectoryCallFailedError, StoreWriteFailedError

if TYPE_CHECKING:
    from apps.chat_sync.reconciliation.context import ReconciliationContext

logger = logging.getLogger(__name__)


@dataclass
class IdentityResolution:
    """Outcome of resolving one branch roster."""

    branch_id: str
    active_members: list[OrgMember] = field(default_factory=list)
    valid_members: list[OrgMember] = field(default_factory=list)
    missing_identities: list[VendorUserPayload] = field(default_factory=list)
    """Members without a live identity, including placeholder ones; none of
    them joins a group until the identity is created and linked."""


def build_user_data(member: OrgMember) -> VendorUserData:
    return VendorUserData(
        ps_id=member.employee_ps_id,
        branch_ids=member.effective_branch_ids,
        job_id=member.effective_job_id,
        job_code=member.job_code,
        job_level=member.job_level,
        access_level=member.effective_level,
        profile_image=member.profile_image_url,
    )


def build_user_payload(member: OrgMember) -> VendorUserPayload:
    return VendorUserPayload(
        employee_ps_id=member.employee_ps_id,
        email=member.work_email,
        display_name=member.display_name,
        custom_data=build_user_data(member),
    )


class IdentityResolver:
    """Ensures each active branch member has a valid, unique vendor identity."""

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx

    async def list_active_members(self, branch_id: str) -> list[OrgMember]:
        """Page through the branch roster and keep active members.

        Raises:
            DirectoryCallFailedError: If any roster page cannot be read
        """
        page_size = self.ctx.config.member_page_size
        members: list[OrgMember] = []
        skip = 0
        while True:
            page = await self.ctx.directory.get_active_members(
                branch_id, job_levels=list(ROSTER_JOB_LEVELS), skip=skip, limit=page_size
            )
            members.extend(page)
            if len(page) < page_size:
                break
            skip += page_size
        return [member for member in members if member.is_active]

    async def resolve(self, branch_id: str) -> IdentityResolution:
        """Classify the branch roster by vendor identity state.

        Only the roster read is fatal; lookup and cleanup failures are logged.
        A member whose id lookup failed is kept as valid for this pass so a
        vendor outage never triggers a duplicate account.
        """
        active = await self.list_active_members(branch_id)
        resolution = IdentityResolution(branch_id=branch_id, active_members=active)

        recorded = [m for m in active if m.has_vendor_identity]
        missing = [m for m in active if not m.has_vendor_identity]
        placeholders = sum(1 for m in missing if m.vendor_id == UNKNOWN_VENDOR_ID)

        found, unverified = await self._lookup_by_ids(
            list(dict.fromkeys(m.vendor_id for m in recorded if m.vendor_id))
        )
        for member in recorded:
            if member.vendor_id in found or member.vendor_id in unverified:
                resolution.valid_members.append(member)
            else:
                missing.append(member)

        matched_emails = {u.email.lower() for u in found.values() if u.email}
        lookup_emails = list(
            dict.fromkeys(
                m.work_email.lower()
                for m in missing
                if m.work_email and m.work_email.lower() not in matched_emails
            )
        )
        by_email = await self._lookup_by_emails(lookup_emails)

        valid_ids = {m.vendor_id for m in resolution.valid_members}
        orphans = {
            user.id: user
            for user in by_email
            if user.id not in valid_ids and user.id != self.ctx.config.root_vendor_id
        }
        if orphans:
            await self._delete_orphans(branch_id, list(orphans.values()))

        resolution.missing_identities = [build_user_payload(m) for m in missing]

        logger.info(
            "Resolved branch identities",
            extra={
                "branch_id": branch_id,
                "active_members": len(active),
                "valid_members": len(resolution.valid_members),
                "missing_identities": len(resolution.missing_identities),
                "placeholder_identities": placeholders,
                "orphans": len(orphans),
            },
        )
        return resolution

    async def create_missing(self, resolution: IdentityResolution) -> list[OrgMember]:
        """Create vendor users for missing identities and link them back.

        Returns:
            Members (re-read from the directory) whose identity was created
            and linked. Members whose link failed are left out so a vendor
            id the directory does not know never enters a group.
        """
        payloads = resolution.missing_identities
        if not payloads:
            return []
        config = self.ctx.config
        executor = self.ctx.executor

        created_results = await executor.run(
            payloads, config.user_lookup_chunk_size, self.ctx.vendor.create_user
        )
        for failed in failures(created_results):
            batch_failures_total.labels(operation="create_user", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to create vendor identity",
                extra={
                    "branch_id": resolution.branch_id,
                    "employee_ps_id": failed.item.employee_ps_id,
                    "error": str(failed.error),
                    "error_type": type(failed.error).__name__,
                },
            )
        created = {
            result.item.employee_ps_id: result.value.id
            for result in successes(created_results)
            if result.value is not None
        }

        link_results = await executor.run(
            list(created.items()), config.user_lookup_chunk_size, self._link_identity
        )
        for failed in failures(link_results):
            batch_failures_total.labels(operation="link_identity", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to link vendor identity",
                extra={
                    "branch_id": resolution.branch_id,
                    "employee_ps_id": failed.item[0],
                    "vendor_id": failed.item[1],
                    "error": str(failed.error),
                    "error_type": type(failed.error).__name__,
                },
            )
        linked = {ps_id: vendor_id for ps_id, vendor_id in (r.item for r in successes(link_results))}
        if not linked:
            return []

        try:
            refreshed = await self.ctx.directory.get_members(list(linked))
        except DirectoryCallFailedError as exc:
            logger.warning(
                "Re-reading linked members failed, using local copies",
                extra={"branch_id": resolution.branch_id, "error": str(exc)},
            )
            by_ps_id = {m.employee_ps_id: m for m in resolution.active_members}
            refreshed = [
                by_ps_id[ps_id].model_copy(update={"vendor_id": vendor_id})
                for ps_id, vendor_id in linked.items()
                if ps_id in by_ps_id
            ]

        members = [m for m in refreshed if m.has_vendor_identity and m.employee_ps_id in linked]
        logger.info(
            "Created vendor identities",
            extra={"branch_id": resolution.branch_id, "created": len(members)},
        )
        return members

    async def _link_identity(self, pair: tuple[str, str]) -> None:
        employee_ps_id, vendor_id = pair
        await self.ctx.directory.link_vendor_identity(employee_ps_id, vendor_id)
        # Repoint mirror rows so individual groups pick up the new identity
        try:
            await self.ctx.store.update_many(
                MembershipFilter(employee_ps_id=employee_ps_id), {"vendor_id": vendor_id}
            )
        except StoreWriteFailedError as exc:
            logger.warning(
                "Failed to repoint mirror records",
                extra={"employee_ps_id": employee_ps_id, "vendor_id": vendor_id, "error": str(exc)},
            )

    async def _lookup_by_ids(self, vendor_ids: list[str]) -> tuple[dict[str, VendorUser], set[str]]:
        """Return (users found by id, ids whose lookup chunk failed)."""
        chunk_size = self.ctx.config.user_lookup_chunk_size
        results = await self.ctx.executor.run_chunks(
            vendor_ids,
            chunk_size,
            lambda chunk: self.ctx.vendor.list_users(vendor_ids=chunk, limit=len(chunk)),
        )
        found: dict[str, VendorUser] = {}
        unverified: set[str] = set()
        for result in results:
            if result.ok:
                found.update((user.id, user) for user in result.value or [])
            else:
                batch_failures_total.labels(operation="list_users", pod=POD_LABEL).inc()
                unverified.update(result.item)
                logger.warning(
                    "Vendor user lookup by id failed",
                    extra={"vendor_ids": result.item, "error": str(result.error)},
                )
        return found, unverified

    async def _lookup_by_emails(self, emails: list[str]) -> list[VendorUser]:
        chunk_size = self.ctx.config.user_lookup_chunk_size
        results = await self.ctx.executor.run_chunks(
            emails,
            chunk_size,
            lambda chunk: self.ctx.vendor.list_users(emails=chunk, limit=len(chunk)),
        )
        users: list[VendorUser] = []
        for result in results:
            if result.ok:
                users.extend(result.value or [])
            else:
                batch_failures_total.labels(operation="list_users", pod=POD_LABEL).inc()
                logger.warning(
                    "Vendor user lookup by email failed",
                    extra={"emails": len(result.item), "error": str(result.error)},
                )
        return users

    async def _delete_orphans(self, branch_id: str, orphans: list[VendorUser]) -> None:
        results = await self.ctx.executor.run(
            [user.id for user in orphans],
            self.ctx.config.user_lookup_chunk_size,
            self.ctx.vendor.delete_user,
        )
        for failed in failures(results):
            batch_failures_total.labels(operation="delete_user", pod=POD_LABEL).inc()
            logger.warning(
                "Failed to delete orphaned vendor identity",
                extra={"branch_id": branch_id, "vendor_id": failed.item, "error": str(failed.error)},
            )
        logger.info(
            "Deleted orphaned vendor identities",
            extra={"branch_id": branch_id, "deleted": len(successes(results))},
        )
