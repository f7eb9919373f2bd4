"""Dependency injection context for chat group reconciliation.

The reconciler talks to three external systems: the chat vendor, the org
directory and the local membership mirror. Each is described here as a
Protocol so tests can inject in-memory fakes (including fault-injecting ones)
and the composition root can inject the HTTP and PostgreSQL implementations.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from libs.common.batch import BatchExecutor

if TYPE_CHECKING:
    from apps.chat_sync.schemas import (
        Branch,
        GroupFilter,
        GroupPayload,
        JobCategory,
        MembershipFilter,
        MembershipRecord,
        OrgMember,
        VendorGroup,
        VendorUser,
        VendorUserPayload,
        VendorUserUpdate,
    )
    from config.settings import Settings
    from libs.redis_client import RedisClient


class VendorGateway(Protocol):
    """Chat vendor operations the reconciler depends on."""

    async def create_user(self, payload: VendorUserPayload) -> VendorUser: ...

    async def list_users(
        self,
        vendor_ids: list[str] | None = None,
        emails: list[str] | None = None,
        limit: int = 100,
    ) -> list[VendorUser]: ...

    async def update_user(self, vendor_id: str, update: VendorUserUpdate) -> None: ...

    async def delete_user(self, vendor_id: str) -> None: ...

    async def create_group(self, payload: GroupPayload) -> str: ...

    async def list_groups(
        self, group_filter: GroupFilter, skip: int = 0, limit: int = 100
    ) -> list[VendorGroup]: ...

    async def update_group(
        self, group_id: str, *, is_archived: bool | None = None, name: str | None = None
    ) -> None: ...

    async def delete_group(self, group_id: str) -> None: ...

    async def add_occupants(self, group_id: str, vendor_ids: list[str]) -> None: ...

    async def remove_occupants(self, group_id: str, vendor_ids: list[str]) -> None: ...


class OrgDirectory(Protocol):
    """Read access to branches, members and jobs, plus vendor-identity linkage."""

    async def get_branch(self, branch_id: str) -> Branch | None: ...

    async def get_active_members(
        self,
        branch_id: str,
        job_levels: list[int] | None = None,
        skip: int = 0,
        limit: int = 200,
    ) -> list[OrgMember]: ...

    async def get_member(self, employee_ps_id: str) -> OrgMember | None: ...

    async def get_members(self, employee_ps_ids: list[str]) -> list[OrgMember]: ...

    async def link_vendor_identity(self, employee_ps_id: str, vendor_id: str) -> None: ...

    async def get_job_categories(self, job_id: str) -> list[JobCategory]: ...


class MembershipMirror(Protocol):
    """Local store of group memberships."""

    async def find(
        self, membership_filter: MembershipFilter, skip: int = 0, limit: int = 300
    ) -> list[MembershipRecord]: ...

    async def insert_many(self, records: Sequence[MembershipRecord]) -> int: ...

    async def update_many(
        self, membership_filter: MembershipFilter, patch: dict[str, Any]
    ) -> int: ...

    async def delete_one(self, membership_filter: MembershipFilter) -> int: ...

    async def delete_many(self, membership_filter: MembershipFilter) -> int: ...


@dataclass
class ReconciliationConfig:
    """Tuning values for reconciliation passes."""

    root_vendor_id: str = ""
    """Vendor id of the system account; never removed from any group."""

    vendor_page_size: int = 100
    """Page size for vendor group listing."""

    member_page_size: int = 200
    """Page size for branch roster reads."""

    user_lookup_chunk_size: int = 100
    """Vendor ids or emails per user lookup call."""

    group_create_chunk_size: int = 200
    """Groups created concurrently per chunk."""

    occupant_chunk_size: int = 100
    """Groups diffed concurrently per chunk."""

    mirror_query_chunk_size: int = 300
    """Member ids per mirror lookup."""

    branch_lock_enabled: bool = True
    """Hold a Redis lock per branch while reconciling it."""

    branch_lock_timeout_seconds: int = 900
    """Lease of the per-branch lock."""

    @classmethod
    def from_settings(cls, settings: Settings) -> ReconciliationConfig:
        return cls(
            root_vendor_id=settings.chat_vendor_root_user_id,
            vendor_page_size=settings.vendor_page_size,
            member_page_size=settings.member_page_size,
            user_lookup_chunk_size=settings.user_lookup_chunk_size,
            group_create_chunk_size=settings.group_create_chunk_size,
            occupant_chunk_size=settings.occupant_chunk_size,
            mirror_query_chunk_size=settings.mirror_query_chunk_size,
            branch_lock_enabled=settings.branch_lock_enabled,
            branch_lock_timeout_seconds=settings.branch_lock_timeout_seconds,
        )


@dataclass
class ReconciliationContext:
    """Context containing all dependencies for reconciliation operations.

    Example:
        >>> ctx = ReconciliationContext(
        ...     vendor=FakeVendor(),
        ...     directory=FakeDirectory(members),
        ...     store=FakeMirror(),
        ...     now=lambda: datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC),
        ... )
    """

    vendor: VendorGateway
    """Chat vendor API."""

    directory: OrgDirectory
    """Org directory for rosters, members and job categories."""

    store: MembershipMirror
    """Local membership mirror."""

    config: ReconciliationConfig = field(default_factory=ReconciliationConfig)

    executor: BatchExecutor = field(default_factory=BatchExecutor)
    """Fan-out helper shared by every bulk operation."""

    redis_client: RedisClient | None = None
    """Redis client for branch locks. None disables locking."""

    now: Callable[[], datetime] = lambda: datetime.now(UTC)
    """Injectable time provider for deterministic testing."""
