"""Observed vendor state of a branch."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apps.chat_sync.naming import classify
from apps.chat_sync.schemas import GroupCategory, GroupFilter, VendorGroup

if TYPE_CHECKING:
    from apps.chat_sync.reconciliation.context import ReconciliationContext

logger = logging.getLogger(__name__)

_UNDATED = datetime.max.replace(tzinfo=UTC)


def _created_key(group: VendorGroup) -> datetime:
    if group.created_at is None:
        return _UNDATED
    if group.created_at.tzinfo is None:
        return group.created_at.replace(tzinfo=UTC)
    return group.created_at


@dataclass
class ObservedState:
    """Vendor groups of a branch, indexed for the diff phase."""

    groups: dict[str, VendorGroup] = field(default_factory=dict)
    broadcast: dict[GroupCategory, VendorGroup] = field(default_factory=dict)
    duplicate_broadcast_ids: list[str] = field(default_factory=list)
    """Extra groups of an already-present broadcast category."""

    def individual_groups(self) -> list[VendorGroup]:
        broadcast_ids = {g.id for g in self.broadcast.values()}
        return [
            g
            for g in self.groups.values()
            if not g.is_announcement
            and g.id not in broadcast_ids
            and g.id not in self.duplicate_broadcast_ids
        ]

    def by_name(self, name: str) -> list[VendorGroup]:
        return [g for g in self.groups.values() if g.name == name]

    def discard(self, group_ids: Iterable[str]) -> None:
        """Forget deleted groups so later phases never touch them."""
        for group_id in group_ids:
            self.groups.pop(group_id, None)
        self.broadcast = {c: g for c, g in self.broadcast.items() if g.id in self.groups}


def classify_observed(groups: Iterable[VendorGroup]) -> ObservedState:
    """Index groups by id and pick the surviving group of each broadcast category.

    Only announcement groups carry a broadcast category; an individual group
    whose member happens to be called "Clinical" stays individual. When a
    category appears more than once the oldest live group is kept and the
    other live ones are reported as duplicates. Archived duplicates are left
    alone: they are what a refused delete leaves behind.
    """
    state = ObservedState()
    candidates: dict[GroupCategory, list[VendorGroup]] = {}
    for group in groups:
        state.groups[group.id] = group
        category = classify(group.name) if group.is_announcement else None
        if category is not None:
            candidates.setdefault(category, []).append(group)

    for category, found in candidates.items():
        ordered = sorted(found, key=lambda g: (g.is_archived, _created_key(g)))
        state.broadcast[category] = ordered[0]
        state.duplicate_broadcast_ids.extend(g.id for g in ordered[1:] if not g.is_archived)
    return state


class VendorStateFetcher:
    """Paginated reads of vendor groups."""

    def __init__(self, ctx: ReconciliationContext) -> None:
        self.ctx = ctx

    async def fetch_all(self, group_filter: GroupFilter) -> list[VendorGroup]:
        """Read every page matching the filter.

        Pages until one comes back short. Groups repeated across page
        boundaries (the vendor list is not snapshot-consistent) are kept once.

        Raises:
            VendorCallFailedError: If any page read fails
        """
        page_size = self.ctx.config.vendor_page_size
        seen: dict[str, VendorGroup] = {}
        skip = 0
        while True:
            page = await self.ctx.vendor.list_groups(group_filter, skip=skip, limit=page_size)
            for group in page:
                seen.setdefault(group.id, group)
            if len(page) < page_size:
                break
            skip += page_size

        logger.debug(
            "Fetched vendor groups",
            extra={"branch_id": group_filter.branch_id, "groups": len(seen)},
        )
        return list(seen.values())

    async def fetch_branch(self, branch_id: str) -> ObservedState:
        return classify_observed(await self.fetch_all(GroupFilter(branch_id=branch_id)))
