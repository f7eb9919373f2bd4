"""Fixtures wiring the in-memory collaborators into a reconciliation context."""

from __future__ import annotations

import pytest

from apps.chat_sync.reconciliation import (
    ChatGroupReconciler,
    ReconciliationConfig,
    ReconciliationContext,
)
from apps.chat_sync.schemas import OrgMember
from tests.apps.chat_sync.fakes import (
    FIXED_NOW,
    ROOT_VENDOR_ID,
    FakeDirectory,
    FakeMirror,
    FakeVendor,
)


@pytest.fixture()
def vendor() -> FakeVendor:
    return FakeVendor()


@pytest.fixture()
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture()
def mirror() -> FakeMirror:
    return FakeMirror()


@pytest.fixture()
def config() -> ReconciliationConfig:
    """Small page and chunk sizes so paging and chunking paths run."""
    return ReconciliationConfig(
        root_vendor_id=ROOT_VENDOR_ID,
        vendor_page_size=2,
        member_page_size=2,
        user_lookup_chunk_size=2,
        group_create_chunk_size=2,
        occupant_chunk_size=2,
        mirror_query_chunk_size=2,
    )


@pytest.fixture()
def ctx(
    vendor: FakeVendor,
    directory: FakeDirectory,
    mirror: FakeMirror,
    config: ReconciliationConfig,
) -> ReconciliationContext:
    return ReconciliationContext(
        vendor=vendor,
        directory=directory,
        store=mirror,
        config=config,
        now=lambda: FIXED_NOW,
    )


@pytest.fixture()
def reconciler(ctx: ReconciliationContext) -> ChatGroupReconciler:
    return ChatGroupReconciler(ctx)


@pytest.fixture()
def seed(directory: FakeDirectory, vendor: FakeVendor):
    """Register members in the directory and, if they have one, their vendor user."""

    def _seed(*members: OrgMember) -> list[OrgMember]:
        directory.add(*members)
        for member in members:
            if member.has_vendor_identity:
                vendor.add_user(member)
        return list(members)

    return _seed
