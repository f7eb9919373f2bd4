"""Group naming convention.

The vendor offers no side table linking a group to its category, so the
category is carried in the group name: ``"{prefix} - {branch_name} (#{branch_id})"``.
Broadcast groups use a fixed prefix per category; individual groups use the
member's display name. Everything that builds or parses names lives here.
"""

from __future__ import annotations

from apps.chat_sync.schemas import GroupCategory

GROUP_NAME_PREFIXES: dict[GroupCategory, str] = {
    GroupCategory.ALL_MEMBERS: "All Members",
    GroupCategory.CLINICAL: "Clinical",
    GroupCategory.NON_CLINICAL: "Non-Clinical",
}

BROADCAST_CATEGORIES: tuple[GroupCategory, ...] = tuple(GROUP_NAME_PREFIXES)

_SEPARATOR = " - "


def make_group_name(prefix: str, branch_id: str, branch_name: str) -> str:
    """
    Build a group name.

    Examples:
        >>> make_group_name("Clinical", "42", "Austin")
        'Clinical - Austin (#42)'
    """
    return f"{prefix}{_SEPARATOR}{branch_name} (#{branch_id})"


def broadcast_group_name(category: GroupCategory, branch_id: str, branch_name: str) -> str:
    return make_group_name(GROUP_NAME_PREFIXES[category], branch_id, branch_name)


def individual_group_name(display_name: str, branch_id: str, branch_name: str) -> str:
    return make_group_name(display_name, branch_id, branch_name)


def classify(name: str) -> GroupCategory | None:
    """
    Infer a broadcast category from a vendor group name.

    Returns ``None`` for anything that does not carry a broadcast prefix,
    which callers treat as an individual group.

    Examples:
        >>> classify("Non-Clinical - Austin (#42)")
        <GroupCategory.NON_CLINICAL: 'NonClinical'>
        >>> classify("Jane Doe - Austin (#42)") is None
        True
    """
    for category, prefix in GROUP_NAME_PREFIXES.items():
        if name.startswith(prefix + _SEPARATOR):
            return category
    return None
