"""
Database access for the chat sync service.

Handles persistence of:
- chat_group_memberships: local mirror of who is in which vendor group
- chat_message_backups: copies of vendor group messages

The mirror is an index, not a source of truth. Write failures are raised as
StoreWriteFailedError so callers can log them per item and move on.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import class_row
from psycopg_pool import AsyncConnectionPool

from apps.chat_sync.schemas import (
    GroupType,
    MembershipFilter,
    MembershipRecord,
    VendorMessage,
)
from libs.common.exceptions import StoreWriteFailedError

logger = logging.getLogger(__name__)

MEMBERSHIP_COLUMNS = (
    "group_id",
    "branch_id",
    "vendor_id",
    "employee_ps_id",
    "group_name",
    "group_type",
    "visibility_level",
    "is_group_creator",
    "is_archived",
    "is_activated",
    "active_status",
    "last_message_activity",
    "last_seen_at",
)

# Columns update_many may change
UPDATABLE_COLUMNS = frozenset(
    {
        "vendor_id",
        "group_name",
        "is_archived",
        "is_activated",
        "active_status",
        "visibility_level",
        "last_message_activity",
        "last_seen_at",
    }
)

# MembershipFilter field -> (column, operator)
_FILTER_FIELDS: dict[str, tuple[str, str]] = {
    "group_id": ("group_id", "="),
    "group_ids": ("group_id", "any"),
    "exclude_group_id": ("group_id", "<>"),
    "branch_id": ("branch_id", "="),
    "branch_ids": ("branch_id", "any"),
    "vendor_id": ("vendor_id", "="),
    "vendor_ids": ("vendor_id", "any"),
    "employee_ps_id": ("employee_ps_id", "="),
    "employee_ps_ids": ("employee_ps_id", "any"),
    "group_type": ("group_type", "="),
    "is_group_creator": ("is_group_creator", "="),
    "is_archived": ("is_archived", "="),
    "active_status": ("active_status", "="),
}


def _db_value(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_db_value(v) for v in value]
    return getattr(value, "value", value)


def build_where(membership_filter: MembershipFilter) -> tuple[sql.Composable, list[Any]]:
    """
    Translate a MembershipFilter into a WHERE clause and its parameters.

    An empty filter is rejected so a stray update or delete can never touch
    the whole table.

    Raises:
        ValueError: If no field of the filter is set
    """
    clauses: list[sql.Composable] = []
    params: list[Any] = []
    for field, (column, operator) in _FILTER_FIELDS.items():
        value = getattr(membership_filter, field)
        if value is None:
            continue
        if operator == "any":
            clauses.append(sql.SQL("{} = ANY(%s)").format(sql.Identifier(column)))
        else:
            clauses.append(sql.SQL("{} " + operator + " %s").format(sql.Identifier(column)))
        params.append(_db_value(value))

    if not clauses:
        raise ValueError("MembershipFilter must constrain at least one column")
    return sql.SQL(" AND ").join(clauses), params


class MembershipStore:
    """
    PostgreSQL mirror of vendor group memberships.

    Example:
        >>> store = MembershipStore(pool)
        >>> records = await store.find(MembershipFilter(branch_id="42", group_type=GroupType.BROADCAST))
        >>> await store.delete_many(MembershipFilter(group_id="g-1"))
    """

    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def check_connection(self) -> bool:
        try:
            async with self._pool.connection() as conn:
                await conn.execute("SELECT 1")
            return True
        except psycopg.Error as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    async def find(
        self,
        membership_filter: MembershipFilter,
        skip: int = 0,
        limit: int = 300,
    ) -> list[MembershipRecord]:
        where, params = build_where(membership_filter)
        query = sql.SQL(
            "SELECT id, {columns}, created_at, updated_at FROM chat_group_memberships "
            "WHERE {where} ORDER BY created_at, id OFFSET %s LIMIT %s"
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, MEMBERSHIP_COLUMNS)),
            where=where,
        )
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=class_row(MembershipRecord)) as cur:
                await cur.execute(query, [*params, skip, limit])
                return await cur.fetchall()

    async def insert_many(self, records: Sequence[MembershipRecord]) -> int:
        """
        Insert records, skipping any that already exist.

        Returns:
            Number of rows actually inserted

        Raises:
            StoreWriteFailedError: If the insert fails
        """
        if not records:
            return 0
        query = sql.SQL(
            "INSERT INTO chat_group_memberships ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT (group_id, branch_id, vendor_id, employee_ps_id) DO NOTHING"
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, MEMBERSHIP_COLUMNS)),
            placeholders=sql.SQL(", ").join(sql.Placeholder() * len(MEMBERSHIP_COLUMNS)),
        )
        rows = [
            tuple(_db_value(getattr(record, column)) for column in MEMBERSHIP_COLUMNS)
            for record in records
        ]
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.executemany(query, rows)
                    inserted = cur.rowcount
                await conn.commit()
        except psycopg.Error as exc:
            raise StoreWriteFailedError(f"insert_many failed: {exc}") from exc
        return max(inserted, 0)

    async def update_many(self, membership_filter: MembershipFilter, patch: dict[str, Any]) -> int:
        """
        Apply ``patch`` to every matching record.

        Raises:
            ValueError: If the patch names a column that may not be updated
            StoreWriteFailedError: If the update fails
        """
        unknown = set(patch) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not patch:
            return 0
        where, params = build_where(membership_filter)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in patch
        )
        query = sql.SQL(
            "UPDATE chat_group_memberships SET {assignments}, updated_at = now() WHERE {where}"
        ).format(assignments=assignments, where=where)
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, [*(_db_value(v) for v in patch.values()), *params])
                    updated = cur.rowcount
                await conn.commit()
        except psycopg.Error as exc:
            raise StoreWriteFailedError(f"update_many failed: {exc}") from exc
        return updated

    async def delete_one(self, membership_filter: MembershipFilter) -> int:
        """Delete the oldest matching record."""
        where, params = build_where(membership_filter)
        query = sql.SQL(
            "DELETE FROM chat_group_memberships WHERE id = ("
            "SELECT id FROM chat_group_memberships WHERE {where} ORDER BY created_at, id LIMIT 1)"
        ).format(where=where)
        return await self._delete(query, params)

    async def delete_many(self, membership_filter: MembershipFilter) -> int:
        where, params = build_where(membership_filter)
        query = sql.SQL("DELETE FROM chat_group_memberships WHERE {where}").format(where=where)
        return await self._delete(query, params)

    async def _delete(self, query: sql.Composable, params: list[Any]) -> int:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    deleted = cur.rowcount
                await conn.commit()
        except psycopg.Error as exc:
            raise StoreWriteFailedError(f"delete failed: {exc}") from exc
        return deleted

    # --------------------------------------------------------------------------
    # Mirror queries
    # --------------------------------------------------------------------------

    async def get_branch_groups(
        self, branch_id: str, group_type: GroupType | None = None
    ) -> list[MembershipRecord]:
        """One record per group of a branch, preferring the creator's row."""
        params: list[Any] = [branch_id]
        type_clause = sql.SQL("")
        if group_type is not None:
            type_clause = sql.SQL(" AND group_type = %s")
            params.append(group_type.value)
        query = sql.SQL(
            "SELECT DISTINCT ON (group_id) id, {columns}, created_at, updated_at "
            "FROM chat_group_memberships WHERE branch_id = %s{type_clause} "
            "ORDER BY group_id, is_group_creator DESC, created_at"
        ).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, MEMBERSHIP_COLUMNS)),
            type_clause=type_clause,
        )
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=class_row(MembershipRecord)) as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    async def get_group(self, group_id: str) -> list[MembershipRecord]:
        return await self.find(MembershipFilter(group_id=group_id), limit=10_000)


class MessageBackupStore:
    """Append-only copy of vendor group messages."""

    def __init__(self, pool: AsyncConnectionPool):
        self._pool = pool

    async def insert_messages(self, branch_id: str, messages: Sequence[VendorMessage]) -> int:
        """
        Insert messages; already backed-up message ids are skipped.

        Raises:
            StoreWriteFailedError: If the insert fails
        """
        if not messages:
            return 0
        rows = [
            (
                message.id,
                message.group_id,
                branch_id,
                message.sender_id,
                message.body,
                json.dumps(message.attachments),
                message.sent_at,
            )
            for message in messages
        ]
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.executemany(
                        """
                        INSERT INTO chat_message_backups
                            (message_id, group_id, branch_id, sender_vendor_id, body,
                             attachments, sent_at)
                        VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s)
                        ON CONFLICT (message_id) DO NOTHING
                        """,
                        rows,
                    )
                    inserted = cur.rowcount
                await conn.commit()
        except psycopg.Error as exc:
            raise StoreWriteFailedError(f"insert_messages failed: {exc}") from exc
        return max(inserted, 0)


def create_pool(database_url: str, min_size: int = 1, max_size: int = 10) -> AsyncConnectionPool:
    """Create the service's connection pool. Call ``await pool.open()`` on startup."""
    pool = AsyncConnectionPool(database_url, min_size=min_size, max_size=max_size, open=False)
    logger.info("Async DB pool initialized", extra={"pool_min": min_size, "pool_max": max_size})
    return pool
