"""Incremental backup of vendor group messages.

Each run walks one page of a branch's groups and copies messages newer than
the per-group cursor. Cursors live in Redis:

- ``chat_sync:backup:{branch_id}:group_skip``: next group page (1 day)
- ``chat_sync:backup:group:{group_id}:last_message``: newest copied message (60 days)
- ``chat_sync:backup:group:{group_id}:empty``: group had nothing new (1 day)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import RedisError

from apps.chat_sync.metrics import POD_LABEL, batch_failures_total, messages_backed_up_total
from apps.chat_sync.schemas import BackupResult, GroupFilter, VendorGroup, VendorMessage
from libs.common.exceptions import ChatSyncError
from libs.common.logging import LogContext
from libs.redis_client import RedisKeys

if TYPE_CHECKING:
    from config.settings import Settings
    from libs.redis_client import RedisClient

logger = logging.getLogger(__name__)

ONE_DAY_SECONDS = 24 * 60 * 60
CURSOR_TTL_SECONDS = 60 * ONE_DAY_SECONDS


class MessageSource(Protocol):
    async def list_groups(
        self, group_filter: GroupFilter, skip: int = 0, limit: int = 100
    ) -> list[VendorGroup]: ...

    async def list_group_messages(
        self,
        group_id: str,
        after_message_id: str | None = None,
        limit: int = 100,
        ascending: bool = True,
    ) -> list[VendorMessage]: ...


class MessageArchive(Protocol):
    async def insert_messages(self, branch_id: str, messages: Sequence[VendorMessage]) -> int: ...


class MessageBackupService:
    """
    Copies chat messages of a branch into the local archive.

    Example:
        >>> service = MessageBackupService(vendor_client, MessageBackupStore(pool), redis_client)
        >>> result = await service.backup_branch("42")
        >>> result.messages_backed_up
        250
    """

    def __init__(
        self,
        vendor: MessageSource,
        archive: MessageArchive,
        redis_client: RedisClient,
        *,
        group_limit: int = 100,
        insert_batch_size: int = 1000,
        max_messages_per_run: int = 10000,
        page_size: int = 100,
    ):
        self.vendor = vendor
        self.archive = archive
        self.redis = redis_client
        self.group_limit = group_limit
        self.insert_batch_size = insert_batch_size
        self.max_messages_per_run = max_messages_per_run
        self.page_size = page_size

    @classmethod
    def from_settings(
        cls,
        vendor: MessageSource,
        archive: MessageArchive,
        redis_client: RedisClient,
        settings: Settings,
    ) -> MessageBackupService:
        return cls(
            vendor,
            archive,
            redis_client,
            group_limit=settings.backup_group_limit,
            insert_batch_size=settings.backup_insert_batch_size,
            max_messages_per_run=settings.backup_max_messages_per_run,
            page_size=settings.vendor_page_size,
        )

    async def backup_branch(self, branch_id: str) -> BackupResult:
        """
        Back up the next page of a branch's groups.

        Raises:
            VendorCallFailedError: If the group page cannot be listed
            RedisError: If the branch cursor cannot be read or written
        """
        with LogContext():
            # 1. Advance the branch group cursor
            skip_key = RedisKeys.backup_group_skip(branch_id)
            raw_skip = await self.redis.get(skip_key)
            skip = int(raw_skip) if raw_skip and raw_skip.isdigit() else 0

            groups = await self.vendor.list_groups(
                GroupFilter(branch_id=branch_id), skip=skip, limit=self.group_limit
            )
            next_skip = skip + len(groups) if len(groups) >= self.group_limit else 0
            await self.redis.set(skip_key, str(next_skip), ttl=ONE_DAY_SECONDS)

            # 2. Copy each group's new messages within the run budget
            result = BackupResult(branch_id=branch_id, next_group_skip=next_skip)
            for group in groups:
                budget = self.max_messages_per_run - result.messages_backed_up
                if budget <= 0:
                    logger.info(
                        "Message backup budget exhausted",
                        extra={"branch_id": branch_id, "messages": result.messages_backed_up},
                    )
                    break
                try:
                    copied = await self._backup_group(branch_id, group.id, budget)
                except (ChatSyncError, RedisError) as exc:
                    batch_failures_total.labels(operation="backup_group", pod=POD_LABEL).inc()
                    logger.warning(
                        "Message backup failed for group",
                        extra={
                            "branch_id": branch_id,
                            "group_id": group.id,
                            "error": str(exc),
                            "error_type": type(exc).__name__,
                        },
                    )
                    continue
                result.groups_processed += 1
                result.messages_backed_up += copied

            messages_backed_up_total.labels(pod=POD_LABEL).inc(result.messages_backed_up)
            logger.info(
                "Message backup complete",
                extra={
                    "branch_id": branch_id,
                    "groups": result.groups_processed,
                    "messages": result.messages_backed_up,
                    "next_group_skip": next_skip,
                },
            )
            return result

    async def _backup_group(self, branch_id: str, group_id: str, budget: int) -> int:
        empty_key = RedisKeys.backup_empty_group(group_id)
        if await self.redis.get(empty_key):
            return 0

        cursor_key = RedisKeys.backup_last_message(group_id)
        last_id = await self.redis.get(cursor_key)
        pending: list[VendorMessage] = []
        copied = 0

        while copied + len(pending) < budget:
            limit = min(self.page_size, budget - copied - len(pending))
            page = await self.vendor.list_group_messages(
                group_id, after_message_id=last_id, limit=limit, ascending=True
            )
            if not page:
                break
            pending.extend(page)
            last_id = page[-1].id
            if len(pending) >= self.insert_batch_size:
                copied += await self._flush(branch_id, cursor_key, pending)
                pending = []
            if len(page) < limit:
                break

        if pending:
            copied += await self._flush(branch_id, cursor_key, pending)
        if copied == 0:
            await self.redis.set(empty_key, "1", ttl=ONE_DAY_SECONDS)
        return copied

    async def _flush(self, branch_id: str, cursor_key: str, messages: list[VendorMessage]) -> int:
        # Cursor moves only after the batch is stored
        await self.archive.insert_messages(branch_id, messages)
        await self.redis.set(cursor_key, messages[-1].id, ttl=CURSOR_TTL_SECONDS)
        return len(messages)
