"""Composition of the chat sync service's collaborators.

Shared by the FastAPI lifespan and the CLI so both run the same wiring.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from psycopg_pool import AsyncConnectionPool

from apps.chat_sync.clients import ChatVendorClient, OrgDirectoryClient
from apps.chat_sync.database import MembershipStore, MessageBackupStore, create_pool
from apps.chat_sync.reconciliation import (
    ChatGroupReconciler,
    MessageBackupService,
    ReconciliationConfig,
    ReconciliationContext,
)
from config.settings import Settings
from libs.common.batch import BatchExecutor
from libs.common.exceptions import ConfigurationError
from libs.redis_client import RedisClient, RedisConnectionError

logger = logging.getLogger(__name__)


@dataclass
class ServiceRuntime:
    settings: Settings
    vendor: ChatVendorClient
    directory: OrgDirectoryClient
    pool: AsyncConnectionPool
    store: MembershipStore
    redis_client: RedisClient | None
    reconciler: ChatGroupReconciler
    backup: MessageBackupService | None

    async def close(self) -> None:
        await self.vendor.close()
        await self.directory.close()
        if self.redis_client is not None:
            await self.redis_client.close()
        await self.pool.close()
        logger.info("Chat sync runtime closed")


async def build_runtime(settings: Settings) -> ServiceRuntime:
    """
    Open connections and wire the reconciler.

    Redis is optional: without it branch locking and message backup are
    disabled and reconciliation still runs.

    Raises:
        ConfigurationError: If the vendor root account is not configured
        psycopg.OperationalError: If the database pool cannot be opened
    """
    if not settings.chat_vendor_root_user_id:
        raise ConfigurationError("CHAT_VENDOR_ROOT_USER_ID not configured")

    # 1. HTTP collaborators
    vendor = ChatVendorClient(
        settings.chat_vendor_api_url,
        api_token=settings.chat_vendor_api_token.get_secret_value(),
        timeout=settings.http_timeout_seconds,
    )
    directory = OrgDirectoryClient(
        settings.org_directory_url,
        api_token=settings.org_directory_api_token.get_secret_value(),
        timeout=settings.http_timeout_seconds,
    )

    # 2. Database
    pool = create_pool(
        settings.database_url,
        min_size=settings.database_pool_min_size,
        max_size=settings.database_pool_max_size,
    )
    await pool.open()
    store = MembershipStore(pool)

    # 3. Redis
    redis_client: RedisClient | None = None
    candidate = RedisClient(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password.get_secret_value() if settings.redis_password else None,
    )
    try:
        await candidate.connect()
        redis_client = candidate
    except RedisConnectionError as e:
        logger.warning(
            "Redis unavailable; branch locking and message backup disabled",
            extra={"error": str(e)},
        )
        await candidate.close()

    # 4. Engine
    ctx = ReconciliationContext(
        vendor=vendor,
        directory=directory,
        store=store,
        config=ReconciliationConfig.from_settings(settings),
        executor=BatchExecutor(max_concurrency=settings.batch_max_concurrency),
        redis_client=redis_client,
    )
    backup = (
        MessageBackupService.from_settings(
            vendor, MessageBackupStore(pool), redis_client, settings
        )
        if redis_client is not None
        else None
    )
    logger.info(
        "Chat sync runtime ready",
        extra={
            "vendor_url": settings.chat_vendor_api_url,
            "directory_url": settings.org_directory_url,
            "redis_enabled": redis_client is not None,
        },
    )
    return ServiceRuntime(
        settings=settings,
        vendor=vendor,
        directory=directory,
        pool=pool,
        store=store,
        redis_client=redis_client,
        reconciler=ChatGroupReconciler(ctx),
        backup=backup,
    )
