"""
Chat Sync Service FastAPI Application.

Exposes reconciliation and message backup for schedulers and for the
directory's change hooks.

Key Features:
- POST /api/v1/branches/{branch_id}/sync - Reconcile every group of a branch
- POST /api/v1/members/{employee_ps_id}/sync - Apply one member's changes
- POST /api/v1/branches/{branch_id}/backup - Back up the next page of group messages
- GET /api/v1/branches/{branch_id}/groups - Mirrored groups of a branch
- GET /health - Health check
- GET /metrics - Prometheus metrics

Usage:
    # Development
    $ uvicorn apps.chat_sync.main:app --reload --port 8012

    # Production
    $ uvicorn apps.chat_sync.main:app --host 0.0.0.0 --port 8012
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import psycopg
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from redis.exceptions import RedisError

from apps.chat_sync import __version__
from apps.chat_sync.metrics import database_connection_status, redis_connection_status
from apps.chat_sync.runtime import ServiceRuntime, build_runtime
from apps.chat_sync.schemas import (
    BackupResult,
    BranchSyncResponse,
    GroupType,
    HealthResponse,
    MembershipRecord,
    MemberSyncResponse,
)
from config.settings import get_settings
from libs.common.exceptions import (
    ChatSyncError,
    DirectoryCallFailedError,
    IdentityMissingError,
    NotFoundError,
    StoreWriteFailedError,
    VendorCallFailedError,
)
from libs.common.logging import (
    add_transaction_id_middleware,
    configure_logging,
    get_transaction_id,
)

# ============================================================================
# Configuration
# ============================================================================

settings = get_settings()
configure_logging(service_name=settings.service_name, log_level=settings.log_level)
logger = logging.getLogger(__name__)

_runtime: ServiceRuntime | None = None


# ============================================================================
# Application Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open collaborators on startup and close them on shutdown."""
    global _runtime

    logger.info("Chat sync service starting", extra={"version": __version__})
    _runtime = await build_runtime(settings)
    try:
        yield
    finally:
        logger.info("Chat sync service shutting down")
        await _runtime.close()
        _runtime = None


app = FastAPI(
    title="Chat Sync Service",
    description="Reconciles vendor chat groups with the org directory",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

add_transaction_id_middleware(app)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


def get_runtime() -> ServiceRuntime:
    if _runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is not initialized",
        )
    return _runtime


# ============================================================================
# Error Handlers
# ============================================================================


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "code": type(exc).__name__,
            "transaction_id": get_transaction_id(),
        },
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(IdentityMissingError)
async def identity_missing_handler(request: Request, exc: IdentityMissingError) -> JSONResponse:
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(ChatSyncError)
async def chat_sync_error_handler(request: Request, exc: ChatSyncError) -> JSONResponse:
    """Upstream failures map to 502, local storage failures to 503."""
    if isinstance(exc, VendorCallFailedError | DirectoryCallFailedError):
        status_code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, StoreWriteFailedError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    logger.error(
        f"Request failed on {request.method} {request.url.path}",
        extra={"error": str(exc), "error_type": type(exc).__name__},
    )
    return _error_response(status_code, exc)


@app.exception_handler(psycopg.Error)
async def database_error_handler(request: Request, exc: psycopg.Error) -> JSONResponse:
    logger.error(
        f"Database error on {request.method} {request.url.path}",
        extra={"error": str(exc), "error_type": type(exc).__name__},
    )
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


# ============================================================================
# Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns:
        "healthy" when database and Redis are reachable, "degraded" when only
        Redis is down, "unhealthy" when the database is down or the service
        has not started.
    """
    if _runtime is None:
        database_connection_status.set(0)
        return HealthResponse(
            status="unhealthy",
            service=settings.service_name,
            version=__version__,
            timestamp=datetime.now(UTC),
            database_connected=False,
            details={"reason": "not initialized"},
        )

    db_connected = await _runtime.store.check_connection()
    redis_connected = (
        await _runtime.redis_client.health_check() if _runtime.redis_client is not None else False
    )
    database_connection_status.set(1 if db_connected else 0)
    redis_connection_status.set(1 if redis_connected else 0)

    if db_connected and redis_connected:
        overall_status = "healthy"
    elif db_connected:
        overall_status = "degraded"
    else:
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=__version__,
        timestamp=datetime.now(UTC),
        database_connected=db_connected,
        redis_connected=redis_connected,
        details={"environment": settings.environment},
    )


@app.post(
    "/api/v1/branches/{branch_id}/sync",
    response_model=BranchSyncResponse,
    tags=["Reconciliation"],
)
async def sync_branch(
    branch_id: str, runtime: ServiceRuntime = Depends(get_runtime)
) -> BranchSyncResponse:
    """
    Reconcile every chat group of a branch.

    ``synced`` is False when the pass could not establish its working set or
    another worker is already reconciling the branch.

    Raises:
        HTTPException 404: Branch not found
    """
    synced = await runtime.reconciler.reconcile_branch(branch_id)
    return BranchSyncResponse(
        branch_id=branch_id, synced=synced, transaction_id=get_transaction_id()
    )


@app.post(
    "/api/v1/members/{employee_ps_id}/sync",
    response_model=MemberSyncResponse,
    tags=["Reconciliation"],
)
async def sync_member(
    employee_ps_id: str, runtime: ServiceRuntime = Depends(get_runtime)
) -> MemberSyncResponse:
    """
    Apply one member's directory changes to their chat groups.

    Raises:
        HTTPException 404: Member not found
        HTTPException 409: Member has no vendor identity
        HTTPException 502: Vendor record of the member could not be read
    """
    await runtime.reconciler.reconcile_member(employee_ps_id)
    return MemberSyncResponse(employee_ps_id=employee_ps_id, transaction_id=get_transaction_id())


@app.post(
    "/api/v1/branches/{branch_id}/backup",
    response_model=BackupResult,
    tags=["Backup"],
)
async def backup_branch(
    branch_id: str, runtime: ServiceRuntime = Depends(get_runtime)
) -> BackupResult:
    """
    Back up messages of the next page of a branch's groups.

    Raises:
        HTTPException 503: Redis unavailable
    """
    if runtime.backup is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message backup requires Redis",
        )
    try:
        return await runtime.backup.backup_branch(branch_id)
    except RedisError as e:
        logger.error(
            "Message backup cursor unavailable",
            extra={"branch_id": branch_id, "error": str(e)},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Message backup cursor unavailable",
        ) from e


@app.get(
    "/api/v1/branches/{branch_id}/groups",
    response_model=list[MembershipRecord],
    tags=["Mirror"],
)
async def list_branch_groups(
    branch_id: str,
    group_type: GroupType | None = Query(default=None),
    runtime: ServiceRuntime = Depends(get_runtime),
) -> list[MembershipRecord]:
    """One mirrored record per group of the branch."""
    return await runtime.store.get_branch_groups(branch_id, group_type)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "apps.chat_sync.main:app",
        host="0.0.0.0",
        port=8012,
        reload=True,
        log_level="info",
    )
