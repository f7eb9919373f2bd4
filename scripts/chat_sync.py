#!/usr/bin/env python3
"""
Chat group sync command line.

Runs one reconciliation or backup pass and exits; intended for cron.

Usage:
    python scripts/chat_sync.py branch 42 43
    python scripts/chat_sync.py member PS-100
    python scripts/chat_sync.py backup 42

Exit Codes:
    0: Success
    1: At least one pass failed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import psycopg
from redis.exceptions import RedisError

from apps.chat_sync.runtime import ServiceRuntime, build_runtime
from config.settings import get_settings
from libs.common.exceptions import ChatSyncError, ConfigurationError
from libs.common.logging import configure_logging

logger = logging.getLogger("scripts.chat_sync")


async def sync_branches(runtime: ServiceRuntime, args: argparse.Namespace) -> bool:
    ok = True
    for branch_id in args.branch_ids:
        try:
            synced = await runtime.reconciler.reconcile_branch(branch_id)
        except ChatSyncError as e:
            logger.error("Branch sync failed", extra={"branch_id": branch_id, "error": str(e)})
            synced = False
        ok = ok and synced
    return ok


async def sync_members(runtime: ServiceRuntime, args: argparse.Namespace) -> bool:
    ok = True
    for employee_ps_id in args.employee_ps_ids:
        try:
            await runtime.reconciler.reconcile_member(employee_ps_id)
        except (ChatSyncError, psycopg.Error) as e:
            logger.error(
                "Member sync failed",
                extra={
                    "employee_ps_id": employee_ps_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            ok = False
    return ok


async def backup_branches(runtime: ServiceRuntime, args: argparse.Namespace) -> bool:
    if runtime.backup is None:
        logger.error("Message backup requires Redis")
        return False
    ok = True
    for branch_id in args.branch_ids:
        try:
            result = await runtime.backup.backup_branch(branch_id)
        except (ChatSyncError, RedisError) as e:
            logger.error("Message backup failed", extra={"branch_id": branch_id, "error": str(e)})
            ok = False
            continue
        print(
            f"branch {branch_id}: {result.messages_backed_up} messages "
            f"from {result.groups_processed} groups (next skip {result.next_group_skip})"
        )
    return ok


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile vendor chat groups with the org directory")
    sub = parser.add_subparsers(dest="command", required=True)

    p_branch = sub.add_parser("branch", help="Reconcile every group of one or more branches")
    p_branch.add_argument("branch_ids", nargs="+", metavar="BRANCH_ID")
    p_branch.set_defaults(func=sync_branches)

    p_member = sub.add_parser("member", help="Apply one or more members' directory changes")
    p_member.add_argument("employee_ps_ids", nargs="+", metavar="EMPLOYEE_PS_ID")
    p_member.set_defaults(func=sync_members)

    p_backup = sub.add_parser("backup", help="Back up group messages of one or more branches")
    p_backup.add_argument("branch_ids", nargs="+", metavar="BRANCH_ID")
    p_backup.set_defaults(func=backup_branches)

    return parser


async def run(args: argparse.Namespace) -> int:
    try:
        runtime = await build_runtime(get_settings())
    except ConfigurationError as e:
        logger.error("Invalid configuration", extra={"error": str(e)})
        return 1
    try:
        ok = await args.func(runtime, args)
    finally:
        await runtime.close()
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(service_name=settings.service_name, log_level=settings.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
