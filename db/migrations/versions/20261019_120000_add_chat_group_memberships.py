"""Add chat group membership mirror and message backup tables.

Revision ID: 7c3e91d2a4f8
Revises: None
Create Date: 2026-10-19 12:00:00 UTC

Migration naming convention:
- Filename: YYYYMMDD_HHMMSS_slug.py (chronological sorting)
- Revision ID: Random hash (collision-proof for parallel branches)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "7c3e91d2a4f8"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chat_group_memberships",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("group_id", sa.String(length=64), nullable=False),
        sa.Column("branch_id", sa.String(length=64), nullable=False),
        sa.Column("vendor_id", sa.String(length=64), nullable=False),
        sa.Column("employee_ps_id", sa.String(length=64), nullable=False),
        sa.Column("group_name", sa.String(length=256), nullable=False),
        sa.Column("group_type", sa.String(length=16), nullable=False),
        sa.Column(
            "visibility_level", sa.String(length=8), nullable=False, server_default="admin"
        ),
        sa.Column(
            "is_group_creator", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_activated", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "active_status", sa.String(length=16), nullable=False, server_default="Active"
        ),
        sa.Column("last_message_activity", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "group_type IN ('broadcast', 'group')", name="ck_chat_group_memberships_group_type"
        ),
        sa.CheckConstraint(
            "visibility_level IN ('self', 'admin', 'all')",
            name="ck_chat_group_memberships_visibility_level",
        ),
        sa.UniqueConstraint(
            "group_id",
            "branch_id",
            "vendor_id",
            "employee_ps_id",
            name="uq_chat_group_memberships_member",
        ),
    )
    op.create_index(
        "ix_chat_group_memberships_creator_lookup",
        "chat_group_memberships",
        ["branch_id", "employee_ps_id", "group_type", "is_group_creator"],
    )
    op.create_index(
        "ix_chat_group_memberships_vendor_branch",
        "chat_group_memberships",
        ["vendor_id", "branch_id"],
    )

    op.create_table(
        "chat_message_backups",
        sa.Column("message_id", sa.String(length=64), primary_key=True),
        sa.Column("group_id", sa.String(length=64), nullable=False),
        sa.Column("branch_id", sa.String(length=64), nullable=False),
        sa.Column("sender_vendor_id", sa.String(length=64), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column(
            "attachments",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_chat_message_backups_group_sent_at",
        "chat_message_backups",
        ["group_id", "sent_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_chat_message_backups_group_sent_at", table_name="chat_message_backups")
    op.drop_table("chat_message_backups")
    op.drop_index(
        "ix_chat_group_memberships_vendor_branch", table_name="chat_group_memberships"
    )
    op.drop_index(
        "ix_chat_group_memberships_creator_lookup", table_name="chat_group_memberships"
    )
    op.drop_table("chat_group_memberships")
