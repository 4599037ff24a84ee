"""Initial store schema for WarmClaw.

Message log, chat metadata, delivery cursors, sessions and registered groups.

Revision ID: 001
Revises: (none)
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    """Create the store tables and the message timestamp index."""
    op.create_table(
        "chats",
        sa.Column("jid", sa.Text(), nullable=False, primary_key=True),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("last_message_time", sa.Text(), nullable=True),
        sa.Column("channel", sa.Text(), nullable=True),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("chat_jid", sa.Text(), nullable=False),
        sa.Column("sender", sa.Text(), nullable=True),
        sa.Column("sender_name", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.Text(), nullable=True),
        sa.Column("is_from_me", sa.Integer(), nullable=True),
        sa.Column("is_bot_message", sa.Integer(), server_default="0", nullable=True),
        sa.PrimaryKeyConstraint("id", "chat_jid"),
    )
    op.create_index("idx_timestamp", "messages", ["timestamp"])

    op.create_table(
        "router_state",
        sa.Column("key", sa.Text(), nullable=False, primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
    )

    op.create_table(
        "sessions",
        sa.Column("group_folder", sa.Text(), nullable=False, primary_key=True),
        sa.Column("session_id", sa.Text(), nullable=False),
    )

    op.create_table(
        "registered_groups",
        sa.Column("jid", sa.Text(), nullable=False, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("folder", sa.Text(), nullable=False, unique=True),
        sa.Column("trigger_pattern", sa.Text(), nullable=False),
        sa.Column("added_at", sa.Text(), nullable=False),
        sa.Column("channel", sa.Text(), nullable=True),
        sa.Column("container_config", sa.Text(), nullable=True),
        sa.Column("requires_trigger", sa.Integer(), server_default="1", nullable=True),
    )


def downgrade() -> None:
    """Drop all tables in reverse order."""
    op.drop_table("registered_groups")
    op.drop_table("sessions")
    op.drop_table("router_state")
    op.drop_index("idx_timestamp", "messages")
    op.drop_table("messages")
    op.drop_table("chats")
