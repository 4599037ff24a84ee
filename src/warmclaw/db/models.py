"""SQLAlchemy ORM models for the WarmClaw store.

Table layout mirrors alembic/versions/001_initial_schema.py.
"""

from __future__ import annotations

from sqlalchemy import Index, Integer, PrimaryKeyConstraint, Text, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base for all WarmClaw tables."""


class Chat(Base):
    """Chat metadata for every chat seen by any channel."""

    __tablename__ = "chats"

    jid: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_time: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel: Mapped[str | None] = mapped_column(Text, nullable=True)


class Message(Base):
    """Message log for registered chats."""

    __tablename__ = "messages"
    __table_args__ = (
        PrimaryKeyConstraint("id", "chat_jid"),
        Index("idx_timestamp", "timestamp"),
    )

    id: Mapped[str] = mapped_column(Text)
    chat_jid: Mapped[str] = mapped_column(Text)
    sender: Mapped[str | None] = mapped_column(Text, nullable=True)
    sender_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_from_me: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_bot_message: Mapped[int | None] = mapped_column(Integer, nullable=True, default=0)


class RouterState(Base):
    """Key/value store for delivery cursors."""

    __tablename__ = "router_state"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text)


class SessionRecord(Base):
    """Latest agent session id per group folder."""

    __tablename__ = "sessions"

    group_folder: Mapped[str] = mapped_column(Text, primary_key=True)
    session_id: Mapped[str] = mapped_column(Text)


class RegisteredGroup(Base):
    """Chats registered for agent routing."""

    __tablename__ = "registered_groups"

    jid: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text)
    folder: Mapped[str] = mapped_column(Text, unique=True)
    trigger_pattern: Mapped[str] = mapped_column(Text)
    added_at: Mapped[str] = mapped_column(Text)
    channel: Mapped[str | None] = mapped_column(Text, nullable=True)
    container_config: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_trigger: Mapped[int | None] = mapped_column(Integer, nullable=True, default=1)


def create_engine_for_path(db_path: str) -> Engine:
    """Create a SQLite engine for a file path or ':memory:'.

    In-memory databases share a single connection so every Session sees
    the same tables.

    Args:
        db_path: Filesystem path to the database, or ':memory:'.

    Returns:
        A configured SQLAlchemy Engine.
    """
    if db_path == ":memory:":
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(f"sqlite:///{db_path}")
