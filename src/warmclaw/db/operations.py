"""Store operations for WarmClaw.

The orchestration core treats the store as a key/value and message-log
collaborator. This module is its SQLite implementation, built on
SQLAlchemy Core/ORM constructs only.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from warmclaw.db.models import (
    Base,
    Chat,
    Message,
    RouterState,
    SessionRecord,
    create_engine_for_path,
)
from warmclaw.db.models import (
    RegisteredGroup as RegisteredGroupRow,
)
from warmclaw.types import (
    ChatInfo,
    ContainerConfig,
    NewMessage,
    RegisteredGroup,
)

logger = logging.getLogger(__name__)

_engine: Engine | None = None


def init_database(db_path: str) -> None:
    """Initialize the SQLite database and create tables if needed.

    Args:
        db_path: Absolute path to the SQLite database file.
            Use ':memory:' for testing.
    """
    global _engine
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    _engine = create_engine_for_path(db_path)
    Base.metadata.create_all(_engine)
    logger.info("Database initialized at %s", db_path)


def get_engine() -> Engine:
    """Return the active database engine.

    Raises:
        RuntimeError: If init_database() has not been called.
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


# --- Chat operations ---


def store_chat_metadata(
    chat_jid: str,
    timestamp: str,
    name: str | None = None,
    channel: str | None = None,
) -> None:
    """Store or update chat metadata without message content.

    Preserves the most recent timestamp using MAX logic on conflict.

    Args:
        chat_jid: Chat JID.
        timestamp: ISO timestamp string.
        name: Optional display name for the chat.
        channel: Optional name of the channel that owns the chat.
    """
    engine = get_engine()
    with Session(engine) as session:
        stmt = sqlite_insert(Chat).values(
            jid=chat_jid,
            name=name or chat_jid,
            last_message_time=timestamp,
            channel=channel,
        )
        set_: dict[str, object] = {
            "last_message_time": text("MAX(chats.last_message_time, excluded.last_message_time)"),
        }
        if name:
            set_["name"] = stmt.excluded.name
        if channel:
            set_["channel"] = stmt.excluded.channel
        stmt = stmt.on_conflict_do_update(index_elements=["jid"], set_=set_)
        session.execute(stmt)
        session.commit()


def get_all_chats() -> list[ChatInfo]:
    """Return all known chats ordered by most recent activity."""
    engine = get_engine()
    with Session(engine) as session:
        rows = session.scalars(select(Chat).order_by(Chat.last_message_time.desc())).all()
        return [
            ChatInfo(
                jid=r.jid,
                name=r.name or r.jid,
                last_message_time=r.last_message_time or "",
                channel=r.channel,
            )
            for r in rows
        ]


# --- Message operations ---


def store_message(msg: NewMessage) -> None:
    """Store or replace a message in the messages table.

    Args:
        msg: The message to store (inbound, or a bot reply).
    """
    engine = get_engine()
    with Session(engine) as session:
        stmt = sqlite_insert(Message).values(
            id=msg.id,
            chat_jid=msg.chat_jid,
            sender=msg.sender,
            sender_name=msg.sender_name,
            content=msg.content,
            timestamp=msg.timestamp,
            is_from_me=1 if msg.is_from_me else 0,
            is_bot_message=1 if msg.is_bot_message else 0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id", "chat_jid"],
            set_={
                "sender": stmt.excluded.sender,
                "sender_name": stmt.excluded.sender_name,
                "content": stmt.excluded.content,
                "timestamp": stmt.excluded.timestamp,
                "is_from_me": stmt.excluded.is_from_me,
                "is_bot_message": stmt.excluded.is_bot_message,
            },
        )
        session.execute(stmt)
        session.commit()


def _row_to_message(r: Message) -> NewMessage:
    return NewMessage(
        id=r.id,
        chat_jid=r.chat_jid,
        sender=r.sender or "",
        sender_name=r.sender_name or "",
        content=r.content or "",
        timestamp=r.timestamp or "",
        is_from_me=bool(r.is_from_me),
        is_bot_message=bool(r.is_bot_message),
    )


def get_new_messages(
    jids: list[str],
    last_timestamp: str,
    bot_prefix: str,
) -> tuple[list[NewMessage], str]:
    """Fetch messages newer than last_timestamp for the given JIDs.

    Excludes bot messages (using both the is_bot_message flag and the
    content prefix as a backstop for pre-migration rows).

    Args:
        jids: List of chat JIDs to query.
        last_timestamp: Only return messages with timestamp > this value.
        bot_prefix: Assistant name prefix (e.g., 'Andy') for backstop filtering.

    Returns:
        Tuple of (messages list, new_timestamp string). new_timestamp is the
        timestamp of the most recent returned message, or last_timestamp if none.
    """
    if not jids:
        return [], last_timestamp

    engine = get_engine()
    with Session(engine) as session:
        rows = session.scalars(
            select(Message)
            .where(
                Message.timestamp > last_timestamp,
                Message.chat_jid.in_(jids),
                Message.is_bot_message == 0,
                ~Message.content.like(f"{bot_prefix}:%"),
            )
            .order_by(Message.timestamp)
        ).all()
        messages = [_row_to_message(r) for r in rows]

    new_timestamp = last_timestamp
    for m in messages:
        if m.timestamp > new_timestamp:
            new_timestamp = m.timestamp
    return messages, new_timestamp


def get_messages_since(
    chat_jid: str,
    since_timestamp: str,
    bot_prefix: str,
) -> list[NewMessage]:
    """Fetch all non-bot messages for a chat since a given timestamp.

    Args:
        chat_jid: The chat JID to query.
        since_timestamp: Only return messages with timestamp > this value.
        bot_prefix: Assistant name prefix for backstop bot-message filtering.

    Returns:
        List of messages ordered by timestamp ascending.
    """
    engine = get_engine()
    with Session(engine) as session:
        rows = session.scalars(
            select(Message)
            .where(
                Message.chat_jid == chat_jid,
                Message.timestamp > since_timestamp,
                Message.is_bot_message == 0,
                ~Message.content.like(f"{bot_prefix}:%"),
            )
            .order_by(Message.timestamp)
        ).all()
        return [_row_to_message(r) for r in rows]


# --- Router state operations ---


def get_router_state(key: str) -> str | None:
    """Fetch a value from the router_state key-value table."""
    engine = get_engine()
    with Session(engine) as session:
        row = session.get(RouterState, key)
        return row.value if row else None


def set_router_state(key: str, value: str) -> None:
    """Set a value in the router_state key-value table.

    Args:
        key: The state key.
        value: The value to store (use json.dumps for complex values).
    """
    engine = get_engine()
    with Session(engine) as session:
        stmt = sqlite_insert(RouterState).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value},
        )
        session.execute(stmt)
        session.commit()


# --- Session operations ---


def get_session(group_folder: str) -> str | None:
    """Fetch the stored agent session ID for a group."""
    engine = get_engine()
    with Session(engine) as session:
        row = session.get(SessionRecord, group_folder)
        return row.session_id if row else None


def set_session(group_folder: str, session_id: str) -> None:
    """Store or replace the agent session ID for a group."""
    engine = get_engine()
    with Session(engine) as session:
        stmt = sqlite_insert(SessionRecord).values(group_folder=group_folder, session_id=session_id)
        stmt = stmt.on_conflict_do_update(
            index_elements=["group_folder"],
            set_={"session_id": stmt.excluded.session_id},
        )
        session.execute(stmt)
        session.commit()


def get_all_sessions() -> dict[str, str]:
    """Fetch all stored session IDs as a group_folder -> session_id dict."""
    engine = get_engine()
    with Session(engine) as session:
        rows = session.scalars(select(SessionRecord)).all()
        return {r.group_folder: r.session_id for r in rows}


# --- Registered group operations ---


def get_registered_group(jid: str) -> RegisteredGroup | None:
    """Fetch a registered group by its JID."""
    engine = get_engine()
    with Session(engine) as session:
        row = session.get(RegisteredGroupRow, jid)
        return _row_to_group(row) if row else None


def set_registered_group(jid: str, group: RegisteredGroup) -> None:
    """Insert or replace a registered group record.

    Args:
        jid: The chat JID.
        group: The RegisteredGroup data to store.
    """
    engine = get_engine()
    with Session(engine) as session:
        container_config_json = (
            group.container_config.model_dump_json() if group.container_config else None
        )
        requires_trigger_int = 1 if group.requires_trigger is None or group.requires_trigger else 0
        stmt = sqlite_insert(RegisteredGroupRow).values(
            jid=jid,
            name=group.name,
            folder=group.folder,
            trigger_pattern=group.trigger,
            added_at=group.added_at,
            channel=group.channel or None,
            container_config=container_config_json,
            requires_trigger=requires_trigger_int,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["jid"],
            set_={
                "name": stmt.excluded.name,
                "folder": stmt.excluded.folder,
                "trigger_pattern": stmt.excluded.trigger_pattern,
                "added_at": stmt.excluded.added_at,
                "channel": stmt.excluded.channel,
                "container_config": stmt.excluded.container_config,
                "requires_trigger": stmt.excluded.requires_trigger,
            },
        )
        session.execute(stmt)
        session.commit()


def get_all_registered_groups() -> dict[str, RegisteredGroup]:
    """Fetch all registered groups as a JID -> RegisteredGroup dict."""
    engine = get_engine()
    with Session(engine) as session:
        rows = session.scalars(select(RegisteredGroupRow)).all()
        return {r.jid: _row_to_group(r) for r in rows}


def _row_to_group(row: RegisteredGroupRow) -> RegisteredGroup:
    """Convert a RegisteredGroupRow ORM object to a RegisteredGroup domain model."""
    container_config = None
    if row.container_config:
        try:
            container_config = ContainerConfig.model_validate_json(row.container_config)
        except ValueError:
            logger.warning("Failed to parse container_config for group %s", row.jid)

    requires_trigger: bool | None = None
    if row.requires_trigger is not None:
        requires_trigger = bool(row.requires_trigger)

    return RegisteredGroup(
        name=row.name,
        folder=row.folder,
        trigger=row.trigger_pattern,
        added_at=row.added_at,
        jid=row.jid,
        channel=row.channel or "",
        container_config=container_config,
        requires_trigger=requires_trigger,
    )
