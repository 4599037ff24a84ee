"""Tests for warmclaw.db.operations against an in-memory SQLite store."""

from __future__ import annotations

import pytest

from warmclaw.db import operations as db
from warmclaw.types import ContainerConfig, NewMessage, RegisteredGroup


@pytest.fixture(autouse=True)
def fresh_db():
    """Reset the database to a fresh in-memory state for each test."""
    db.init_database(":memory:")
    yield
    db._engine = None


def _msg(
    msg_id: str,
    timestamp: str,
    content: str = "hello",
    chat_jid: str = "chat@g.us",
    is_bot_message: bool = False,
) -> NewMessage:
    return NewMessage(
        id=msg_id,
        chat_jid=chat_jid,
        sender="u1",
        sender_name="User",
        content=content,
        timestamp=timestamp,
        is_bot_message=is_bot_message,
    )


class TestEngine:
    """Tests for engine lifecycle."""

    def test_uninitialized_raises(self) -> None:
        """Using the store before init_database() raises."""
        db._engine = None
        with pytest.raises(RuntimeError, match="not initialized"):
            db.get_engine()

    def test_file_database_creates_parent(self, tmp_path) -> None:
        """A file path has its parent directory created."""
        path = tmp_path / "store" / "messages.db"
        db.init_database(str(path))
        db.set_router_state("k", "v")
        assert path.exists()


class TestChatOperations:
    """Tests for chat metadata."""

    def test_name_and_channel_stored(self) -> None:
        """Name and owning channel are recorded."""
        db.store_chat_metadata("chat@g.us", "2024-01-01T00:00:00Z", "Team", "console")
        chat = db.get_all_chats()[0]
        assert (chat.jid, chat.name, chat.channel) == ("chat@g.us", "Team", "console")

    def test_keeps_latest_timestamp(self) -> None:
        """Older metadata never moves last_message_time backwards."""
        db.store_chat_metadata("chat@g.us", "2024-01-02T00:00:00Z")
        db.store_chat_metadata("chat@g.us", "2024-01-01T00:00:00Z")
        assert db.get_all_chats()[0].last_message_time == "2024-01-02T00:00:00Z"

    def test_name_not_overwritten_without_new_name(self) -> None:
        """A nameless update keeps the known name."""
        db.store_chat_metadata("chat@g.us", "2024-01-01T00:00:00Z", "Team")
        db.store_chat_metadata("chat@g.us", "2024-01-02T00:00:00Z")
        assert db.get_all_chats()[0].name == "Team"


class TestMessageOperations:
    """Tests for the message log."""

    def test_get_new_messages_filters_and_orders(self) -> None:
        """Only newer, non-bot messages for the requested chats come back in order."""
        db.store_message(_msg("m2", "2024-01-01T00:00:02Z"))
        db.store_message(_msg("m1", "2024-01-01T00:00:01Z"))
        db.store_message(_msg("m0", "2024-01-01T00:00:00Z"))
        db.store_message(_msg("b1", "2024-01-01T00:00:03Z", is_bot_message=True))
        db.store_message(_msg("o1", "2024-01-01T00:00:04Z", chat_jid="other@g.us"))

        messages, new_ts = db.get_new_messages(["chat@g.us"], "2024-01-01T00:00:00Z", "Andy")
        assert [m.id for m in messages] == ["m1", "m2"]
        assert new_ts == "2024-01-01T00:00:02Z"

    def test_bot_prefix_backstop(self) -> None:
        """Messages starting with 'Name:' are treated as bot output."""
        db.store_message(_msg("m1", "2024-01-01T00:00:01Z", content="Andy: old reply"))
        messages, new_ts = db.get_new_messages(["chat@g.us"], "", "Andy")
        assert messages == []
        assert new_ts == ""

    def test_no_jids_returns_cursor(self) -> None:
        """An empty chat list short-circuits."""
        assert db.get_new_messages([], "ts", "Andy") == ([], "ts")

    def test_get_messages_since(self) -> None:
        """Messages after the cursor are returned for one chat."""
        db.store_message(_msg("m1", "2024-01-01T00:00:01Z"))
        db.store_message(_msg("m2", "2024-01-01T00:00:02Z"))
        since = db.get_messages_since("chat@g.us", "2024-01-01T00:00:01Z", "Andy")
        assert [m.id for m in since] == ["m2"]

    def test_store_message_upserts(self) -> None:
        """Re-storing a message id replaces its content."""
        db.store_message(_msg("m1", "2024-01-01T00:00:01Z", content="draft"))
        db.store_message(_msg("m1", "2024-01-01T00:00:01Z", content="edited"))
        since = db.get_messages_since("chat@g.us", "", "Andy")
        assert [m.content for m in since] == ["edited"]


class TestRouterStateAndSessions:
    """Tests for key/value state and sessions."""

    def test_router_state_roundtrip_and_overwrite(self) -> None:
        """Values are stored and replaced."""
        assert db.get_router_state("last_timestamp") is None
        db.set_router_state("last_timestamp", "a")
        db.set_router_state("last_timestamp", "b")
        assert db.get_router_state("last_timestamp") == "b"

    def test_sessions(self) -> None:
        """Sessions are stored per folder."""
        db.set_session("alpha", "s1")
        db.set_session("beta", "s2")
        db.set_session("alpha", "s3")
        assert db.get_session("alpha") == "s3"
        assert db.get_all_sessions() == {"alpha": "s3", "beta": "s2"}


class TestRegisteredGroups:
    """Tests for group registration records."""

    def test_roundtrip_preserves_fields(self) -> None:
        """Registration fields, including config and channel, survive storage."""
        group = RegisteredGroup(
            name="Alpha",
            folder="alpha",
            trigger="@Andy",
            added_at="2024-01-01T00:00:00Z",
            channel="console",
            container_config=ContainerConfig(timeout_ms=5000),
            requires_trigger=False,
        )
        db.set_registered_group("alpha@g.us", group)
        stored = db.get_registered_group("alpha@g.us")
        assert stored is not None
        assert stored.jid == "alpha@g.us"
        assert stored.channel == "console"
        assert stored.container_config is not None
        assert stored.container_config.timeout_ms == 5000
        assert stored.requires_trigger is False

    def test_default_requires_trigger(self) -> None:
        """An unset requires_trigger is stored as required."""
        group = RegisteredGroup(
            name="Beta", folder="beta", trigger="@Andy", added_at="2024-01-01T00:00:00Z"
        )
        db.set_registered_group("beta@g.us", group)
        assert db.get_all_registered_groups()["beta@g.us"].requires_trigger is True

    def test_missing_group(self) -> None:
        """Unknown JIDs return None."""
        assert db.get_registered_group("nope@g.us") is None
