"""Orchestrator context: delivery cursors, sessions and registered groups.

Everything the delivery loop and the orchestrator share lives in one
``OrchestratorState`` object with explicit ``load()``/``save()`` against
the store, so tests can build one directly without module globals.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from warmclaw.db import operations as db
from warmclaw.types import RegisteredGroup

logger = logging.getLogger(__name__)

# Router-state keys stored in the DB
STATE_KEY_LAST_TIMESTAMP = "last_timestamp"
STATE_KEY_LAST_AGENT_TIMESTAMP = "last_agent_timestamp"


@dataclass
class OrchestratorState:
    """Mutable routing state persisted to the store.

    Attributes:
        last_timestamp: Global-seen cursor; newest message observed by a poll tick.
        last_agent_timestamp: Agent-seen cursor per chat JID; newest message
            handed to an agent.
        sessions: Latest agent session id per group folder.
        registered_groups: Registered groups by chat JID.
    """

    last_timestamp: str = ""
    last_agent_timestamp: dict[str, str] = field(default_factory=dict)
    sessions: dict[str, str] = field(default_factory=dict)
    registered_groups: dict[str, RegisteredGroup] = field(default_factory=dict)

    def load(self) -> None:
        """Restore cursors, sessions and registered groups from the store."""
        raw_ts = db.get_router_state(STATE_KEY_LAST_TIMESTAMP)
        if raw_ts:
            self.last_timestamp = raw_ts

        raw_agent_ts = db.get_router_state(STATE_KEY_LAST_AGENT_TIMESTAMP)
        if raw_agent_ts:
            try:
                loaded = json.loads(raw_agent_ts)
            except json.JSONDecodeError:
                logger.warning(
                    "Could not parse %s from DB; resetting.", STATE_KEY_LAST_AGENT_TIMESTAMP
                )
                loaded = {}
            self.last_agent_timestamp = loaded if isinstance(loaded, dict) else {}

        self.sessions = db.get_all_sessions()
        self.registered_groups = db.get_all_registered_groups()
        logger.info(
            "State loaded: %d groups, %d sessions, last_timestamp=%r",
            len(self.registered_groups),
            len(self.sessions),
            self.last_timestamp,
        )

    def save(self) -> None:
        """Persist both cursors."""
        db.set_router_state(STATE_KEY_LAST_TIMESTAMP, self.last_timestamp)
        db.set_router_state(STATE_KEY_LAST_AGENT_TIMESTAMP, json.dumps(self.last_agent_timestamp))

    def agent_cursor(self, chat_jid: str) -> str:
        """Agent-seen cursor for a chat, or '' if the chat was never handed off."""
        return self.last_agent_timestamp.get(chat_jid, "")

    def advance_agent_cursor(self, chat_jid: str, timestamp: str) -> str:
        """Move a chat's agent-seen cursor and persist it.

        Returns:
            The previous cursor value, for rollback.
        """
        previous = self.agent_cursor(chat_jid)
        self.last_agent_timestamp[chat_jid] = timestamp
        self.save()
        return previous

    def rollback_agent_cursor(self, chat_jid: str, previous: str) -> None:
        """Restore a chat's agent-seen cursor after a failed invocation."""
        self.last_agent_timestamp[chat_jid] = previous
        self.save()

    def record_session(self, group_folder: str, session_id: str) -> None:
        """Remember and persist a group's latest session id."""
        self.sessions[group_folder] = session_id
        try:
            db.set_session(group_folder, session_id)
        except Exception:
            logger.warning("Failed to persist session ID for %s", group_folder, exc_info=True)
