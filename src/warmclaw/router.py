"""Message formatting, outbound cleanup and channel lookup for WarmClaw."""

from __future__ import annotations

import logging
import re
import secrets
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from warmclaw.db import operations as db
from warmclaw.types import NewMessage, RegisteredGroup

if TYPE_CHECKING:
    from warmclaw.channels.base import Channel

logger = logging.getLogger(__name__)

MAIN_GROUP_FOLDER = "main"


def escape_xml(text: str) -> str:
    """Escape special XML characters in a string.

    Args:
        text: Raw string to escape.

    Returns:
        String with &, <, >, " replaced by XML entities.
    """
    if not text:
        return ""
    return (
        text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
    )


def format_messages(messages: list[NewMessage]) -> str:
    """Format a list of messages into XML for agent consumption.

    Args:
        messages: List of inbound messages to format.

    Returns:
        XML string with all messages wrapped in <messages> root element.
    """
    lines = [
        f'<message sender="{escape_xml(m.sender_name)}" time="{m.timestamp}">'
        f"{escape_xml(m.content)}</message>"
        for m in messages
    ]
    return f"<messages>\n{chr(10).join(lines)}\n</messages>"


_INTERNAL_TAG_PATTERN: re.Pattern[str] = re.compile(r"<internal>[\s\S]*?</internal>", re.DOTALL)


def strip_internal_tags(text: str) -> str:
    """Remove <internal>...</internal> blocks from agent output.

    These blocks contain the agent's internal reasoning and should not
    be sent to the user.

    Args:
        text: Raw agent output text.

    Returns:
        Text with all internal blocks removed and whitespace trimmed.
    """
    return _INTERNAL_TAG_PATTERN.sub("", text).strip()


def format_outbound(raw_text: str) -> str:
    """Prepare agent output text for sending to the user.

    Strips internal reasoning blocks and trims whitespace.

    Args:
        raw_text: Raw text from the agent container.

    Returns:
        Clean text ready for the user, or empty string if nothing remains.
    """
    return strip_internal_tags(raw_text)


def find_channel(channels: list[Channel], jid: str) -> Channel | None:
    """Return the first channel that owns a JID.

    Args:
        channels: Connected channels, in priority order.
        jid: The chat JID to route.

    Returns:
        The owning channel, or None if no channel claims the JID.
    """
    for channel in channels:
        if channel.owns_jid(jid):
            return channel
    return None


def needs_trigger(group: RegisteredGroup) -> bool:
    """Whether messages for a group must mention the assistant to be routed."""
    return group.folder != MAIN_GROUP_FOLDER and group.requires_trigger is not False


def has_trigger(messages: list[NewMessage], trigger_pattern: re.Pattern[str]) -> bool:
    """Check whether any message in a batch mentions the assistant."""
    return any(trigger_pattern.search(m.content.strip()) for m in messages)


async def route_outbound(
    channels: list[Channel],
    jid: str,
    text: str,
    assistant_name: str,
) -> None:
    """Send text to a chat through its connected channel and log the reply.

    The reply is stored as a bot message so later fetches skip it.
    Persistence failures are logged and do not fail the send.

    Args:
        channels: Connected channels.
        jid: Destination chat JID.
        text: Clean outbound text.
        assistant_name: Display name recorded as the sender.

    Raises:
        RuntimeError: If no connected channel owns the JID.
    """
    channel = next((c for c in channels if c.owns_jid(jid) and c.is_connected()), None)
    if channel is None:
        raise RuntimeError(f"No channel for JID: {jid}")
    await channel.send_message(jid, text)
    now_ms = int(time.time() * 1000)
    try:
        db.store_message(
            NewMessage(
                id=f"bot-{now_ms}-{secrets.token_hex(4)}",
                chat_jid=jid,
                sender="assistant",
                sender_name=assistant_name,
                content=text,
                timestamp=datetime.now(UTC).isoformat(),
                is_from_me=True,
                is_bot_message=True,
            )
        )
    except Exception:
        logger.warning("Failed to store bot reply for %s", jid, exc_info=True)
