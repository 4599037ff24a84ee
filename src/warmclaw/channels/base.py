"""Abstract base class for WarmClaw message channels.

Concrete adapters (one per messaging platform) inherit from Channel and
declare which optional features they support through ``capabilities``.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import ClassVar

from warmclaw.types import NewMessage

# Callback type for inbound messages delivered by a channel.
# Called with (chat_jid, message) when a new message is received.
OnInboundMessage = Callable[[str, NewMessage], None]

# Callback for chat metadata discovery: (chat_jid, timestamp, name).
OnChatMetadata = Callable[[str, str, str | None], None]


class Capability(enum.Enum):
    """Optional channel features."""

    TYPING = "typing"
    FILES = "files"


class Channel(ABC):
    """Abstract base class for WarmClaw message channels.

    Subclasses must implement all abstract methods. Optional features are
    advertised in ``capabilities``; callers check the set before using
    ``set_typing`` or ``send_file``.
    """

    capabilities: ClassVar[frozenset[Capability]] = frozenset()

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable channel identifier (e.g., 'telegram')."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the messaging platform.

        Raises:
            ConnectionError: If the connection cannot be established.
        """

    @abstractmethod
    async def send_message(self, jid: str, text: str) -> None:
        """Send a text message to the specified JID.

        Args:
            jid: The destination chat JID.
            text: The message text to send.
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """Check whether the channel is currently connected."""

    @abstractmethod
    def owns_jid(self, jid: str) -> bool:
        """Check whether this channel routes messages for a JID.

        Args:
            jid: The JID to check.

        Returns:
            True if this channel should handle messages for this JID.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the messaging platform gracefully.

        Called during shutdown. Should not raise exceptions.
        """

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        """Show or clear the typing indicator for a chat.

        Only called on channels declaring ``Capability.TYPING``.

        Args:
            jid: The chat JID.
            is_typing: True to show composing, False to clear it.
        """
        raise NotImplementedError(f"{self.name} does not support typing indicators")

    async def send_file(
        self,
        jid: str,
        path: Path,
        filename: str,
        mime_type: str | None = None,
        caption: str | None = None,
    ) -> None:
        """Upload a host file to a chat.

        Only called on channels declaring ``Capability.FILES``.

        Args:
            jid: The destination chat JID.
            path: Resolved host path of the file.
            filename: File name shown to the recipient.
            mime_type: Optional MIME type.
            caption: Optional caption text.
        """
        raise NotImplementedError(f"{self.name} does not support file delivery")
