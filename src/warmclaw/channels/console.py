"""Log-only channel used when no platform adapter is configured."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import ClassVar

from warmclaw.channels.base import Capability, Channel

logger = logging.getLogger(__name__)


class ConsoleChannel(Channel):
    """Writes every outbound message, typing change and file to the log.

    Owns every JID, so it must be the last channel in the lookup order.
    """

    capabilities: ClassVar[frozenset[Capability]] = frozenset(
        {Capability.TYPING, Capability.FILES}
    )

    def __init__(self) -> None:
        self._connected = False

    @property
    def name(self) -> str:
        return "console"

    async def connect(self) -> None:
        self._connected = True
        logger.info("Console channel connected (outbound messages are logged only)")

    async def send_message(self, jid: str, text: str) -> None:
        logger.info("[%s] -> %s", jid, text)

    def is_connected(self) -> bool:
        return self._connected

    def owns_jid(self, jid: str) -> bool:
        return True

    async def disconnect(self) -> None:
        self._connected = False

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        logger.debug("[%s] typing=%s", jid, is_typing)

    async def send_file(
        self,
        jid: str,
        path: Path,
        filename: str,
        mime_type: str | None = None,
        caption: str | None = None,
    ) -> None:
        logger.info(
            "[%s] -> file %s (%s, %d bytes) %s",
            jid,
            filename,
            mime_type or "application/octet-stream",
            path.stat().st_size,
            caption or "",
        )
