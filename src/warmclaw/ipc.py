"""Filesystem IPC bridge between the host and agent containers.

Every exchange is a JSON envelope written temp-then-rename into a
per-group, per-purpose directory under ``<data_dir>/ipc/<folder>/``:

- ``input/``: host -> container follow-up messages plus the ``_close``
  sentinel.
- ``messages/``: container -> host outbound text.
- ``files/``: container -> host file delivery requests.

Envelopes that fail to parse, fail validation, or fail authorization are
moved to ``<data_dir>/ipc/errors/<folder>-<file>`` rather than deleted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from warmclaw.channels.base import Capability, Channel
from warmclaw.group_folder import resolve_group_folder_path
from warmclaw.router import MAIN_GROUP_FOLDER, find_channel
from warmclaw.types import RegisteredGroup

logger = logging.getLogger(__name__)

CLOSE_SENTINEL = "_close"
ERRORS_DIR = "errors"

_M = TypeVar("_M", bound=BaseModel)


class IpcEnvelopeError(Exception):
    """An IPC envelope was rejected and must be quarantined."""


class InputEnvelope(BaseModel):
    """Host -> container follow-up message."""

    type: Literal["message"]
    text: str


class OutboundMessageEnvelope(BaseModel):
    """Container -> host text message request."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["message"]
    chat_jid: str = Field(alias="chatJid", min_length=1)
    text: str = Field(min_length=1)


class FileEnvelope(BaseModel):
    """Container -> host file delivery request.

    ``file_path`` is relative to the sending group's workspace.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file"]
    chat_jid: str = Field(alias="chatJid", min_length=1)
    file_path: str = Field(alias="filePath", min_length=1)
    filename: str = Field(min_length=1)
    mime_type: str | None = Field(default=None, alias="mimeType")
    caption: str | None = None


# --- Writer side ---


def ipc_group_dir(data_dir: Path, group_folder: str) -> Path:
    """Return the IPC root for one group."""
    return data_dir / "ipc" / group_folder


def write_envelope(directory: Path, payload: dict[str, Any]) -> Path:
    """Atomically write a JSON envelope into an IPC directory.

    The payload is written to ``<name>.json.tmp`` and renamed into place,
    so a reader polling ``*.json`` never observes a partial file.

    Args:
        directory: Target directory (created if missing).
        payload: JSON-serializable envelope body.

    Returns:
        Path of the final envelope file.

    Raises:
        OSError: If the directory or file cannot be written.
    """
    directory.mkdir(parents=True, exist_ok=True)
    filename = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}.json"
    final_path = directory / filename
    temp_path = directory / f"{filename}.tmp"
    temp_path.write_text(json.dumps(payload), encoding="utf-8")
    os.replace(temp_path, final_path)
    return final_path


def write_close_sentinel(input_dir: Path) -> None:
    """Ask the container reading ``input_dir`` to wind down.

    Raises:
        OSError: If the sentinel cannot be written.
    """
    input_dir.mkdir(parents=True, exist_ok=True)
    (input_dir / CLOSE_SENTINEL).write_text("", encoding="utf-8")


# --- Reader side (runs inside the container) ---


def consume_close_sentinel(input_dir: Path) -> bool:
    """Check for the ``_close`` sentinel and remove it.

    Returns:
        True if the sentinel was present.
    """
    sentinel = input_dir / CLOSE_SENTINEL
    if not sentinel.exists():
        return False
    sentinel.unlink(missing_ok=True)
    return True


def drain_input(input_dir: Path, errors_dir: Path | None = None) -> list[str]:
    """Read and delete every pending input envelope.

    This is the container-side half of the ``input/`` protocol; the host
    only writes there. The agent runner image consumes its input the same
    way, and the host tests use this reader to check what a container sees.

    Args:
        input_dir: The container's IPC input directory.
        errors_dir: Where malformed envelopes are moved. When None they are
            deleted.

    Returns:
        Message texts in filename (arrival) order.
    """
    texts: list[str] = []
    try:
        files = sorted(input_dir.glob("*.json"))
    except OSError as exc:
        logger.error("Error listing IPC input dir %s: %s", input_dir, exc)
        return texts

    for file_path in files:
        try:
            envelope = InputEnvelope.model_validate_json(file_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except (OSError, ValidationError) as exc:
            logger.warning("Rejected IPC input %s: %s", file_path.name, exc)
            if errors_dir is not None:
                _quarantine(file_path, errors_dir / file_path.name)
            else:
                file_path.unlink(missing_ok=True)
            continue
        file_path.unlink(missing_ok=True)
        if envelope.text:
            texts.append(envelope.text)
    return texts


# --- Host watcher ---


@dataclass
class IpcDeps:
    """Dependencies injected into the IPC watcher.

    Attributes:
        send_message: Async callable delivering outbound text to a chat.
        registered_groups: Callable returning the current jid -> group map.
        channels: Callable returning the connected channels.
        groups_dir: Root of the per-group workspaces, used to resolve file paths.
    """

    send_message: Callable[[str, str], Coroutine[Any, Any, None]]
    registered_groups: Callable[[], dict[str, RegisteredGroup]]
    channels: Callable[[], list[Channel]]
    groups_dir: Path


class IpcWatcher:
    """Polls every group's ``messages/`` and ``files/`` directories.

    Args:
        data_dir: Root data directory containing ``ipc/``.
        poll_interval_s: Seconds between scans.
        deps: Injected dependencies.
    """

    def __init__(self, data_dir: Path, poll_interval_s: float, deps: IpcDeps) -> None:
        self._ipc_base = data_dir / "ipc"
        self._poll_interval_s = poll_interval_s
        self._deps = deps
        self._running = False

    @property
    def errors_dir(self) -> Path:
        """Quarantine directory for rejected envelopes."""
        return self._ipc_base / ERRORS_DIR

    async def run(self) -> None:
        """Scan IPC directories until stop() is called."""
        if self._running:
            logger.debug("IPC watcher already running, skipping duplicate start")
            return
        self._running = True
        self._ipc_base.mkdir(parents=True, exist_ok=True)
        logger.info("IPC watcher started (per-group namespaces)")
        while self._running:
            try:
                await self.process_once()
            except Exception:
                logger.error("Error in IPC watcher loop", exc_info=True)
            await asyncio.sleep(self._poll_interval_s)

    def stop(self) -> None:
        """Stop the polling loop after the current scan."""
        self._running = False

    async def process_once(self) -> int:
        """Process every pending envelope once.

        Returns:
            Number of envelopes handled (delivered or quarantined).
        """
        try:
            group_folders = sorted(
                d.name for d in self._ipc_base.iterdir() if d.is_dir() and d.name != ERRORS_DIR
            )
        except FileNotFoundError:
            return 0

        registered_groups = self._deps.registered_groups()
        handled = 0
        for source_group in group_folders:
            group_dir = self._ipc_base / source_group
            for file_path in _pending(group_dir / "messages"):
                await self._handle(file_path, source_group, registered_groups, self._send_text)
                handled += 1
            for file_path in _pending(group_dir / "files"):
                await self._handle(file_path, source_group, registered_groups, self._send_file)
                handled += 1
        return handled

    async def _handle(
        self,
        file_path: Path,
        source_group: str,
        registered_groups: dict[str, RegisteredGroup],
        handler: Callable[[str, str, dict[str, RegisteredGroup]], Coroutine[Any, Any, None]],
    ) -> None:
        try:
            raw = file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        try:
            await handler(raw, source_group, registered_groups)
        except IpcEnvelopeError as exc:
            logger.warning("IPC envelope %s from %s rejected: %s", file_path.name, source_group, exc)
            self._move_to_errors(file_path, source_group)
            return
        except Exception:
            logger.error(
                "Error processing IPC envelope %s from %s",
                file_path.name,
                source_group,
                exc_info=True,
            )
            self._move_to_errors(file_path, source_group)
            return
        file_path.unlink(missing_ok=True)

    async def _send_text(
        self,
        raw: str,
        source_group: str,
        registered_groups: dict[str, RegisteredGroup],
    ) -> None:
        envelope = _parse(OutboundMessageEnvelope, raw)
        _authorize(envelope.chat_jid, source_group, registered_groups)
        await self._deps.send_message(envelope.chat_jid, envelope.text)
        logger.info("IPC message sent to %s from %s", envelope.chat_jid, source_group)

    async def _send_file(
        self,
        raw: str,
        source_group: str,
        registered_groups: dict[str, RegisteredGroup],
    ) -> None:
        envelope = _parse(FileEnvelope, raw)
        _authorize(envelope.chat_jid, source_group, registered_groups)

        channel = find_channel(self._deps.channels(), envelope.chat_jid)
        if channel is None:
            raise IpcEnvelopeError(f"no channel owns {envelope.chat_jid}")
        if Capability.FILES not in channel.capabilities:
            raise IpcEnvelopeError(f"channel {channel.name} does not support files")

        try:
            group_dir = resolve_group_folder_path(self._deps.groups_dir, source_group)
        except ValueError as exc:
            raise IpcEnvelopeError(str(exc)) from exc
        host_path = resolve_workspace_file(group_dir, envelope.file_path)
        if not host_path.is_file():
            raise IpcEnvelopeError(f"file not found: {envelope.file_path}")

        await channel.send_file(
            envelope.chat_jid,
            host_path,
            envelope.filename,
            envelope.mime_type,
            envelope.caption,
        )
        logger.info(
            "IPC file %s sent to %s from %s", envelope.filename, envelope.chat_jid, source_group
        )

    def _move_to_errors(self, file_path: Path, source_group: str) -> None:
        _quarantine(file_path, self.errors_dir / f"{source_group}-{file_path.name}")


def resolve_workspace_file(group_dir: Path, relative_path: str) -> Path:
    """Resolve a container-supplied path inside a group workspace.

    Args:
        group_dir: The sending group's resolved workspace directory.
        relative_path: Path relative to the workspace, as written by the agent.

    Returns:
        The resolved host path.

    Raises:
        IpcEnvelopeError: If the path is absolute or escapes the workspace.
    """
    candidate = PurePosixPath(relative_path)
    if candidate.is_absolute() or ".." in candidate.parts:
        raise IpcEnvelopeError(f"path traversal rejected: {relative_path}")
    base = group_dir.resolve()
    resolved = (base / candidate).resolve()
    if not resolved.is_relative_to(base):
        raise IpcEnvelopeError(f"path escapes group directory: {relative_path}")
    return resolved


def _authorize(
    chat_jid: str,
    source_group: str,
    registered_groups: dict[str, RegisteredGroup],
) -> None:
    """Main may target any chat; other groups only chats registered to their folder."""
    if source_group == MAIN_GROUP_FOLDER:
        return
    target = registered_groups.get(chat_jid)
    if target is None or target.folder != source_group:
        raise IpcEnvelopeError(f"unauthorized target {chat_jid} for group {source_group}")


def _parse(model: type[_M], raw: str) -> _M:
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise IpcEnvelopeError(f"invalid envelope: {exc.error_count()} error(s)") from exc


def _pending(directory: Path) -> list[Path]:
    try:
        return sorted(directory.glob("*.json"))
    except OSError:
        return []


def _quarantine(file_path: Path, dest: Path) -> None:
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        file_path.rename(dest)
    except OSError as exc:
        logger.error("Failed to quarantine %s: %s", file_path, exc)
