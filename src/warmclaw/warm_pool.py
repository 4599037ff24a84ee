"""Standby container pool that removes cold-start latency.

One idle container per registered chat is kept running in standby: it has
received the ``[STANDBY]`` prompt and sits in its own IPC poll loop. When
the first real message for the chat arrives, ``claim()`` installs the real
output handler, hands the process to the queue, and writes the message into
the container's IPC input. No spawn happens on the hot path.

Per-chat lifecycle::

    EMPTY --prewarm--> BOOTING --spawned--> STANDBY --claim--> CLAIMED
                          |                    |                  |
                          +------ exit --------+--> respawn <-----+

Standby containers count against the queue's global ceiling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from warmclaw.container import AgentRunner, OnOutput
from warmclaw.ipc import consume_close_sentinel, ipc_group_dir, write_close_sentinel
from warmclaw.queue import GroupQueue
from warmclaw.router import MAIN_GROUP_FOLDER
from warmclaw.types import ContainerInput, ContainerOutput, RegisteredGroup

logger = logging.getLogger(__name__)

STANDBY_PROMPT = "[STANDBY]"


@dataclass(eq=False)
class WarmEntry:
    """One standby container slot.

    Attributes:
        group: The group the container serves.
        claimed: Flips to True exactly once, on a successful claim.
        on_output: Real output handler; None while in standby.
        process: Container process, None until spawned.
        container_name: Container name, None until spawned.
        exited: True once the container run has finished.
    """

    group: RegisteredGroup
    claimed: bool = False
    on_output: OnOutput | None = None
    process: asyncio.subprocess.Process | None = None
    container_name: str | None = None
    exited: bool = False


class WarmPool:
    """Pre-spawned container pool, one standby per chat.

    Args:
        queue: The per-chat queue that takes over claimed containers.
        runner: Container-execution callable.
        data_dir: Root data directory holding ``ipc/``.
        max_concurrent: Global ceiling shared with the queue.
        assistant_name: Assistant name passed to standby agents.
        respawn_delay_s: Settle delay before respawning after an exit.
        model: Optional model override passed to standby agents.
    """

    def __init__(
        self,
        queue: GroupQueue,
        runner: AgentRunner,
        data_dir: str | Path = "data",
        max_concurrent: int = 5,
        assistant_name: str | None = None,
        respawn_delay_s: float = 2.0,
        model: str | None = None,
    ) -> None:
        self._queue = queue
        self._runner = runner
        self._data_dir = Path(data_dir)
        self._max_concurrent = max_concurrent
        self._assistant_name = assistant_name
        self._respawn_delay_s = respawn_delay_s
        self._model = model
        self._entries: dict[str, WarmEntry] = {}
        self._staged_evictions: list[tuple[str, WarmEntry]] = []
        self._sessions: dict[str, str] = {}
        self._shutting_down = False
        self._background: set[asyncio.Task[None]] = set()
        self._respawns: set[asyncio.Task[None]] = set()
        queue.set_standby_count_fn(lambda: self.warm_count)
        queue.set_has_standby_fn(self.has_entry)

    # --- Queries ---

    @property
    def warm_count(self) -> int:
        """Number of unclaimed entries (booting or standby)."""
        self._commit_evictions()
        return len(self._entries)

    def is_booting(self, chat_jid: str) -> bool:
        """True between prewarm() and the container process being assigned."""
        self._commit_evictions()
        entry = self._entries.get(chat_jid)
        return entry is not None and entry.process is None and not entry.exited

    def has_entry(self, chat_jid: str) -> bool:
        """Whether a booting or standby container exists for the chat."""
        self._commit_evictions()
        return chat_jid in self._entries

    # --- Sessions ---

    def update_session(self, group_folder: str, session_id: str) -> None:
        """Record the latest session so the next standby resumes it."""
        self._sessions[group_folder] = session_id

    def seed_sessions(self, sessions: dict[str, str]) -> None:
        """Load persisted sessions at startup."""
        self._sessions.update(sessions)

    # --- Lifecycle ---

    def prewarm(
        self,
        chat_jid: str,
        group: RegisteredGroup,
        session_id: str | None = None,
    ) -> bool:
        """Start a standby container for a chat.

        No-op when an entry already exists, the chat's lane is active, or
        active plus standby containers have reached the ceiling.

        Args:
            chat_jid: The chat JID.
            group: The chat's registered group.
            session_id: Session to resume; defaults to the last recorded one.

        Returns:
            True if a standby spawn was started.
        """
        self._commit_evictions()
        if self._shutting_down:
            return False
        if chat_jid in self._entries:
            logger.debug("Warm container already exists for %s, skipping", chat_jid)
            return False
        if self._queue.is_active(chat_jid):
            logger.debug("Lane active for %s, skipping prewarm", chat_jid)
            return False
        if self._queue.get_active_count() + len(self._entries) >= self._max_concurrent:
            logger.debug("At concurrency limit, skipping prewarm for %s", chat_jid)
            return False

        # A close sentinel left for a previous container would stop the new one at boot.
        input_dir = ipc_group_dir(self._data_dir, group.folder) / "input"
        if consume_close_sentinel(input_dir):
            logger.debug("Removed stale close sentinel for %s", group.folder)

        entry = WarmEntry(group=group)
        self._entries[chat_jid] = entry
        container_input = ContainerInput(
            prompt=STANDBY_PROMPT,
            session_id=session_id or self._sessions.get(group.folder),
            group_folder=group.folder,
            chat_jid=chat_jid,
            is_main=group.folder == MAIN_GROUP_FOLDER,
            is_scheduled_task=True,
            assistant_name=self._assistant_name,
            model=self._model,
        )
        logger.info("Prewarming container for %s (%s)", chat_jid, group.name)
        self._spawn(self._run_standby(chat_jid, entry, container_input))
        return True

    def claim(self, chat_jid: str, text: str, on_output: OnOutput) -> bool:
        """Hand the chat's standby container over for a real message.

        Exactly one caller can succeed per standby.

        Args:
            chat_jid: The chat JID.
            text: Formatted message payload for the agent.
            on_output: Handler for every frame the container produces from now on.

        Returns:
            False if no standby is ready (none, still booting, or exited).
        """
        self._commit_evictions()
        entry = self._entries.get(chat_jid)
        if entry is None or entry.claimed:
            return False
        process = entry.process
        if process is None or entry.exited or process.returncode is not None:
            logger.debug("Warm container for %s not ready or already exited", chat_jid)
            return False

        folder = entry.group.folder
        entry.on_output = on_output
        entry.claimed = True
        del self._entries[chat_jid]
        self._queue.register_process(chat_jid, process, entry.container_name or "", folder)
        self._queue.mark_active(chat_jid, folder)

        if not self._queue.send_message(chat_jid, text):
            # The claimed container never saw the message; wind it down so the
            # lane frees and the pending check cold-starts it.
            logger.error("Failed to write claimed message for %s, closing container", chat_jid)
            self._queue.close_stdin(chat_jid)
            return False

        logger.info("Warm container claimed for %s (%s)", chat_jid, entry.group.name)
        return True

    def schedule_respawn(self, chat_jid: str, group: RegisteredGroup) -> None:
        """Prewarm the chat again after the settle delay."""
        if self._shutting_down:
            return
        task = self._spawn(self._respawn_after(chat_jid, group))
        self._respawns.add(task)
        task.add_done_callback(self._respawns.discard)

    def shutdown(self) -> None:
        """Stop respawning and ask every unclaimed standby to exit."""
        self._shutting_down = True
        self._commit_evictions()
        for entry in self._entries.values():
            if entry.process is None or entry.exited:
                continue
            input_dir = ipc_group_dir(self._data_dir, entry.group.folder) / "input"
            try:
                write_close_sentinel(input_dir)
            except OSError as exc:
                logger.warning("Failed to close standby for %s: %s", entry.group.folder, exc)
        for task in list(self._respawns):
            task.cancel()
        logger.info("WarmPool shut down (%d standby)", len(self._entries))

    # --- Internals ---

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _run_standby(
        self,
        chat_jid: str,
        entry: WarmEntry,
        container_input: ContainerInput,
    ) -> None:
        folder = entry.group.folder

        def on_spawned(process: asyncio.subprocess.Process, container_name: str) -> None:
            entry.process = process
            entry.container_name = container_name
            logger.debug("Standby container %s up for %s", container_name, chat_jid)

        error_delivered = False

        async def on_output(output: ContainerOutput) -> None:
            nonlocal error_delivered
            if output.new_session_id:
                self._sessions[folder] = output.new_session_id
            handler = entry.on_output
            if handler is None:
                logger.debug("Discarding standby output for %s", chat_jid)
                return
            if output.status == "error":
                error_delivered = True
            await handler(output)

        try:
            final = await self._runner(entry.group, container_input, on_spawned, on_output)
        except Exception as exc:
            logger.error("Standby container for %s failed", chat_jid, exc_info=True)
            final = ContainerOutput(status="error", error=str(exc) or type(exc).__name__)

        # A claimed container that died without reporting its error still owes
        # the handler one, or the claimed messages are never retried.
        if entry.claimed and final.status == "error" and not error_delivered:
            await self._report_crash(chat_jid, entry, final)
        self._on_container_exit(chat_jid, entry)

    async def _report_crash(
        self, chat_jid: str, entry: WarmEntry, final: ContainerOutput
    ) -> None:
        handler = entry.on_output
        if handler is None:
            return
        logger.warning(
            "Claimed container for %s exited with error: %s", chat_jid, final.error
        )
        try:
            await handler(
                ContainerOutput(
                    status="error",
                    error=final.error or "Container exited without reporting a result",
                )
            )
        except Exception:
            logger.error("Output handler failed for %s", chat_jid, exc_info=True)

    def _on_container_exit(self, chat_jid: str, entry: WarmEntry) -> None:
        entry.exited = True
        if entry.claimed:
            self._queue.mark_inactive(chat_jid)
        else:
            self._staged_evictions.append((chat_jid, entry))
            self._queue.drain_waiting()
        self.schedule_respawn(chat_jid, entry.group)

    def _commit_evictions(self) -> None:
        if not self._staged_evictions:
            return
        staged, self._staged_evictions = self._staged_evictions, []
        for chat_jid, entry in staged:
            # Only evict the entry that exited, never a newer one for the same chat.
            if self._entries.get(chat_jid) is entry:
                del self._entries[chat_jid]
                logger.debug("Evicted exited standby for %s", chat_jid)

    async def _respawn_after(self, chat_jid: str, group: RegisteredGroup) -> None:
        await asyncio.sleep(self._respawn_delay_s)
        if not self._shutting_down:
            self.prewarm(chat_jid, group)
