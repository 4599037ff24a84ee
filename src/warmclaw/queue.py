"""Per-chat serialization and global admission control for agent containers.

Each chat (lane) has at most one active container. New input for a busy
lane is either piped into the running container over IPC or remembered as
pending and started when the lane frees. Standby containers held by the
warm pool count against the same global ceiling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from warmclaw.ipc import ipc_group_dir, write_close_sentinel, write_envelope

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
BASE_RETRY_S = 5.0

# Stops a container through its runtime: (container_name, process).
StopContainerFn = Callable[[str, asyncio.subprocess.Process], Awaitable[None]]


@dataclass
class GroupState:
    """Runtime state for a single chat's lane.

    Attributes:
        active: Whether a container currently owns the lane.
        process: Handle of the active container process, once spawned.
        container_name: Name of the active container, or None.
        group_folder: Filesystem folder of the active group, or None.
        idle_task: Pending idle-timeout task, or None.
        pending_messages: Whether a cold start was requested while busy or saturated.
        retry_count: Number of consecutive failures for backoff calculation.
    """

    active: bool = False
    process: asyncio.subprocess.Process | None = None
    container_name: str | None = None
    group_folder: str | None = None
    idle_task: asyncio.Task[None] | None = None
    pending_messages: bool = False
    retry_count: int = 0


class GroupQueue:
    """Per-chat concurrency queue for agent containers.

    Args:
        max_concurrent: Ceiling on active plus standby containers.
        data_dir: Path to the data directory holding ``ipc/``.
        idle_timeout_s: Seconds after the last output before an active
            container is asked to wind down. Zero disables the timer.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        data_dir: str | Path = "data",
        idle_timeout_s: float = 1800.0,
    ) -> None:
        self._max_concurrent = max(1, max_concurrent)
        self._data_dir = Path(data_dir)
        self._idle_timeout_s = idle_timeout_s
        self._groups: dict[str, GroupState] = {}
        self._active_count = 0
        self._shutting_down = False
        self._process_messages_fn: Callable[[str], Coroutine[Any, Any, bool]] | None = None
        self._standby_count_fn: Callable[[], int] = lambda: 0
        self._has_standby_fn: Callable[[str], bool] = lambda jid: False
        self._handoff_fn: Callable[[str], None] | None = None
        self._stop_container_fn: StopContainerFn | None = None
        self._background: set[asyncio.Task[None]] = set()

    def _get_group(self, group_jid: str) -> GroupState:
        if group_jid not in self._groups:
            self._groups[group_jid] = GroupState()
        return self._groups[group_jid]

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _at_capacity(self) -> bool:
        return self._active_count + self._standby_count_fn() >= self._max_concurrent

    # --- Hooks ---

    def set_process_messages_fn(self, fn: Callable[[str], Coroutine[Any, Any, bool]]) -> None:
        """Register the callback that runs a cold-start turn for a chat.

        Args:
            fn: Async function taking the chat JID. Returns True on success,
                False to trigger a retry.
        """
        self._process_messages_fn = fn

    def set_standby_count_fn(self, fn: Callable[[], int]) -> None:
        """Register the callback returning the number of warm standby containers."""
        self._standby_count_fn = fn

    def set_has_standby_fn(self, fn: Callable[[str], bool]) -> None:
        """Register the callback telling whether a chat has a standby container."""
        self._has_standby_fn = fn

    def set_handoff_fn(self, fn: Callable[[str], None]) -> None:
        """Register the callback that routes a chat back to the delivery loop.

        Used instead of a cold start when the chat already has a standby
        container, so the standby is claimed rather than run alongside a
        second container for the same chat.
        """
        self._handoff_fn = fn

    def set_stop_container_fn(self, fn: StopContainerFn) -> None:
        """Register the callback used to stop containers that outlive shutdown."""
        self._stop_container_fn = fn

    # --- Queries ---

    def get_active_count(self) -> int:
        """Number of active (non-standby) containers."""
        return self._active_count

    def is_active(self, group_jid: str) -> bool:
        """Whether a container currently owns the chat's lane."""
        state = self._groups.get(group_jid)
        return state is not None and state.active

    @property
    def shutting_down(self) -> bool:
        """True once shutdown() has started."""
        return self._shutting_down

    # --- Admission ---

    def enqueue_message_check(self, group_jid: str) -> None:
        """Request a cold-start turn for a chat.

        If the lane is active the request is remembered and runs after the
        container exits. If the chat has a standby container the request is
        handed back to the delivery loop, which claims it. If the ceiling is
        reached the request waits for a free slot. Requests are never dropped.

        Args:
            group_jid: The JID of the chat with new messages.
        """
        if self._shutting_down:
            return
        state = self._get_group(group_jid)
        if state.active:
            state.pending_messages = True
            logger.debug("Container active for %s, message check queued", group_jid)
            return
        if self._hand_off(group_jid, state):
            return
        if self._at_capacity():
            state.pending_messages = True
            logger.debug(
                "At concurrency limit (active=%d, standby=%d), message check deferred for %s",
                self._active_count,
                self._standby_count_fn(),
                group_jid,
            )
            return
        self._start(group_jid, reason="messages")

    def drain_waiting(self) -> None:
        """Start deferred work for lanes that were waiting for a slot."""
        if self._shutting_down:
            return
        for jid, state in list(self._groups.items()):
            if self._at_capacity():
                break
            if not state.active and state.pending_messages:
                self._start_or_hand_off(jid, reason="drain")

    # --- Lane bookkeeping ---

    def register_process(
        self,
        group_jid: str,
        process: asyncio.subprocess.Process,
        container_name: str,
        group_folder: str | None = None,
    ) -> bool:
        """Record the process that owns a chat's lane.

        Args:
            group_jid: The chat JID.
            process: The container process handle.
            container_name: The container name.
            group_folder: The group filesystem folder name.

        Returns:
            False if a different live process already owns the lane.
        """
        state = self._get_group(group_jid)
        current = state.process
        if current is not None and current is not process and current.returncode is None:
            logger.warning(
                "Refusing second container %s for %s (active: %s)",
                container_name,
                group_jid,
                state.container_name,
            )
            return False
        state.process = process
        state.container_name = container_name
        if group_folder:
            state.group_folder = group_folder
        return True

    def mark_active(self, group_jid: str, group_folder: str) -> None:
        """Claim the lane for a container started outside the queue."""
        state = self._get_group(group_jid)
        state.group_folder = group_folder
        if state.active:
            return
        state.active = True
        self._active_count += 1

    def mark_inactive(self, group_jid: str) -> None:
        """Free the lane after an externally started container exits."""
        state = self._get_group(group_jid)
        if not state.active:
            return
        self._release(state)
        self._drain_group(group_jid)

    # --- IPC ---

    def send_message(self, group_jid: str, text: str) -> bool:
        """Pipe a follow-up message into the chat's active container.

        Args:
            group_jid: The chat JID.
            text: Formatted message payload.

        Returns:
            True if the message was written, False if no container can take it.
        """
        state = self._groups.get(group_jid)
        if state is None or not state.active or not state.group_folder:
            return False
        input_dir = ipc_group_dir(self._data_dir, state.group_folder) / "input"
        try:
            write_envelope(input_dir, {"type": "message", "text": text})
        except OSError as exc:
            logger.warning("Failed to pipe message to %s: %s", group_jid, exc)
            return False
        return True

    def close_stdin(self, group_jid: str) -> None:
        """Ask the chat's active container to wind down via the _close sentinel."""
        state = self._groups.get(group_jid)
        if state is None or not state.active or not state.group_folder:
            return
        input_dir = ipc_group_dir(self._data_dir, state.group_folder) / "input"
        try:
            write_close_sentinel(input_dir)
        except OSError as exc:
            logger.warning("Failed to write close sentinel for %s: %s", group_jid, exc)

    # --- Idle timer ---

    def reset_idle_timer(self, group_jid: str) -> None:
        """(Re)arm the lane's idle timer. On expiry the container is closed."""
        state = self._get_group(group_jid)
        self._cancel_idle(state)
        if self._idle_timeout_s <= 0 or not state.active:
            return
        state.idle_task = asyncio.create_task(self._idle_close(group_jid))

    def clear_idle_timer(self, group_jid: str) -> None:
        """Cancel the lane's idle timer, if armed."""
        state = self._groups.get(group_jid)
        if state is not None:
            self._cancel_idle(state)

    async def _idle_close(self, group_jid: str) -> None:
        await asyncio.sleep(self._idle_timeout_s)
        state = self._get_group(group_jid)
        state.idle_task = None
        logger.debug("Idle timeout for %s, closing container stdin", group_jid)
        self.close_stdin(group_jid)

    @staticmethod
    def _cancel_idle(state: GroupState) -> None:
        if state.idle_task is not None:
            state.idle_task.cancel()
            state.idle_task = None

    # --- Shutdown ---

    async def shutdown(self, timeout_ms: int = 10000) -> None:
        """Wind down every active container, then stop stragglers through the runtime.

        Args:
            timeout_ms: How long to wait for cooperative exits.
        """
        self._shutting_down = True
        active = [(jid, state) for jid, state in self._groups.items() if state.active]
        for jid, state in active:
            self._cancel_idle(state)
            self.close_stdin(jid)

        live = [
            (state.container_name, state.process)
            for _, state in active
            if state.process is not None and state.process.returncode is None
        ]
        logger.info(
            "GroupQueue shutting down (active=%d, live processes=%d)",
            self._active_count,
            len(live),
        )
        if not live:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*(p.wait() for _, p in live)),
                timeout=timeout_ms / 1000.0,
            )
        except TimeoutError:
            logger.warning("Grace period of %dms elapsed, stopping remaining containers", timeout_ms)
        stragglers = [(name, p) for name, p in live if p.returncode is None]
        if stragglers:
            await asyncio.gather(*(self._force_stop(name, p) for name, p in stragglers))

    async def _force_stop(
        self, container_name: str | None, process: asyncio.subprocess.Process
    ) -> None:
        """Stop a container through its runtime, killing the CLI process as a fallback."""
        if self._stop_container_fn is not None and container_name:
            try:
                await self._stop_container_fn(container_name, process)
            except Exception:
                logger.warning("Failed to stop container %s", container_name, exc_info=True)
            else:
                return
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                logger.debug("Process %s already gone", process.pid)

    # --- Private helpers ---

    def _hand_off(self, group_jid: str, state: GroupState) -> bool:
        """Route the chat to its standby container instead of a cold start."""
        if self._handoff_fn is None or not self._has_standby_fn(group_jid):
            return False
        state.pending_messages = False
        logger.debug("Standby available for %s, handing off instead of cold start", group_jid)
        self._handoff_fn(group_jid)
        return True

    def _start_or_hand_off(self, group_jid: str, reason: str) -> None:
        if not self._hand_off(group_jid, self._get_group(group_jid)):
            self._start(group_jid, reason)

    def _start(self, group_jid: str, reason: str) -> None:
        # Claim the slot eagerly so subsequent synchronous calls see an updated count.
        state = self._get_group(group_jid)
        state.active = True
        state.pending_messages = False
        self._active_count += 1
        self._spawn(self._run_for_group(group_jid, reason))

    def _release(self, state: GroupState) -> None:
        self._cancel_idle(state)
        state.active = False
        state.process = None
        state.container_name = None
        state.group_folder = None
        self._active_count -= 1

    async def _run_for_group(self, group_jid: str, reason: str) -> None:
        """Run one cold-start turn inside an already claimed slot."""
        state = self._get_group(group_jid)
        logger.debug(
            "Starting container for %s (reason=%s, active=%d)",
            group_jid,
            reason,
            self._active_count,
        )
        try:
            success = True
            if self._process_messages_fn:
                success = await self._process_messages_fn(group_jid)
            if success:
                state.retry_count = 0
            else:
                self._schedule_retry(group_jid, state)
        except Exception:
            logger.error("Error processing messages for %s", group_jid, exc_info=True)
            self._schedule_retry(group_jid, state)
        finally:
            self._release(state)
            self._drain_group(group_jid)

    def _schedule_retry(self, group_jid: str, state: GroupState) -> None:
        state.retry_count += 1
        if state.retry_count > MAX_RETRIES:
            logger.error(
                "Max retries exceeded for %s, dropping (will retry on next message)",
                group_jid,
            )
            state.retry_count = 0
            return
        delay_s = BASE_RETRY_S * (2 ** (state.retry_count - 1))
        logger.info(
            "Scheduling retry for %s (attempt=%d, delay=%.1fs)",
            group_jid,
            state.retry_count,
            delay_s,
        )
        self._spawn(self._retry_after(group_jid, delay_s))

    async def _retry_after(self, group_jid: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if not self._shutting_down:
            self.enqueue_message_check(group_jid)

    def _drain_group(self, group_jid: str) -> None:
        """After a lane frees, run its pending work or hand the slot to another lane."""
        if self._shutting_down:
            return
        state = self._get_group(group_jid)
        if state.pending_messages and not state.active and not self._at_capacity():
            self._start_or_hand_off(group_jid, reason="drain")
            return
        self.drain_waiting()
