"""Dual-cursor message delivery loop.

Each tick fetches messages newer than the global-seen cursor, groups them
by chat and, for every chat that should respond, tries in order:

1. pipe into the chat's active container (``GroupQueue.send_message``);
2. if the lane is active but not yet pipe-able, remember a pending check;
3. claim the chat's warm standby (``WarmPool.claim``);
4. if the standby is still booting, defer to the next tick;
5. request a cold start (``GroupQueue.enqueue_message_check``).

The agent-seen cursor advances only when messages actually reach an agent.
On an agent error it is rolled back if nothing reached the user yet, and
kept if output was already delivered.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from collections.abc import Callable, Coroutine
from typing import Any

from warmclaw.channels.base import Capability, Channel
from warmclaw.container import OnOutput
from warmclaw.db.operations import get_messages_since, get_new_messages
from warmclaw.queue import GroupQueue
from warmclaw.router import (
    find_channel,
    format_messages,
    format_outbound,
    has_trigger,
    needs_trigger,
    route_outbound,
)
from warmclaw.state import OrchestratorState
from warmclaw.streams import OutputStream
from warmclaw.types import ContainerOutput, NewMessage, RegisteredGroup
from warmclaw.warm_pool import WarmPool

logger = logging.getLogger(__name__)

# (group, prompt, chat_jid, on_output) -> final status ('success' or 'error')
RunAgentFn = Callable[[RegisteredGroup, str, str, OnOutput], Coroutine[Any, Any, str]]


class Dispatch(enum.Enum):
    """Outcome of routing one chat's batch during a tick."""

    SKIPPED = "skipped"
    PIPED = "piped"
    PENDING = "pending"
    CLAIMED = "claimed"
    DEFERRED = "deferred"
    ENQUEUED = "enqueued"


class DeliveryLoop:
    """Polls the message store and routes new messages to agents.

    Args:
        state: Shared cursors, sessions and registered groups.
        queue: Per-chat queue.
        warm_pool: Standby pool, or None when disabled.
        channels: Callable returning the connected channels.
        run_agent: Runs a cold-start container turn.
        assistant_name: Assistant name, used for bot-message filtering.
        trigger_pattern: Compiled trigger regex.
        poll_interval_s: Seconds between ticks.
    """

    def __init__(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        warm_pool: WarmPool | None,
        channels: Callable[[], list[Channel]],
        run_agent: RunAgentFn,
        assistant_name: str,
        trigger_pattern: re.Pattern[str],
        poll_interval_s: float = 2.0,
    ) -> None:
        self._state = state
        self._queue = queue
        self._warm_pool = warm_pool
        self._channels = channels
        self._run_agent = run_agent
        self._assistant_name = assistant_name
        self._trigger_pattern = trigger_pattern
        self._poll_interval_s = poll_interval_s
        self._deferred: set[str] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._running = False

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick until stop() is called. Tick errors are logged, never fatal."""
        self._running = True
        logger.info("WarmClaw running (trigger: @%s)", self._assistant_name)
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.error("Error in message loop", exc_info=True)
            await asyncio.sleep(self._poll_interval_s)

    def stop(self) -> None:
        """Stop after the current tick."""
        self._running = False

    def redispatch(self, chat_jid: str) -> None:
        """Run the chat's pending messages through the dispatch ladder next tick.

        Installed as the queue's hand-off hook: a chat with a standby
        container is claimed on the next tick instead of cold-started.
        """
        self._deferred.add(chat_jid)

    async def poll_once(self) -> dict[str, Dispatch]:
        """Run one tick.

        Returns:
            Dispatch outcome per chat JID handled this tick.
        """
        jids = list(self._state.registered_groups)
        messages, new_timestamp = get_new_messages(
            jids, self._state.last_timestamp, self._assistant_name
        )
        if messages:
            self._state.last_timestamp = new_timestamp
            self._state.save()

        by_chat: dict[str, list[NewMessage]] = {}
        for msg in messages:
            by_chat.setdefault(msg.chat_jid, []).append(msg)

        # Chats deferred last tick are retried even without new messages.
        deferred, self._deferred = self._deferred, set()
        retry = deferred - by_chat.keys()

        results: dict[str, Dispatch] = {}
        for chat_jid in [*by_chat, *sorted(retry)]:
            try:
                results[chat_jid] = self.dispatch_chat(
                    chat_jid, by_chat.get(chat_jid, []), check_trigger=chat_jid not in deferred
                )
            except Exception:
                logger.error("Error dispatching messages for %s", chat_jid, exc_info=True)
        return results

    def dispatch_chat(
        self,
        chat_jid: str,
        new_messages: list[NewMessage],
        check_trigger: bool = True,
    ) -> Dispatch:
        """Route one chat's batch to an agent.

        Args:
            chat_jid: The chat JID.
            new_messages: Messages that arrived this tick (used for the trigger check).
            check_trigger: False when re-dispatching a deferred chat.

        Returns:
            What happened to the batch.
        """
        group = self._state.registered_groups.get(chat_jid)
        if group is None:
            return Dispatch.SKIPPED
        if (
            check_trigger
            and needs_trigger(group)
            and not has_trigger(new_messages, self._trigger_pattern)
        ):
            # Stored in the DB; delivered with the next triggering message.
            return Dispatch.SKIPPED

        pending = self._pending_messages(chat_jid)
        if not pending:
            return Dispatch.SKIPPED
        payload = format_messages(pending)
        last_ts = pending[-1].timestamp

        if self._queue.send_message(chat_jid, payload):
            self._state.advance_agent_cursor(chat_jid, last_ts)
            self._typing_soon(chat_jid)
            logger.debug(
                "Piped %d message(s) into active container for %s", len(pending), chat_jid
            )
            return Dispatch.PIPED

        if self._queue.is_active(chat_jid):
            # Cold start still booting: retry the pipe next tick, and fall back to
            # a pending check once the lane frees.
            self._queue.enqueue_message_check(chat_jid)
            self._deferred.add(chat_jid)
            return Dispatch.PENDING

        if self._warm_pool is not None:
            handler = self.make_warm_output_handler(
                chat_jid, group, self._state.agent_cursor(chat_jid)
            )
            if self._warm_pool.claim(chat_jid, payload, handler):
                self._state.advance_agent_cursor(chat_jid, last_ts)
                self._typing_soon(chat_jid)
                logger.info(
                    "Warm container claimed for %s (%d message(s))", chat_jid, len(pending)
                )
                return Dispatch.CLAIMED
            if self._warm_pool.is_booting(chat_jid):
                logger.debug("Warm container booting for %s, deferring", chat_jid)
                self._deferred.add(chat_jid)
                return Dispatch.DEFERRED

        self._queue.enqueue_message_check(chat_jid)
        return Dispatch.ENQUEUED

    def recover_pending_messages(self) -> int:
        """Queue a cold start for every chat with messages past its agent cursor.

        Returns:
            Number of chats queued.
        """
        recovered = 0
        for chat_jid in list(self._state.registered_groups):
            missed = get_messages_since(
                chat_jid, self._state.agent_cursor(chat_jid), self._assistant_name
            )
            if missed:
                logger.info("Recovering %d pending message(s) for %s", len(missed), chat_jid)
                self._queue.enqueue_message_check(chat_jid)
                recovered += 1
        return recovered

    # ------------------------------------------------------------------
    # Cold-start turn (installed as the queue's process function)
    # ------------------------------------------------------------------

    async def process_group_messages(self, chat_jid: str) -> bool:
        """Run one cold-start agent turn for a chat.

        Args:
            chat_jid: JID of the chat to process.

        Returns:
            True on success or when there is nothing to do; False to make
            the queue retry with backoff.
        """
        group = self._state.registered_groups.get(chat_jid)
        if group is None:
            return True
        missed = self._pending_messages(chat_jid)
        if not missed:
            return True
        if needs_trigger(group) and not has_trigger(missed, self._trigger_pattern):
            return True

        prompt = format_messages(missed)
        prev_cursor = self._state.advance_agent_cursor(chat_jid, missed[-1].timestamp)
        await self._set_typing(chat_jid, True)

        stream = OutputStream()
        run_task = asyncio.create_task(self._run_agent(group, prompt, chat_jid, stream.put))
        run_task.add_done_callback(lambda _: stream.close())

        had_error = False
        output_sent = False
        try:
            async for output in stream:
                if await self._handle_output(chat_jid, group, output):
                    output_sent = True
                if output.status == "error":
                    had_error = True
        finally:
            status = await run_task

        await self._set_typing(chat_jid, False)
        if self._warm_pool is not None:
            self._warm_pool.schedule_respawn(chat_jid, group)
        return self._finalize_group_run(chat_jid, status, had_error, output_sent, prev_cursor)

    def _finalize_group_run(
        self,
        chat_jid: str,
        status: str,
        had_error: bool,
        output_sent: bool,
        prev_cursor: str,
    ) -> bool:
        """Apply the failure policy after a cold-start run.

        Returns:
            True to signal success; False to request retry with backoff.
        """
        if status == "error" or had_error:
            if output_sent:
                logger.warning("Agent error after output sent for %s; keeping cursor", chat_jid)
                return True
            self._state.rollback_agent_cursor(chat_jid, prev_cursor)
            logger.warning("Agent error for %s; rolled back message cursor for retry", chat_jid)
            return False
        return True

    # ------------------------------------------------------------------
    # Warm hand-off
    # ------------------------------------------------------------------

    def make_warm_output_handler(
        self,
        chat_jid: str,
        group: RegisteredGroup,
        previous_cursor: str,
    ) -> OnOutput:
        """Build the output handler installed into a claimed standby container.

        Args:
            chat_jid: The chat JID.
            group: The chat's registered group.
            previous_cursor: Agent cursor before the claim, restored on a
                failure that produced no user-visible output.

        Returns:
            Async callable receiving every ContainerOutput frame.
        """
        output_sent = False

        async def handler(output: ContainerOutput) -> None:
            nonlocal output_sent
            if await self._handle_output(chat_jid, group, output):
                output_sent = True

            if output.status == "success" and output.result is None:
                await self._set_typing(chat_jid, False)
            elif output.status == "error":
                await self._set_typing(chat_jid, False)
                if output_sent:
                    logger.warning(
                        "Warm container error after output was sent for %s; keeping cursor",
                        chat_jid,
                    )
                    return
                self._state.rollback_agent_cursor(chat_jid, previous_cursor)
                logger.warning(
                    "Warm container error for %s; rolled back message cursor for retry", chat_jid
                )
                # Retry as a cold start once this container has wound down.
                self._queue.enqueue_message_check(chat_jid)
                self._queue.close_stdin(chat_jid)

        return handler

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pending_messages(self, chat_jid: str) -> list[NewMessage]:
        """Messages past the agent cursor that the poll tick has already seen."""
        since = self._state.agent_cursor(chat_jid)
        return [
            m
            for m in get_messages_since(chat_jid, since, self._assistant_name)
            if m.timestamp <= self._state.last_timestamp
        ]

    async def _handle_output(
        self,
        chat_jid: str,
        group: RegisteredGroup,
        output: ContainerOutput,
    ) -> bool:
        """Record sessions and deliver a result frame.

        Returns:
            True if text reached the user.
        """
        if output.new_session_id:
            self._state.record_session(group.folder, output.new_session_id)
            if self._warm_pool is not None:
                self._warm_pool.update_session(group.folder, output.new_session_id)

        if not output.result:
            return False
        logger.info("Agent output for %s: %s", group.name, output.result[:200])
        self._queue.reset_idle_timer(chat_jid)
        text = format_outbound(output.result)
        if not text:
            return False
        try:
            await route_outbound(self._channels(), chat_jid, text, self._assistant_name)
        except Exception:
            logger.error("Failed to deliver agent output to %s", chat_jid, exc_info=True)
            return False
        return True

    async def _set_typing(self, chat_jid: str, is_typing: bool) -> None:
        channel = find_channel(self._channels(), chat_jid)
        if channel is None or Capability.TYPING not in channel.capabilities:
            return
        try:
            await channel.set_typing(chat_jid, is_typing)
        except Exception:
            logger.debug("Typing indicator failed for %s", chat_jid, exc_info=True)

    def _typing_soon(self, chat_jid: str) -> None:
        task = asyncio.create_task(self._set_typing(chat_jid, True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
