"""Tests for warmclaw.delivery.DeliveryLoop.

Uses an in-memory SQLite store, a real GroupQueue over a tmp data dir,
and a recording channel. The warm pool is mocked where its own behaviour
is not under test.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import ClassVar
from unittest.mock import AsyncMock, MagicMock

import pytest

from warmclaw.channels.base import Capability, Channel
from warmclaw.db import operations as db
from warmclaw.delivery import DeliveryLoop, Dispatch
from warmclaw.ipc import CLOSE_SENTINEL
from warmclaw.queue import GroupQueue
from warmclaw.state import OrchestratorState
from warmclaw.types import ContainerOutput, NewMessage, RegisteredGroup
from warmclaw.warm_pool import WarmPool

CHAT = "alpha@g.us"
T1 = "2024-01-01T00:00:01Z"
T2 = "2024-01-01T00:00:02Z"
T3 = "2024-01-01T00:00:03Z"
TRIGGER = re.compile(r"^@Andy\b", re.IGNORECASE)


class RecordingChannel(Channel):
    """Channel that records sends and typing changes."""

    capabilities: ClassVar[frozenset[Capability]] = frozenset({Capability.TYPING})

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []

    @property
    def name(self) -> str:
        return "recording"

    async def connect(self) -> None:
        pass

    async def send_message(self, jid: str, text: str) -> None:
        self.sent.append((jid, text))

    def is_connected(self) -> bool:
        return True

    def owns_jid(self, jid: str) -> bool:
        return True

    async def disconnect(self) -> None:
        pass

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        self.typing.append((jid, is_typing))


def _make_group(folder: str = "alpha", requires_trigger: bool | None = None) -> RegisteredGroup:
    return RegisteredGroup(
        name=folder.title(),
        folder=folder,
        trigger="@Andy",
        added_at="2024-01-01T00:00:00Z",
        requires_trigger=requires_trigger,
    )


def _store(msg_id: str, content: str, timestamp: str, chat_jid: str = CHAT) -> None:
    db.store_message(
        NewMessage(
            id=msg_id,
            chat_jid=chat_jid,
            sender="user-1",
            sender_name="Alice",
            content=content,
            timestamp=timestamp,
        )
    )


@pytest.fixture(autouse=True)
def fresh_db():
    """Give every test an empty in-memory store."""
    db.init_database(":memory:")
    yield
    db._engine = None


@pytest.fixture
def state() -> OrchestratorState:
    """State with one trigger-gated registered chat."""
    return OrchestratorState(registered_groups={CHAT: _make_group()})


@pytest.fixture
def queue(tmp_path: Path) -> GroupQueue:
    """Real per-chat queue over a tmp data dir."""
    return GroupQueue(max_concurrent=3, data_dir=tmp_path, idle_timeout_s=0)


@pytest.fixture
def channel() -> RecordingChannel:
    """Recording channel owning every chat."""
    return RecordingChannel()


def _make_loop(
    state: OrchestratorState,
    queue: GroupQueue,
    channel: Channel,
    warm_pool: object | None = None,
    run_agent: object | None = None,
) -> DeliveryLoop:
    return DeliveryLoop(
        state=state,
        queue=queue,
        warm_pool=warm_pool,  # type: ignore[arg-type]
        channels=lambda: [channel],
        run_agent=run_agent or AsyncMock(return_value="success"),  # type: ignore[arg-type]
        assistant_name="Andy",
        trigger_pattern=TRIGGER,
        poll_interval_s=0.01,
    )


class TestPollOnce:
    """Tests for the per-tick fetch and cursor handling."""

    @pytest.mark.asyncio
    async def test_advances_and_persists_global_cursor(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """The global-seen cursor moves to the newest fetched message."""
        _store("m1", "@Andy hi", T1)
        _store("m2", "more", T2)
        loop = _make_loop(state, queue, channel)

        await loop.poll_once()
        assert state.last_timestamp == T2
        assert db.get_router_state("last_timestamp") == T2

    @pytest.mark.asyncio
    async def test_unregistered_chats_ignored(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Messages for chats that are not registered are never dispatched."""
        _store("m1", "@Andy hi", T1, chat_jid="stranger@g.us")
        loop = _make_loop(state, queue, channel)

        assert await loop.poll_once() == {}
        assert state.last_timestamp == ""

    @pytest.mark.asyncio
    async def test_untriggered_messages_accumulate_as_context(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Untriggered messages wait and are delivered with the next trigger."""
        run_agent = AsyncMock(return_value="success")
        loop = _make_loop(state, queue, channel, run_agent=run_agent)
        queue.set_process_messages_fn(loop.process_group_messages)

        _store("m1", "just chatting", T1)
        assert await loop.poll_once() == {CHAT: Dispatch.SKIPPED}
        assert state.agent_cursor(CHAT) == ""

        _store("m2", "@Andy what do you think?", T2)
        assert await loop.poll_once() == {CHAT: Dispatch.ENQUEUED}
        await asyncio.sleep(0.05)

        prompt = run_agent.await_args.args[1]
        assert "just chatting" in prompt
        assert "what do you think?" in prompt
        assert state.agent_cursor(CHAT) == T2

    @pytest.mark.asyncio
    async def test_main_group_needs_no_trigger(
        self, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """The main group routes every message."""
        state = OrchestratorState(registered_groups={CHAT: _make_group(folder="main")})
        _store("m1", "no mention here", T1)
        loop = _make_loop(state, queue, channel)
        assert await loop.poll_once() == {CHAT: Dispatch.ENQUEUED}

    @pytest.mark.asyncio
    async def test_tick_error_does_not_stop_other_chats(
        self, queue: GroupQueue, channel: RecordingChannel, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A failure dispatching one chat is logged and the tick continues."""
        state = OrchestratorState(
            registered_groups={
                "bad@g.us": _make_group(folder="bad", requires_trigger=False),
                CHAT: _make_group(requires_trigger=False),
            }
        )
        _store("m1", "x", T1, chat_jid="bad@g.us")
        _store("m2", "y", T2)
        loop = _make_loop(state, queue, channel)
        real = loop.dispatch_chat

        def flaky(chat_jid, msgs, check_trigger=True):
            if chat_jid == "bad@g.us":
                raise RuntimeError("boom")
            return real(chat_jid, msgs, check_trigger)

        monkeypatch.setattr(loop, "dispatch_chat", flaky)
        assert await loop.poll_once() == {CHAT: Dispatch.ENQUEUED}


class TestDispatchChat:
    """Tests for the pipe / pending / claim / defer / enqueue ladder."""

    @pytest.mark.asyncio
    async def test_pipes_into_active_container(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        channel: RecordingChannel,
        tmp_path: Path,
    ) -> None:
        """An active lane receives the batch over IPC and the cursor advances."""
        queue.mark_active(CHAT, "alpha")
        _store("m1", "@Andy follow up", T1)
        loop = _make_loop(state, queue, channel)

        assert await loop.poll_once() == {CHAT: Dispatch.PIPED}
        assert state.agent_cursor(CHAT) == T1

        files = list((tmp_path / "ipc" / "alpha" / "input").glob("*.json"))
        assert len(files) == 1
        assert "follow up" in json.loads(files[0].read_text())["text"]
        await asyncio.sleep(0.01)
        assert (CHAT, True) in channel.typing

    @pytest.mark.asyncio
    async def test_active_but_unpipeable_lane_is_pending(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        channel: RecordingChannel,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A lane that cannot take a pipe gets a pending check and a retry next tick."""
        queue.mark_active(CHAT, "alpha")
        monkeypatch.setattr(queue, "send_message", lambda jid, text: False)
        _store("m1", "@Andy hi", T1)
        loop = _make_loop(state, queue, channel)

        assert await loop.poll_once() == {CHAT: Dispatch.PENDING}
        assert queue._get_group(CHAT).pending_messages is True
        assert state.agent_cursor(CHAT) == ""
        # Re-dispatched without new messages.
        assert await loop.poll_once() == {CHAT: Dispatch.PENDING}

    @pytest.mark.asyncio
    async def test_claims_warm_container(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """With an idle lane the standby is claimed and the cursor advances."""
        pool = MagicMock()
        pool.claim.return_value = True
        _store("m1", "@Andy hi there", T1)
        loop = _make_loop(state, queue, channel, warm_pool=pool)

        assert await loop.poll_once() == {CHAT: Dispatch.CLAIMED}
        jid, payload, handler = pool.claim.call_args.args
        assert jid == CHAT
        assert "hi there" in payload
        assert callable(handler)
        assert state.agent_cursor(CHAT) == T1
        assert state.agent_cursor(CHAT) <= state.last_timestamp

    @pytest.mark.asyncio
    async def test_booting_standby_defers_then_claims(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """A booting standby defers the chat; the next tick claims it."""
        pool = MagicMock()
        pool.claim.side_effect = [False, True]
        pool.is_booting.return_value = True
        _store("m1", "@Andy hi", T1)
        loop = _make_loop(state, queue, channel, warm_pool=pool)

        assert await loop.poll_once() == {CHAT: Dispatch.DEFERRED}
        assert state.agent_cursor(CHAT) == ""
        assert queue.is_active(CHAT) is False

        assert await loop.poll_once() == {CHAT: Dispatch.CLAIMED}
        assert state.agent_cursor(CHAT) == T1

    @pytest.mark.asyncio
    async def test_no_standby_enqueues_cold_start(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Without a claimable or booting standby a cold start is requested."""
        pool = MagicMock()
        pool.claim.return_value = False
        pool.is_booting.return_value = False
        _store("m1", "@Andy hi", T1)
        loop = _make_loop(state, queue, channel, warm_pool=pool)

        assert await loop.poll_once() == {CHAT: Dispatch.ENQUEUED}
        assert queue.is_active(CHAT) is True

    def test_unregistered_chat_skipped(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """dispatch_chat ignores chats with no registration."""
        loop = _make_loop(state, queue, channel)
        assert loop.dispatch_chat("nobody@g.us", []) is Dispatch.SKIPPED


class TestPendingMessages:
    """Tests for the agent-seen window."""

    def test_excludes_messages_past_global_cursor(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Messages newer than the global-seen cursor are not handed out yet."""
        _store("m1", "old", T1)
        _store("m3", "new", T3)
        state.last_timestamp = T2
        loop = _make_loop(state, queue, channel)

        assert [m.id for m in loop._pending_messages(CHAT)] == ["m1"]

    def test_excludes_messages_before_agent_cursor(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Messages at or before the agent-seen cursor are not repeated."""
        _store("m1", "seen", T1)
        _store("m2", "unseen", T2)
        state.last_timestamp = T2
        state.last_agent_timestamp[CHAT] = T1
        loop = _make_loop(state, queue, channel)

        assert [m.id for m in loop._pending_messages(CHAT)] == ["m2"]


class TestRecoverPendingMessages:
    """Tests for startup recovery."""

    def test_enqueues_chats_with_missed_messages(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Chats with messages past their agent cursor get a cold-start check."""
        _store("m1", "@Andy are you there?", T1)
        state.last_agent_timestamp[CHAT] = ""
        queue.set_standby_count_fn(lambda: 3)
        loop = _make_loop(state, queue, channel)

        assert loop.recover_pending_messages() == 1
        assert queue._get_group(CHAT).pending_messages is True

    def test_nothing_to_recover(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Caught-up chats are left alone."""
        _store("m1", "@Andy hi", T1)
        state.last_agent_timestamp[CHAT] = T1
        loop = _make_loop(state, queue, channel)
        assert loop.recover_pending_messages() == 0


class TestProcessGroupMessages:
    """Tests for the cold-start turn and its cursor policy."""

    @pytest.mark.asyncio
    async def test_success_delivers_output(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Streamed result text reaches the channel with internal blocks removed."""

        async def run_agent(group, prompt, chat_jid, on_output):
            await on_output(
                ContainerOutput(
                    status="success",
                    result="<internal>thinking</internal>Hello Alice",
                    new_session_id="sess-1",
                )
            )
            return "success"

        _store("m1", "@Andy hi", T1)
        state.last_timestamp = T1
        loop = _make_loop(state, queue, channel, run_agent=run_agent)

        assert await loop.process_group_messages(CHAT) is True
        assert channel.sent == [(CHAT, "Hello Alice")]
        assert state.agent_cursor(CHAT) == T1
        assert state.sessions["alpha"] == "sess-1"
        assert db.get_session("alpha") == "sess-1"
        assert channel.typing[0] == (CHAT, True)
        assert channel.typing[-1] == (CHAT, False)

    @pytest.mark.asyncio
    async def test_bot_reply_not_redelivered(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """The stored bot reply is excluded from the next fetch."""

        async def run_agent(group, prompt, chat_jid, on_output):
            await on_output(ContainerOutput(status="success", result="Andy here"))
            return "success"

        _store("m1", "@Andy hi", T1)
        state.last_timestamp = T1
        loop = _make_loop(state, queue, channel, run_agent=run_agent)
        await loop.process_group_messages(CHAT)

        messages, _ = db.get_new_messages([CHAT], T1, "Andy")
        assert messages == []

    @pytest.mark.asyncio
    async def test_error_without_output_rolls_back(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """A failed run that sent nothing restores the cursor and asks for a retry."""

        async def run_agent(group, prompt, chat_jid, on_output):
            await on_output(ContainerOutput(status="error", error="boom"))
            return "error"

        _store("m1", "@Andy hi", T2)
        state.last_timestamp = T2
        state.last_agent_timestamp[CHAT] = T1
        loop = _make_loop(state, queue, channel, run_agent=run_agent)

        assert await loop.process_group_messages(CHAT) is False
        assert state.agent_cursor(CHAT) == T1
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_error_after_output_keeps_cursor(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Once the user has seen output, a later error does not cause a re-run."""

        async def run_agent(group, prompt, chat_jid, on_output):
            await on_output(ContainerOutput(status="success", result="partial answer"))
            await on_output(ContainerOutput(status="error", error="crashed"))
            return "error"

        _store("m1", "@Andy hi", T2)
        state.last_timestamp = T2
        state.last_agent_timestamp[CHAT] = T1
        loop = _make_loop(state, queue, channel, run_agent=run_agent)

        assert await loop.process_group_messages(CHAT) is True
        assert state.agent_cursor(CHAT) == T2
        assert channel.sent == [(CHAT, "partial answer")]

    @pytest.mark.asyncio
    async def test_untriggered_batch_is_noop(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """Without a trigger no container runs and the cursor stays put."""
        run_agent = AsyncMock(return_value="success")
        _store("m1", "no mention", T1)
        state.last_timestamp = T1
        loop = _make_loop(state, queue, channel, run_agent=run_agent)

        assert await loop.process_group_messages(CHAT) is True
        run_agent.assert_not_awaited()
        assert state.agent_cursor(CHAT) == ""

    @pytest.mark.asyncio
    async def test_schedules_standby_respawn(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """After a cold-start run the chat gets a fresh standby."""
        pool = MagicMock()
        _store("m1", "@Andy hi", T1)
        state.last_timestamp = T1
        loop = _make_loop(state, queue, channel, warm_pool=pool)

        await loop.process_group_messages(CHAT)
        pool.schedule_respawn.assert_called_once_with(CHAT, state.registered_groups[CHAT])


class TestWarmOutputHandler:
    """Tests for the handler installed into claimed standby containers."""

    @pytest.mark.asyncio
    async def test_error_without_output_rolls_back_and_retries(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        channel: RecordingChannel,
        tmp_path: Path,
    ) -> None:
        """The cursor is restored, a cold start is queued and the container closed."""
        state.advance_agent_cursor(CHAT, T2)
        queue.mark_active(CHAT, "alpha")
        loop = _make_loop(state, queue, channel)
        handler = loop.make_warm_output_handler(CHAT, state.registered_groups[CHAT], T1)

        await handler(ContainerOutput(status="error", error="boom"))
        assert state.agent_cursor(CHAT) == T1
        assert queue._get_group(CHAT).pending_messages is True
        assert (tmp_path / "ipc" / "alpha" / "input" / CLOSE_SENTINEL).exists()

    @pytest.mark.asyncio
    async def test_error_after_output_keeps_cursor(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """A warm error after delivered output leaves the cursor advanced."""
        state.advance_agent_cursor(CHAT, T2)
        queue.mark_active(CHAT, "alpha")
        loop = _make_loop(state, queue, channel)
        handler = loop.make_warm_output_handler(CHAT, state.registered_groups[CHAT], T1)

        await handler(ContainerOutput(status="success", result="answer"))
        await handler(ContainerOutput(status="error", error="late failure"))
        assert state.agent_cursor(CHAT) == T2
        assert channel.sent == [(CHAT, "answer")]
        assert queue._get_group(CHAT).pending_messages is False

    @pytest.mark.asyncio
    async def test_turn_end_clears_typing(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """A success frame with no result marks the end of the turn."""
        loop = _make_loop(state, queue, channel)
        handler = loop.make_warm_output_handler(CHAT, state.registered_groups[CHAT], "")

        await handler(ContainerOutput(status="success", result=None))
        assert channel.typing == [(CHAT, False)]
        assert channel.sent == []


class TestClaimedContainerCrash:
    """End-to-end failure policy when a claimed standby dies without output."""

    @pytest.mark.asyncio
    async def test_silent_crash_rolls_back_and_cold_starts(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        channel: RecordingChannel,
        tmp_path: Path,
    ) -> None:
        """The claimed batch is restored to the cursor and retried as a cold start."""
        exit_now = asyncio.Event()
        process = MagicMock()
        process.returncode = None

        async def crashing_runner(group, container_input, on_spawned, on_output):
            on_spawned(process, "warmclaw-alpha-1")
            await exit_now.wait()
            process.returncode = 137
            return ContainerOutput(status="error", error="Container exited with code 137")

        cold_starts: list[str] = []

        async def cold_start(jid: str) -> bool:
            cold_starts.append(jid)
            return True

        pool = WarmPool(queue, crashing_runner, tmp_path, max_concurrent=3, respawn_delay_s=10)
        queue.set_process_messages_fn(cold_start)
        loop = _make_loop(state, queue, channel, warm_pool=pool)
        pool.prewarm(CHAT, state.registered_groups[CHAT])
        await asyncio.sleep(0.01)

        _store("m1", "@Andy hi", T1)
        assert await loop.poll_once() == {CHAT: Dispatch.CLAIMED}
        assert state.agent_cursor(CHAT) == T1

        exit_now.set()
        await asyncio.sleep(0.01)
        assert state.agent_cursor(CHAT) == ""
        assert cold_starts == [CHAT]
        assert channel.sent == []
        pool.shutdown()


class TestRedispatch:
    """Tests for chats handed back by the queue."""

    @pytest.mark.asyncio
    async def test_handed_off_chat_claims_standby_next_tick(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """A redispatched chat goes through the ladder without a trigger check."""
        pool = MagicMock()
        pool.claim.return_value = True
        _store("m1", "no trigger here", T1)
        state.last_timestamp = T1
        loop = _make_loop(state, queue, channel, warm_pool=pool)

        loop.redispatch(CHAT)
        assert await loop.poll_once() == {CHAT: Dispatch.CLAIMED}
        assert state.agent_cursor(CHAT) == T1
        assert await loop.poll_once() == {}

    @pytest.mark.asyncio
    async def test_deferred_chat_with_new_untriggered_message_still_dispatched(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """New messages arriving for a deferred chat do not re-impose the trigger."""
        pool = MagicMock()
        pool.claim.side_effect = [False, True]
        pool.is_booting.return_value = True
        _store("m1", "@Andy hi", T1)
        loop = _make_loop(state, queue, channel, warm_pool=pool)
        assert await loop.poll_once() == {CHAT: Dispatch.DEFERRED}

        _store("m2", "and another thing", T2)
        assert await loop.poll_once() == {CHAT: Dispatch.CLAIMED}
        assert state.agent_cursor(CHAT) == T2

    @pytest.mark.asyncio
    async def test_queue_retry_hands_off_to_standby(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        channel: RecordingChannel,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A retry firing while a standby exists claims it instead of cold-starting."""
        monkeypatch.setattr("warmclaw.queue.BASE_RETRY_S", 0.01)
        pool = MagicMock()
        pool.claim.return_value = True
        standby: set[str] = set()
        queue.set_has_standby_fn(lambda jid: jid in standby)
        _store("m1", "@Andy hi", T1)
        state.last_timestamp = T1
        runs: list[str] = []

        async def run_agent(group, prompt, chat_jid, on_output) -> str:
            runs.append(chat_jid)
            # The respawned standby appears while the retry is waiting.
            standby.add(chat_jid)
            return "error"

        loop = _make_loop(state, queue, channel, warm_pool=pool, run_agent=run_agent)
        queue.set_process_messages_fn(loop.process_group_messages)
        queue.set_handoff_fn(loop.redispatch)

        queue.enqueue_message_check(CHAT)
        await asyncio.sleep(0.05)
        assert runs == [CHAT]
        assert state.agent_cursor(CHAT) == ""

        assert await loop.poll_once() == {CHAT: Dispatch.CLAIMED}
        assert runs == [CHAT]
        assert state.agent_cursor(CHAT) == T1


class TestRunLoop:
    """Tests for run()/stop()."""

    @pytest.mark.asyncio
    async def test_stop_ends_loop(
        self, state: OrchestratorState, queue: GroupQueue, channel: RecordingChannel
    ) -> None:
        """run() returns after stop() is called."""
        loop = _make_loop(state, queue, channel)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.03)
        loop.stop()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_tick_exception_is_not_fatal(
        self,
        state: OrchestratorState,
        queue: GroupQueue,
        channel: RecordingChannel,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """An exception from one tick is logged and the loop keeps polling."""
        loop = _make_loop(state, queue, channel)
        calls = 0

        async def broken() -> dict:
            nonlocal calls
            calls += 1
            raise RuntimeError("db down")

        monkeypatch.setattr(loop, "poll_once", broken)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        loop.stop()
        await asyncio.wait_for(task, timeout=1)
        assert calls >= 2
