"""WarmClaw orchestrator entry point.

Wires the store, the per-chat queue, the warm pool, the delivery loop and
the IPC watcher together, installs signal handlers, and runs until
SIGINT/SIGTERM.

Usage:
    python -m warmclaw
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import logging.handlers
import signal
import subprocess
import sys
from pathlib import Path

from warmclaw.channels.base import Channel
from warmclaw.channels.console import ConsoleChannel
from warmclaw.config import AppConfig, load_config, load_credentials
from warmclaw.container import (
    CONTAINER_NAME_PREFIX,
    ContainerRunner,
    OnOutput,
    secrets_from_credentials,
)
from warmclaw.db.operations import (
    init_database,
    set_registered_group,
    store_chat_metadata,
    store_message,
)
from warmclaw.delivery import DeliveryLoop
from warmclaw.group_folder import resolve_group_folder_path
from warmclaw.ipc import IpcDeps, IpcWatcher
from warmclaw.queue import GroupQueue
from warmclaw.router import MAIN_GROUP_FOLDER, format_outbound, route_outbound
from warmclaw.state import OrchestratorState
from warmclaw.types import ContainerInput, NewMessage, RegisteredGroup
from warmclaw.warm_pool import WarmPool

logger = logging.getLogger(__name__)


class WarmClawOrchestrator:
    """Main orchestrator that ties all subsystems together.

    Args:
        config_path: Optional path to config.yml. Defaults to config.yml
            in the current working directory.
        credentials_path: Optional path to credentials.yml.
        project_root: Root that relative paths in the config resolve
            against. Defaults to the current working directory.
        channels: Platform channel adapters, in lookup order. A log-only
            console channel is always appended last.
    """

    def __init__(
        self,
        config_path: Path | None = None,
        credentials_path: Path | None = None,
        project_root: Path | None = None,
        channels: list[Channel] | None = None,
    ) -> None:
        self.config: AppConfig = load_config(config_path)
        self.credentials = load_credentials(credentials_path)

        self.project_root: Path = (project_root or Path.cwd()).resolve()
        self.groups_dir: Path = self.project_root / self.config.paths.groups_dir
        self.data_dir: Path = self.project_root / self.config.paths.data_dir
        self.store_dir: Path = self.project_root / self.config.paths.store_dir

        self.state = OrchestratorState()
        self.channels: list[Channel] = [*(channels or []), ConsoleChannel()]

        # Subsystems initialised in build_subsystems()
        self.runner: ContainerRunner | None = None
        self.queue: GroupQueue | None = None
        self.warm_pool: WarmPool | None = None
        self.delivery: DeliveryLoop | None = None
        self.ipc_watcher: IpcWatcher | None = None

        self._shutting_down = False
        self._shutdown_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run the delivery loop until shutdown.

        Sequence:
            1. Configure logging.
            2. Ensure the container runtime is up; stop orphaned containers.
            3. Initialise the store and load persistent state.
            4. Build queue, warm pool, delivery loop and IPC watcher.
            5. Install OS signal handlers.
            6. Connect channels and start the IPC watcher.
            7. Recover pending messages, then prewarm every registered chat.
            8. Enter the delivery loop.
        """
        setup_logging(self.config, self.project_root)
        self._ensure_container_system()

        self.store_dir.mkdir(parents=True, exist_ok=True)
        init_database(str(self.store_dir / "messages.db"))
        self.state.load()

        self.build_subsystems()
        assert self.delivery is not None and self.ipc_watcher is not None

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown, sig.name)

        await self._connect_channels()
        self._spawn(self.ipc_watcher.run())

        self.delivery.recover_pending_messages()
        self._prewarm_all()

        await self.delivery.run()
        if self._shutdown_task is not None:
            await self._shutdown_task

    def build_subsystems(self) -> None:
        """Create the runner, queue, warm pool, delivery loop and IPC watcher."""
        cfg = self.config
        self.runner = ContainerRunner(
            groups_dir=self.groups_dir,
            data_dir=self.data_dir,
            project_root=self.project_root,
            runtime=cfg.container.runtime,
            image=cfg.container.image,
            timeout_ms=cfg.container.timeout_ms,
            idle_timeout_ms=cfg.timing.idle_timeout_ms,
            max_output_size=cfg.container.max_output_size_bytes,
            secrets=secrets_from_credentials(self.credentials),
        )
        self.queue = GroupQueue(
            max_concurrent=cfg.container.max_concurrent,
            data_dir=self.data_dir,
            idle_timeout_s=cfg.timing.idle_timeout_s,
        )
        if cfg.warm_pool.enabled:
            self.warm_pool = WarmPool(
                queue=self.queue,
                runner=self.runner.run,
                data_dir=self.data_dir,
                max_concurrent=cfg.container.max_concurrent,
                assistant_name=cfg.assistant.name,
                respawn_delay_s=cfg.warm_pool.respawn_delay_s,
                model=cfg.container.model,
            )
            self.warm_pool.seed_sessions(self.state.sessions)
        self.delivery = DeliveryLoop(
            state=self.state,
            queue=self.queue,
            warm_pool=self.warm_pool,
            channels=lambda: self.channels,
            run_agent=self._run_agent,
            assistant_name=cfg.assistant.name,
            trigger_pattern=cfg.trigger_pattern,
            poll_interval_s=cfg.timing.poll_interval_s,
        )
        self.queue.set_process_messages_fn(self.delivery.process_group_messages)
        self.queue.set_handoff_fn(self.delivery.redispatch)
        self.queue.set_stop_container_fn(self.runner.stop_container)
        self.ipc_watcher = IpcWatcher(
            data_dir=self.data_dir,
            poll_interval_s=cfg.timing.ipc_poll_interval_s,
            deps=IpcDeps(
                send_message=self._ipc_send_message,
                registered_groups=lambda: self.state.registered_groups,
                channels=lambda: self.channels,
                groups_dir=self.groups_dir,
            ),
        )

    # ------------------------------------------------------------------
    # Container system helpers
    # ------------------------------------------------------------------

    def _ensure_container_system(self) -> None:
        """Ensure the container runtime is running and stop orphaned containers.

        Raises:
            RuntimeError: If the container runtime cannot be started.
        """
        runtime = self.config.container.runtime
        if runtime == "container":
            result = subprocess.run(
                [runtime, "system", "status"], capture_output=True, timeout=10
            )
            if result.returncode != 0:
                self._start_container_system()
        else:
            result = subprocess.run([runtime, "info"], capture_output=True, timeout=10)
            if result.returncode != 0:
                stderr = result.stderr.decode(errors="replace")
                logger.error("Container runtime %s is not available: %s", runtime, stderr)
                raise RuntimeError(f"Container runtime {runtime} unavailable: {stderr}")
        self._kill_orphaned_containers()

    def _start_container_system(self) -> None:
        """Start the Apple Container system.

        Raises:
            RuntimeError: If the container system fails to start.
        """
        logger.info("Container system not running, starting it...")
        start_result = subprocess.run(
            [self.config.container.runtime, "system", "start"],
            capture_output=True,
            timeout=30,
        )
        if start_result.returncode != 0:
            stderr = start_result.stderr.decode(errors="replace")
            logger.error("Container system failed to start: %s", stderr)
            raise RuntimeError(f"Container system start failed: {stderr}")
        logger.info("Container system started.")

    def _kill_orphaned_containers(self) -> None:
        """Stop warmclaw-* containers left running by a previous crash."""
        runtime = self.config.container.runtime
        ls_args = (
            [runtime, "ls", "--format", "json"]
            if runtime == "container"
            else [runtime, "ps", "--format", "{{json .}}"]
        )
        try:
            ls_result = subprocess.run(ls_args, capture_output=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not check for orphaned containers: %s", exc)
            return
        if ls_result.returncode != 0:
            return
        raw = ls_result.stdout.decode(errors="replace").strip()
        for name in running_container_names(raw):
            if not name.startswith(CONTAINER_NAME_PREFIX):
                continue
            logger.info("Stopping orphaned container %s", name)
            subprocess.run([runtime, "stop", name], capture_output=True, timeout=10)

    # ------------------------------------------------------------------
    # Group registration
    # ------------------------------------------------------------------

    def register_group(self, jid: str, group: RegisteredGroup) -> RegisteredGroup:
        """Register a chat, create its workspace, and prewarm a standby.

        Args:
            jid: Chat JID.
            group: Registration data.

        Returns:
            The stored registration.

        Raises:
            ValueError: If the group folder name is invalid.
        """
        group_dir = resolve_group_folder_path(self.groups_dir, group.folder)
        (group_dir / "logs").mkdir(parents=True, exist_ok=True)
        group = group.model_copy(update={"jid": jid})
        self.state.registered_groups[jid] = group
        set_registered_group(jid, group)
        logger.info("Group registered: %s -> %s", group.name, group.folder)
        if self.warm_pool is not None:
            self.warm_pool.prewarm(jid, group)
        return group

    def on_inbound_message(self, chat_jid: str, msg: NewMessage) -> None:
        """Channel callback: log a message for a registered chat.

        Messages for unregistered chats only update chat metadata.
        """
        store_chat_metadata(chat_jid, msg.timestamp)
        if chat_jid in self.state.registered_groups:
            store_message(msg)

    def on_chat_metadata(self, chat_jid: str, timestamp: str, name: str | None = None) -> None:
        """Channel callback: record a chat discovered by a channel."""
        store_chat_metadata(chat_jid, timestamp, name)

    def _prewarm_all(self) -> None:
        if self.warm_pool is None:
            return
        for jid, group in self.state.registered_groups.items():
            self.warm_pool.prewarm(jid, group, self.state.sessions.get(group.folder))

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _connect_channels(self) -> None:
        for channel in self.channels:
            await channel.connect()
            logger.info("Channel connected: %s", channel.name)

    async def _ipc_send_message(self, jid: str, text: str) -> None:
        """Deliver outbound text written by a container to messages/."""
        clean = format_outbound(text)
        if clean:
            await route_outbound(self.channels, jid, clean, self.config.assistant.name)

    # ------------------------------------------------------------------
    # Agent runner
    # ------------------------------------------------------------------

    async def _run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        on_output: OnOutput,
    ) -> str:
        """Run a cold-start agent container for a chat.

        Args:
            group: The registered group to run the agent for.
            prompt: Formatted prompt for the agent.
            chat_jid: JID of the originating chat.
            on_output: Awaited for each streamed ContainerOutput frame.

        Returns:
            'success' or 'error'.
        """
        assert self.runner is not None and self.queue is not None
        queue = self.queue
        container_input = ContainerInput(
            prompt=prompt,
            session_id=self.state.sessions.get(group.folder),
            group_folder=group.folder,
            chat_jid=chat_jid,
            is_main=group.folder == MAIN_GROUP_FOLDER,
            assistant_name=self.config.assistant.name,
            model=self.config.container.model,
        )

        def on_spawned(process: asyncio.subprocess.Process, container_name: str) -> None:
            queue.register_process(chat_jid, process, container_name, group.folder)

        try:
            output = await self.runner.run(group, container_input, on_spawned, on_output)
        except Exception:
            logger.error("Container run raised exception for %s", group.folder, exc_info=True)
            return "error"

        if output.new_session_id:
            self.state.record_session(group.folder, output.new_session_id)
            if self.warm_pool is not None:
                self.warm_pool.update_session(group.folder, output.new_session_id)
        if output.status == "error" and output.error:
            logger.warning("Agent run for %s failed: %s", group.folder, output.error)
        return output.status

    # ------------------------------------------------------------------
    # Graceful shutdown
    # ------------------------------------------------------------------

    def _spawn(self, coro: object) -> None:
        task = asyncio.ensure_future(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _request_shutdown(self, sig_name: str) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown(sig_name))

    async def _shutdown(self, sig_name: str) -> None:
        """Stop intake, wind down containers, and disconnect channels.

        Args:
            sig_name: Name of the signal that triggered shutdown (e.g. 'SIGTERM').
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("WarmClaw shutting down (signal=%s)...", sig_name)

        if self.delivery is not None:
            self.delivery.stop()
        if self.ipc_watcher is not None:
            self.ipc_watcher.stop()
        self.state.save()

        if self.warm_pool is not None:
            self.warm_pool.shutdown()
        if self.queue is not None:
            await self.queue.shutdown(self.config.timing.shutdown_grace_ms)

        for channel in self.channels:
            try:
                await channel.disconnect()
            except Exception as exc:
                logger.warning("Channel %s disconnect error: %s", channel.name, exc)

        for task in list(self._background):
            task.cancel()
        logger.info("WarmClaw shutdown complete.")


def running_container_names(raw: str) -> list[str]:
    """Extract names of running containers from runtime ``ls``/``ps`` JSON.

    Accepts a JSON array, a single JSON object, or JSON lines.
    """
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
        entries = parsed if isinstance(parsed, list) else [parsed]
    except json.JSONDecodeError:
        entries = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping unparseable container listing line: %s", line)

    names: list[str] = []
    for ct in entries:
        if not isinstance(ct, dict):
            continue
        name = ct.get("name") or ct.get("Name") or ct.get("Names") or ""
        status = ct.get("status") or ct.get("Status") or ct.get("State") or ""
        if isinstance(name, str) and isinstance(status, str):
            if "running" in status.lower() or status.lower().startswith("up"):
                names.append(name)
    return names


# ------------------------------------------------------------------
# Logging setup
# ------------------------------------------------------------------


def setup_logging(config: AppConfig, base_dir: Path | None = None) -> None:
    """Configure stdlib logging from application config.

    Sets the root logger level, attaches a StreamHandler (stderr), and
    optionally attaches a RotatingFileHandler if config.logging.file is set.

    Args:
        config: Loaded application configuration.
        base_dir: Directory a relative log file path resolves against.
            Defaults to the current working directory.
    """
    log_level = getattr(logging, config.logging.level, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.logging.file:
        log_file = Path(config.logging.file)
        if not log_file.is_absolute():
            log_file = (base_dir or Path.cwd()) / log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                str(log_file),
                maxBytes=10 * 1024 * 1024,  # 10 MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logger.debug("Log file: %s", log_file)
        except OSError as exc:
            logger.warning("Could not open log file %s: %s", log_file, exc)


# ------------------------------------------------------------------
# Entry points
# ------------------------------------------------------------------


async def main_async() -> None:
    """Async entry point for the orchestrator."""
    orchestrator = WarmClawOrchestrator()
    await orchestrator.run()


def main() -> None:
    """Synchronous entry point for ``python -m warmclaw``."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main_async())


if __name__ == "__main__":
    main()
