"""Container execution for agent runs.

Spawns one agent container per invocation through the configured container
CLI (``container`` or ``docker``), feeds it a JSON ``ContainerInput`` on
stdin, and parses ``ContainerOutput`` frames delimited by sentinel markers
on stdout.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import time
from collections.abc import Callable, Coroutine
from pathlib import Path, PurePosixPath
from typing import Any

from warmclaw.config import Credentials
from warmclaw.ipc import ipc_group_dir
from warmclaw.types import (
    AdditionalMount,
    ContainerInput,
    ContainerOutput,
    RegisteredGroup,
    VolumeMount,
)

logger = logging.getLogger(__name__)

OUTPUT_START_MARKER = "---WARMCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---WARMCLAW_OUTPUT_END---"
CONTAINER_NAME_PREFIX = "warmclaw-"
EXTRA_MOUNT_ROOT = "/workspace/extra"
# The hard timeout never fires before the host idle timer has had a chance to close.
IDLE_GRACE_MS = 30_000

# Called once the container process exists: (process, container_name).
OnProcessSpawned = Callable[[asyncio.subprocess.Process, str], None]
# Called for every streamed result frame, in order.
OnOutput = Callable[[ContainerOutput], Coroutine[Any, Any, None]]
# The container-execution contract shared by the queue path and the warm pool.
AgentRunner = Callable[
    [RegisteredGroup, ContainerInput, OnProcessSpawned | None, OnOutput | None],
    Coroutine[Any, Any, ContainerOutput],
]


class OutputFrameParser:
    """Incrementally extracts marker-delimited JSON frames from stdout text."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[ContainerOutput]:
        """Append text and return every complete frame found.

        Frames whose JSON does not validate are logged and dropped.
        """
        self._buffer += text
        frames: list[ContainerOutput] = []
        while True:
            start = self._buffer.find(OUTPUT_START_MARKER)
            if start == -1:
                break
            end = self._buffer.find(OUTPUT_END_MARKER, start)
            if end == -1:
                break
            json_str = self._buffer[start + len(OUTPUT_START_MARKER) : end].strip()
            self._buffer = self._buffer[end + len(OUTPUT_END_MARKER) :]
            try:
                frames.append(ContainerOutput.model_validate_json(json_str))
            except ValueError as exc:
                logger.warning("Failed to parse streamed output: %s", exc)
        return frames


def secrets_from_credentials(creds: Credentials) -> dict[str, str]:
    """Map loaded credentials to the environment names the agent expects.

    Secrets travel to the container on stdin only and are never written to disk.
    """
    return {
        k: v
        for k, v in {
            "ANTHROPIC_API_KEY": creds.anthropic_api_key,
            "CLAUDE_CODE_OAUTH_TOKEN": creds.claude_code_oauth_token,
        }.items()
        if v
    }


def container_name_for(group_folder: str) -> str:
    """Build a unique container name for a group run."""
    safe_name = re.sub(r"[^a-zA-Z0-9-]", "-", group_folder)
    return f"{CONTAINER_NAME_PREFIX}{safe_name}-{int(time.time() * 1000)}"


def build_volume_mounts(
    group: RegisteredGroup,
    is_main: bool,
    groups_dir: Path,
    data_dir: Path,
    project_root: Path,
) -> list[VolumeMount]:
    """Build the list of volume mounts for an agent container.

    Args:
        group: The registered group whose container is being spawned.
        is_main: Whether this is the main group (gets read-only project access).
        groups_dir: Absolute path to the groups/ directory.
        data_dir: Absolute path to the data/ directory.
        project_root: Absolute path to the project root.

    Returns:
        List of VolumeMount objects for the container invocation.
    """
    mounts: list[VolumeMount] = []

    if is_main:
        mounts.append(
            VolumeMount(
                host_path=str(project_root),
                container_path="/workspace/project",
                readonly=True,
            )
        )

    mounts.append(
        VolumeMount(
            host_path=str(groups_dir / group.folder),
            container_path="/workspace/group",
        )
    )

    global_dir = groups_dir / "global"
    if not is_main and global_dir.exists():
        mounts.append(
            VolumeMount(
                host_path=str(global_dir),
                container_path="/workspace/global",
                readonly=True,
            )
        )

    sessions_dir = data_dir / "sessions" / group.folder
    sessions_dir.mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(host_path=str(sessions_dir), container_path="/home/node/.claude"))

    group_ipc_dir = ipc_group_dir(data_dir, group.folder)
    for sub in ("input", "messages", "files"):
        (group_ipc_dir / sub).mkdir(parents=True, exist_ok=True)
    mounts.append(VolumeMount(host_path=str(group_ipc_dir), container_path="/workspace/ipc"))

    if group.container_config:
        for extra in group.container_config.additional_mounts:
            mount = _validate_additional_mount(extra)
            if mount is not None:
                mounts.append(mount)

    return mounts


def _validate_additional_mount(extra: AdditionalMount) -> VolumeMount | None:
    host = Path(extra.host_path).expanduser()
    if not host.is_absolute() or not host.exists():
        logger.warning("Skipping additional mount, host path missing: %s", extra.host_path)
        return None
    name = extra.container_path or host.name
    rel = PurePosixPath(name)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        logger.warning("Skipping additional mount, invalid container path: %s", name)
        return None
    return VolumeMount(
        host_path=str(host.resolve()),
        container_path=f"{EXTRA_MOUNT_ROOT}/{rel}",
        readonly=extra.readonly,
    )


def build_container_args(
    runtime: str,
    mounts: list[VolumeMount],
    container_name: str,
    image: str,
) -> list[str]:
    """Build the argument list for the container CLI invocation.

    Args:
        runtime: Container CLI binary.
        mounts: Volume mounts to include.
        container_name: Name to assign to the container.
        image: Container image name.

    Returns:
        Full argv for ``<runtime> run``.
    """
    args = [runtime, "run", "-i", "--rm", "--name", container_name]
    for mount in mounts:
        if mount.readonly:
            args += [
                "--mount",
                f"type=bind,source={mount.host_path},target={mount.container_path},readonly",
            ]
        else:
            args += ["-v", f"{mount.host_path}:{mount.container_path}"]
    args.append(image)
    return args


class ContainerRunner:
    """Runs agent containers for registered groups.

    ``run`` satisfies the ``AgentRunner`` contract.

    Args:
        groups_dir: Absolute path to groups/.
        data_dir: Absolute path to data/.
        project_root: Absolute path to the project root.
        runtime: Container CLI binary.
        image: Agent image name.
        timeout_ms: Default hard timeout in milliseconds.
        idle_timeout_ms: Host idle timeout; the hard timeout never fires before it.
        max_output_size: Maximum stdout characters buffered for the run log.
        secrets: Credentials injected on stdin.
    """

    def __init__(
        self,
        groups_dir: Path,
        data_dir: Path,
        project_root: Path,
        runtime: str = "container",
        image: str = "warmclaw-agent:latest",
        timeout_ms: int = 1800000,
        idle_timeout_ms: int = 1800000,
        max_output_size: int = 10485760,
        secrets: dict[str, str] | None = None,
    ) -> None:
        self.groups_dir = groups_dir
        self.data_dir = data_dir
        self.project_root = project_root
        self.runtime = runtime
        self.image = image
        self.timeout_ms = timeout_ms
        self.idle_timeout_ms = idle_timeout_ms
        self.max_output_size = max_output_size
        self._secrets = secrets or {}

    async def run(
        self,
        group: RegisteredGroup,
        container_input: ContainerInput,
        on_process_spawned: OnProcessSpawned | None = None,
        on_output: OnOutput | None = None,
    ) -> ContainerOutput:
        """Spawn an agent container and process its output.

        Args:
            group: The registered group whose agent to run.
            container_input: Input for the agent (prompt, session ID, etc.).
            on_process_spawned: Called with (process, container_name) after spawn.
            on_output: Awaited for each streamed ContainerOutput frame.

        Returns:
            ContainerOutput with the final status.

        Raises:
            OSError: If the container CLI cannot be executed.
        """
        start_time = time.monotonic()
        group_dir = self.groups_dir / group.folder
        logs_dir = group_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        mounts = build_volume_mounts(
            group, container_input.is_main, self.groups_dir, self.data_dir, self.project_root
        )
        container_name = container_name_for(group.folder)
        container_args = build_container_args(self.runtime, mounts, container_name, self.image)

        timeout_ms = self.timeout_ms
        if group.container_config and group.container_config.timeout_ms:
            timeout_ms = group.container_config.timeout_ms

        logger.info(
            "Spawning container %s for group %s (%d mounts)",
            container_name,
            group.name,
            len(mounts),
        )

        stdin_data = container_input.model_copy(
            update={"secrets": self._secrets or None}
        ).model_dump_json()

        proc = await asyncio.create_subprocess_exec(
            *container_args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        if on_process_spawned is not None:
            on_process_spawned(proc, container_name)

        if proc.stdin is not None:
            proc.stdin.write(stdin_data.encode())
            await proc.stdin.drain()
            proc.stdin.close()

        stdout_chunks: list[str] = []
        stderr_lines: list[str] = []
        stdout_total = 0
        stdout_truncated = False
        new_session_id: str | None = None
        had_streaming_output = False
        parser = OutputFrameParser()

        async def _read_stdout() -> None:
            # Multi-byte characters may straddle read boundaries.
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            assert proc.stdout is not None
            while chunk := await proc.stdout.read(4096):
                await _consume_stdout(decoder.decode(chunk))
            await _consume_stdout(decoder.decode(b"", final=True))

        async def _consume_stdout(text: str) -> None:
            nonlocal stdout_total, stdout_truncated, new_session_id, had_streaming_output
            if not text:
                return
            if not stdout_truncated:
                remaining = self.max_output_size - stdout_total
                if len(text) > remaining:
                    stdout_chunks.append(text[:remaining])
                    stdout_total += remaining
                    stdout_truncated = True
                    logger.warning(
                        "Container %s stdout truncated at %d bytes",
                        container_name,
                        stdout_total,
                    )
                else:
                    stdout_chunks.append(text)
                    stdout_total += len(text)

            for frame in parser.feed(text):
                had_streaming_output = True
                if frame.new_session_id:
                    new_session_id = frame.new_session_id
                if on_output is None:
                    continue
                try:
                    await on_output(frame)
                except Exception:
                    logger.error(
                        "Output handler failed for %s", container_name, exc_info=True
                    )

        async def _read_stderr() -> None:
            assert proc.stderr is not None
            while line_bytes := await proc.stderr.readline():
                line = line_bytes.decode(errors="replace").rstrip()
                if line:
                    stderr_lines.append(line)
                    logger.debug("[%s] %s", group.folder, line)

        timed_out = False
        timeout_s = max(timeout_ms, self.idle_timeout_ms + IDLE_GRACE_MS) / 1000.0
        try:
            await asyncio.wait_for(asyncio.gather(_read_stdout(), _read_stderr()), timeout_s)
        except TimeoutError:
            timed_out = True
            logger.error("Container %s timed out, stopping gracefully", container_name)
            await self.stop_container(container_name, proc)

        await proc.wait()
        duration_ms = int((time.monotonic() - start_time) * 1000)
        exit_code = proc.returncode or 0

        _write_container_log(
            logs_dir,
            container_name,
            group,
            container_input,
            mounts,
            container_args,
            exit_code,
            duration_ms,
            stdout_truncated,
            "".join(stdout_chunks),
            "\n".join(stderr_lines),
        )

        if timed_out:
            if had_streaming_output:
                logger.info(
                    "Container %s timed out after output (idle cleanup, %dms)",
                    container_name,
                    duration_ms,
                )
                return ContainerOutput(status="success", new_session_id=new_session_id)
            return ContainerOutput(
                status="error", error=f"Container timed out after {timeout_ms}ms"
            )

        if exit_code != 0:
            stderr_tail = "\n".join(stderr_lines[-10:])
            logger.error(
                "Container %s exited with code %d after %dms",
                container_name,
                exit_code,
                duration_ms,
            )
            return ContainerOutput(
                status="error",
                error=f"Container exited with code {exit_code}: {stderr_tail[-200:]}",
                new_session_id=new_session_id,
            )

        if on_output is not None:
            logger.info("Container %s completed (streaming, %dms)", container_name, duration_ms)
            return ContainerOutput(status="success", new_session_id=new_session_id)

        return parse_final_output("".join(stdout_chunks), container_name)

    async def stop_container(
        self, container_name: str, proc: asyncio.subprocess.Process | None = None
    ) -> None:
        """Ask the runtime to stop a container, killing the process if that fails."""
        try:
            stopper = await asyncio.create_subprocess_exec(
                self.runtime,
                "stop",
                container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            if await stopper.wait() == 0:
                return
            logger.warning(
                "%s stop %s exited with %d", self.runtime, container_name, stopper.returncode
            )
        except OSError as exc:
            logger.warning("Failed to stop container %s: %s", container_name, exc)
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                logger.debug("Container process for %s already gone", container_name)


def parse_final_output(stdout: str, container_name: str) -> ContainerOutput:
    """Parse the last ContainerOutput frame from accumulated stdout.

    Falls back to the last non-empty line when no markers are present.
    """
    start = stdout.rfind(OUTPUT_START_MARKER)
    end = stdout.rfind(OUTPUT_END_MARKER)
    if start != -1 and end > start:
        json_str = stdout[start + len(OUTPUT_START_MARKER) : end].strip()
    else:
        lines = [line for line in stdout.strip().split("\n") if line.strip()]
        json_str = lines[-1] if lines else ""

    try:
        return ContainerOutput.model_validate_json(json_str)
    except ValueError as exc:
        logger.error("Failed to parse output from container %s: %s", container_name, exc)
        return ContainerOutput(status="error", error=f"Failed to parse container output: {exc}")


def _write_container_log(
    logs_dir: Path,
    container_name: str,
    group: RegisteredGroup,
    container_input: ContainerInput,
    mounts: list[VolumeMount],
    container_args: list[str],
    exit_code: int,
    duration_ms: int,
    stdout_truncated: bool,
    stdout: str,
    stderr: str,
) -> None:
    """Write a per-run log to ``groups/<folder>/logs/container-*.log``.

    Args and mounts are included for failed runs, or always at DEBUG level.
    """
    ts = time.strftime("%Y%m%dT%H%M%S")
    log_file = logs_dir / f"container-{ts}-{container_name[-6:]}.log"
    lines = [
        "=== Container Run Log ===",
        f"Timestamp: {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime())}",
        f"Container: {container_name}",
        f"Group: {group.name}",
        f"IsMain: {container_input.is_main}",
        f"Standby: {container_input.is_scheduled_task}",
        f"Duration: {duration_ms}ms",
        f"Exit Code: {exit_code}",
        f"Stdout Truncated: {stdout_truncated}",
        "",
    ]
    if exit_code != 0 or logger.isEnabledFor(logging.DEBUG):
        lines += [
            "=== Container Args ===",
            " ".join(container_args),
            "",
            "=== Mounts ===",
            "\n".join(
                f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                for m in mounts
            ),
            "",
            "=== Stderr ===",
            stderr,
            "",
            f"=== Stdout {'(TRUNCATED)' if stdout_truncated else ''} ===",
            stdout,
        ]
    try:
        log_file.write_text("\n".join(lines), encoding="utf-8")
        logger.debug("Container log written to %s", log_file)
    except OSError as exc:
        logger.warning("Failed to write container log: %s", exc)
