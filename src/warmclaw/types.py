"""Domain models shared across WarmClaw subsystems.

All models are Pydantic v2 ``BaseModel`` subclasses so they can be validated
from the store, from YAML, and from container output with the same code.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class AdditionalMount(BaseModel):
    """An extra host directory mounted into a group's container.

    Attributes:
        host_path: Absolute path on the host.
        container_path: Mount point under /workspace/extra/. Defaults to
            the host directory's basename.
        readonly: Whether the mount is read-only.
    """

    host_path: str
    container_path: str | None = None
    readonly: bool = True


class ContainerConfig(BaseModel):
    """Per-group container overrides stored with the group registration.

    Attributes:
        additional_mounts: Extra host directories to mount.
        timeout_ms: Per-group hard timeout override in milliseconds.
    """

    additional_mounts: list[AdditionalMount] = Field(default_factory=list)
    timeout_ms: int | None = None


class RegisteredGroup(BaseModel):
    """A chat that has been registered for agent routing.

    Attributes:
        name: Display name of the chat.
        folder: Filesystem-safe folder name owning the group's workspace.
        trigger: Trigger text (e.g. '@Andy') required in non-main chats.
        added_at: ISO timestamp of registration.
        jid: Channel-qualified chat identifier.
        channel: Name of the channel that owns the chat.
        container_config: Optional per-group container overrides.
        requires_trigger: False to route every message without a trigger.
            None means the default (trigger required outside main).
    """

    name: str
    folder: str
    trigger: str
    added_at: str
    jid: str = ""
    channel: str = ""
    container_config: ContainerConfig | None = None
    requires_trigger: bool | None = None


class NewMessage(BaseModel):
    """A single message stored in, or fetched from, the message log."""

    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool = False
    is_bot_message: bool = False


class ChatInfo(BaseModel):
    """Chat metadata row (registered or not)."""

    jid: str
    name: str
    last_message_time: str
    channel: str | None = None


class VolumeMount(BaseModel):
    """A bind mount passed to the container runtime."""

    host_path: str
    container_path: str
    readonly: bool = False


class ContainerInput(BaseModel):
    """Input written to the container's stdin as JSON.

    Attributes:
        prompt: Formatted prompt for the agent.
        session_id: Agent session to resume, if any.
        group_folder: The group's folder name.
        chat_jid: The originating chat.
        is_main: Whether the group has main-group privileges.
        is_scheduled_task: True for non-interactive runs. Standby containers
            set this so the agent enters its own idle IPC poll loop.
        assistant_name: Assistant name used for prompt framing.
        model: Optional model override.
        secrets: API credentials, injected at spawn time only.
    """

    prompt: str
    session_id: str | None = None
    group_folder: str
    chat_jid: str
    is_main: bool = False
    is_scheduled_task: bool = False
    assistant_name: str | None = None
    model: str | None = None
    secrets: dict[str, str] | None = None


class ContainerOutput(BaseModel):
    """A result frame streamed from, or returned by, a container run."""

    status: Literal["success", "error"]
    result: str | None = None
    error: str | None = None
    new_session_id: str | None = None
