"""IPC command models — a closed tagged union keyed by ``type``.

Payload field names follow the wire format the sandbox writes (camelCase).
Extra fields are ignored, including identity claims such as ``chatJid`` on
``schedule_task``; the bus resolves identities from the registry instead.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from clawgate.errors import IpcValidationError
from clawgate.ipc.queue import REQUEST_ID_PATTERN

MAX_TYPING_DURATION_MS = 120_000


class _Command(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    request_id: str | None = Field(default=None, alias="requestId", pattern=REQUEST_ID_PATTERN)


# --- messages/ ---


class SendMessage(_Command):
    type: Literal["message"]
    chat_jid: str = Field(alias="chatJid", min_length=1)
    text: str = Field(min_length=1)


class TypingIndicator(_Command):
    type: Literal["typing_indicator"]
    chat_jid: str = Field(alias="chatJid", min_length=1)
    duration: int = 5000  # ms

    @field_validator("duration")
    @classmethod
    def _clamp_duration(cls, v: int) -> int:
        if v <= 0:
            return 5000
        return min(v, MAX_TYPING_DURATION_MS)


# --- tasks/ ---


class ScheduleTask(_Command):
    type: Literal["schedule_task"]
    prompt: str = Field(min_length=1)
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str = Field(min_length=1)
    context_mode: Literal["group", "isolated"] = "isolated"
    group_folder: str | None = Field(default=None, alias="groupFolder")

    @field_validator("context_mode", mode="before")
    @classmethod
    def _default_context_mode(cls, v: Any) -> Any:
        return v if v in ("group", "isolated") else "isolated"


class PauseTask(_Command):
    type: Literal["pause_task"]
    task_id: str = Field(alias="taskId", min_length=1)


class ResumeTask(_Command):
    type: Literal["resume_task"]
    task_id: str = Field(alias="taskId", min_length=1)


class CancelTask(_Command):
    type: Literal["cancel_task"]
    task_id: str = Field(alias="taskId", min_length=1)


class RegisterGroup(_Command):
    type: Literal["register_group"]
    jid: str = Field(min_length=1)
    name: str = Field(min_length=1)
    folder: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
    trigger: str = ""
    container_config: dict[str, Any] | None = Field(default=None, alias="containerConfig")


class RefreshGroups(_Command):
    type: Literal["refresh_groups"]


class DirectMessage(_Command):
    type: Literal["direct_message"]
    user_id: str = Field(alias="userId", min_length=1)
    text: str = Field(min_length=1)


IpcCommand = Annotated[
    SendMessage
    | TypingIndicator
    | ScheduleTask
    | PauseTask
    | ResumeTask
    | CancelTask
    | RegisterGroup
    | RefreshGroups
    | DirectMessage,
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter[IpcCommand] = TypeAdapter(IpcCommand)

MESSAGE_COMMANDS = frozenset({"message", "typing_indicator"})
TASK_COMMANDS = frozenset(
    {
        "schedule_task",
        "pause_task",
        "resume_task",
        "cancel_task",
        "register_group",
        "refresh_groups",
        "direct_message",
    }
)


def parse_command(data: dict[str, Any], box: str) -> IpcCommand:
    """Validate a payload read from ``box`` into its command model.

    Raises IpcValidationError for unknown types, missing or malformed fields,
    and commands dropped into the wrong box.
    """
    try:
        cmd = _ADAPTER.validate_python(data)
    except ValidationError as exc:
        kind = data.get("type", "<missing>")
        raise IpcValidationError(f"Invalid {kind} command: {exc.errors()[0]['msg']}") from exc

    allowed = MESSAGE_COMMANDS if box == "messages" else TASK_COMMANDS
    if cmd.type not in allowed:
        raise IpcValidationError(f"{cmd.type} is not accepted in {box}/")
    return cmd
