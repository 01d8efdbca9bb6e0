"""Data models for clawgate."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable


@dataclass
class ContainerConfig:
    timeout: float | None = None  # Seconds (default: container.timeout)
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> ContainerConfig:
        return cls(timeout=raw.get("timeout"), env=dict(raw.get("env", {})))

    def to_dict(self) -> dict:
        return {"timeout": self.timeout, "env": self.env}


@dataclass
class RegisteredGroup:
    name: str
    folder: str
    trigger: str  # "" → auto-respond to every message
    added_at: str
    container_config: ContainerConfig | None = None


@dataclass
class InboundMessage:
    """A platform event normalized into the single shape the router consumes."""

    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str  # ISO-8601, UTC
    is_from_me: bool = False


@dataclass
class ChatInfo:
    jid: str
    name: str
    last_message_time: str


@dataclass
class ScheduledTask:
    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str
    context_mode: Literal["group", "isolated"] = "isolated"
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: Literal["active", "paused", "completed"] = "active"
    created_at: str = ""

    def to_snapshot_dict(self) -> dict[str, str | None]:
        """Serialize to the dict format written into current_tasks.json."""
        return {
            "id": self.id,
            "groupFolder": self.group_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type,
            "schedule_value": self.schedule_value,
            "status": self.status,
            "next_run": self.next_run,
        }


@dataclass
class TaskRunLog:
    task_id: str
    run_at: str
    duration_ms: float
    status: Literal["success", "error"]
    result: str | None = None
    error: str | None = None


@dataclass
class ProcessedEmail:
    id: str
    thread_id: str
    sender: str
    subject: str
    processed_at: str
    responded: bool = False
    pending_reply: str | None = None  # agent reply awaiting a successful send


HostChangeStatus = Literal["pending", "approved", "denied", "applied", "failed"]


@dataclass
class HostModificationRequest:
    id: str
    group_folder: str
    chat_jid: str
    summary: str
    file_path: str
    timestamp: int  # ms since epoch
    status: HostChangeStatus = "pending"
    approved_by: str | None = None
    error: str | None = None


@dataclass
class AgentInput:
    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    is_scheduled_task: bool = False

    def to_dict(self) -> dict:
        return {
            "prompt": self.prompt,
            "sessionId": self.session_id,
            "groupFolder": self.group_folder,
            "chatJid": self.chat_jid,
            "isMain": self.is_main,
            "isScheduledTask": self.is_scheduled_task,
        }


@dataclass
class AgentOutput:
    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None


# --- Channel abstraction ---


@runtime_checkable
class Channel(Protocol):
    name: str

    async def connect(self) -> None: ...

    async def send_message(self, jid: str, text: str) -> None: ...

    def is_connected(self) -> bool: ...

    def owns_jid(self, jid: str) -> bool: ...

    async def disconnect(self) -> None: ...

    # Optional: typing indicator. set_typing(jid, is_typing) is NOT part of
    # the protocol; check with hasattr at call sites.

    # Optional: max_message_length (int). Defaults to DEFAULT_MAX_MESSAGE_LENGTH.

    # Optional: send_approval_prompt(jid, request) for interactive approve/deny
    # controls. Falls back to plain text when absent.

    # Optional: send_direct_message(user_id, text) for privileged DMs.

    # Optional: sync_group_metadata(force) refreshes chat names for discovery.


DEFAULT_MAX_MESSAGE_LENGTH = 4000
