"""IPC command handlers.

Authorization is decided from the source folder (the mailbox the command
was read from) and registry state only. A handler raises
IpcAuthorizationError when the source may not act on the target; the
watcher logs it, drops the file and never retries. Commands that are
authorized but cannot be carried out (unknown task, bad schedule) return a
failed ``IpcResult``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from clawgate import db
from clawgate.agent_runner import write_groups_snapshot
from clawgate.chat.authorization import can_act_on, folder_for_jid, resolve_chat_jid
from clawgate.config import get_settings
from clawgate.errors import ChannelError, IpcAuthorizationError
from clawgate.ipc.commands import (
    CancelTask,
    DirectMessage,
    IpcCommand,
    PauseTask,
    RefreshGroups,
    RegisterGroup,
    ResumeTask,
    ScheduleTask,
    SendMessage,
    TypingIndicator,
)
from clawgate.logger import logger
from clawgate.state import RouterState
from clawgate.types import ContainerConfig, RegisteredGroup, ScheduledTask
from clawgate.utils import compute_next_run, generate_id, now_iso, parse_once_timestamp


class IpcDeps(Protocol):
    """Host services the IPC handlers call into."""

    @property
    def state(self) -> RouterState: ...

    async def send_text(self, jid: str, text: str) -> bool: ...

    def start_typing(self, jid: str, duration: float) -> None: ...

    async def sync_group_metadata(self, force: bool) -> None: ...

    async def send_direct_message(self, user_id: str, text: str) -> None: ...


@dataclass
class IpcResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_response(self, request_id: str) -> dict[str, Any]:
        return {
            "requestId": request_id,
            "success": self.success,
            "message": self.message,
            **self.data,
        }


def _require_privileged(command: str, source_group: str, is_privileged: bool) -> None:
    if not is_privileged:
        raise IpcAuthorizationError(command, source_group, "privileged group only")


async def handle_command(
    cmd: IpcCommand, source_group: str, is_privileged: bool, deps: IpcDeps
) -> IpcResult:
    match cmd:
        case SendMessage():
            return await _handle_send_message(cmd, source_group, is_privileged, deps)
        case TypingIndicator():
            return _handle_typing(cmd, source_group, is_privileged, deps)
        case ScheduleTask():
            return await _handle_schedule_task(cmd, source_group, is_privileged, deps)
        case PauseTask():
            return await _authorized_task_action(
                cmd.task_id, source_group, is_privileged, "pause_task",
                lambda tid: db.update_task(tid, {"status": "paused"}),
            )
        case ResumeTask():
            return await _authorized_task_action(
                cmd.task_id, source_group, is_privileged, "resume_task",
                lambda tid: db.update_task(tid, {"status": "active"}),
            )
        case CancelTask():
            return await _authorized_task_action(
                cmd.task_id, source_group, is_privileged, "cancel_task", db.delete_task,
            )
        case RegisterGroup():
            _require_privileged("register_group", source_group, is_privileged)
            return await _handle_register_group(cmd, deps)
        case RefreshGroups():
            _require_privileged("refresh_groups", source_group, is_privileged)
            return await _handle_refresh_groups(source_group, deps)
        case DirectMessage():
            _require_privileged("direct_message", source_group, is_privileged)
            return await _handle_direct_message(cmd, source_group, deps)
    raise AssertionError(f"unhandled command {cmd!r}")


def _check_chat_target(
    command: str, jid: str, source_group: str, is_privileged: bool, deps: IpcDeps
) -> None:
    target_folder = folder_for_jid(deps.state.registered_groups, jid)
    if is_privileged or (target_folder is not None and target_folder == source_group):
        return
    raise IpcAuthorizationError(command, source_group, f"target chat {jid}")


async def _handle_send_message(
    cmd: SendMessage, source_group: str, is_privileged: bool, deps: IpcDeps
) -> IpcResult:
    _check_chat_target("message", cmd.chat_jid, source_group, is_privileged, deps)
    delivered = await deps.send_text(cmd.chat_jid, cmd.text)
    logger.info("IPC message sent", chat_jid=cmd.chat_jid, source_group=source_group)
    return IpcResult(delivered, "Message sent" if delivered else "Message not delivered")


def _handle_typing(
    cmd: TypingIndicator, source_group: str, is_privileged: bool, deps: IpcDeps
) -> IpcResult:
    _check_chat_target("typing_indicator", cmd.chat_jid, source_group, is_privileged, deps)
    deps.start_typing(cmd.chat_jid, cmd.duration / 1000)
    return IpcResult(True, "Typing started")


async def _handle_schedule_task(
    cmd: ScheduleTask, source_group: str, is_privileged: bool, deps: IpcDeps
) -> IpcResult:
    target_folder = cmd.group_folder or source_group
    if not can_act_on(source_group, target_folder, is_privileged):
        raise IpcAuthorizationError("schedule_task", source_group, f"target folder {target_folder}")

    # Delivery target comes from the registry, never from the payload
    target_jid = resolve_chat_jid(deps.state.registered_groups, target_folder)
    if target_jid is None:
        logger.warning(
            "Cannot schedule task: target group not registered", target_folder=target_folder
        )
        return IpcResult(False, f"Group {target_folder} is not registered")

    try:
        if cmd.schedule_type == "once":
            next_run = parse_once_timestamp(cmd.schedule_value)
        else:
            next_run = compute_next_run(
                cmd.schedule_type, cmd.schedule_value, get_settings().timezone
            )
    except (ValueError, KeyError) as exc:
        logger.warning(
            "Invalid schedule",
            schedule_type=cmd.schedule_type,
            schedule_value=cmd.schedule_value,
            err=str(exc),
        )
        return IpcResult(False, f"Invalid {cmd.schedule_type} schedule: {exc}")

    task_id = generate_id("task", with_suffix=True)
    await db.create_task(
        ScheduledTask(
            id=task_id,
            group_folder=target_folder,
            chat_jid=target_jid,
            prompt=cmd.prompt,
            schedule_type=cmd.schedule_type,
            schedule_value=cmd.schedule_value,
            context_mode=cmd.context_mode,
            next_run=next_run,
            status="active",
            created_at=now_iso(),
        )
    )
    logger.info(
        "Task created via IPC",
        task_id=task_id,
        source_group=source_group,
        target_folder=target_folder,
        context_mode=cmd.context_mode,
    )
    return IpcResult(True, "Task scheduled", {"taskId": task_id, "nextRun": next_run})


async def _authorized_task_action(
    task_id: str,
    source_group: str,
    is_privileged: bool,
    command: str,
    action,
) -> IpcResult:
    task = await db.get_task_by_id(task_id)
    if task is None:
        logger.warning("Task not found", task_id=task_id, command=command)
        return IpcResult(False, f"Task {task_id} not found")
    if not can_act_on(source_group, task.group_folder, is_privileged):
        raise IpcAuthorizationError(command, source_group, f"task {task_id}")
    await action(task_id)
    logger.info("Task updated via IPC", task_id=task_id, command=command, source_group=source_group)
    return IpcResult(True, f"{command} applied to {task_id}")


async def _handle_register_group(cmd: RegisterGroup, deps: IpcDeps) -> IpcResult:
    existing = deps.state.group_for_folder(cmd.folder)
    if existing is not None and existing[0] != cmd.jid:
        return IpcResult(False, f"Folder {cmd.folder} already belongs to {existing[0]}")

    group = RegisteredGroup(
        name=cmd.name,
        folder=cmd.folder,
        trigger=cmd.trigger,
        added_at=now_iso(),
        container_config=(
            ContainerConfig.from_dict(cmd.container_config) if cmd.container_config else None
        ),
    )
    (get_settings().groups_dir / cmd.folder / "logs").mkdir(parents=True, exist_ok=True)
    await deps.state.register_group(cmd.jid, group)
    return IpcResult(True, f"Registered {cmd.name}")


async def _handle_direct_message(
    cmd: DirectMessage, source_group: str, deps: IpcDeps
) -> IpcResult:
    try:
        await deps.send_direct_message(cmd.user_id, cmd.text)
    except ChannelError as exc:
        logger.warning("IPC direct message failed", user_id=cmd.user_id, err=str(exc))
        return IpcResult(False, str(exc))
    logger.info("IPC direct message sent", user_id=cmd.user_id, source_group=source_group)
    return IpcResult(True, "Direct message sent")


async def _handle_refresh_groups(source_group: str, deps: IpcDeps) -> IpcResult:
    logger.info("Group metadata refresh requested via IPC", source_group=source_group)
    await deps.sync_group_metadata(True)
    chats = await db.get_all_chats()
    write_groups_snapshot(
        source_group,
        True,
        [{"jid": c.jid, "name": c.name, "lastActivity": c.last_message_time} for c in chats],
        set(deps.state.registered_groups),
    )
    return IpcResult(True, "Groups refreshed", {"count": len(chats)})
