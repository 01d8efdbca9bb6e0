"""Tests for IPC command parsing."""

from __future__ import annotations

import pytest

from clawgate.errors import IpcValidationError
from clawgate.ipc.commands import (
    DirectMessage,
    RegisterGroup,
    ScheduleTask,
    SendMessage,
    TypingIndicator,
    parse_command,
)


class TestParseCommand:
    def test_message(self):
        cmd = parse_command({"type": "message", "chatJid": "a@g.us", "text": "hi"}, "messages")
        assert isinstance(cmd, SendMessage)
        assert cmd.chat_jid == "a@g.us"

    def test_typing_default_duration(self):
        cmd = parse_command({"type": "typing_indicator", "chatJid": "a@g.us"}, "messages")
        assert isinstance(cmd, TypingIndicator)
        assert cmd.duration == 5000

    @pytest.mark.parametrize(("duration", "expected"), [(600_000, 120_000), (0, 5000), (-5, 5000)])
    def test_typing_duration_clamped(self, duration, expected):
        cmd = parse_command(
            {"type": "typing_indicator", "chatJid": "a@g.us", "duration": duration}, "messages"
        )
        assert cmd.duration == expected

    @pytest.mark.parametrize("request_id", ["../../escaped", "a/b", "r 1", ""])
    def test_unsafe_request_id_rejected(self, request_id):
        with pytest.raises(IpcValidationError):
            parse_command(
                {"type": "pause_task", "taskId": "t1", "requestId": request_id}, "tasks"
            )

    def test_schedule_task_ignores_identity_claims(self):
        cmd = parse_command(
            {
                "type": "schedule_task",
                "prompt": "p",
                "schedule_type": "cron",
                "schedule_value": "0 9 * * *",
                "chatJid": "someone-else@g.us",
                "requestId": "r1",
            },
            "tasks",
        )
        assert isinstance(cmd, ScheduleTask)
        assert cmd.request_id == "r1"
        assert cmd.group_folder is None
        assert not hasattr(cmd, "chat_jid")

    def test_unknown_context_mode_falls_back_to_isolated(self):
        cmd = parse_command(
            {
                "type": "schedule_task",
                "prompt": "p",
                "schedule_type": "interval",
                "schedule_value": "60000",
                "context_mode": "shared",
            },
            "tasks",
        )
        assert cmd.context_mode == "isolated"

    def test_register_group(self):
        cmd = parse_command(
            {
                "type": "register_group",
                "jid": "new@g.us",
                "name": "New",
                "folder": "new-group",
                "containerConfig": {"timeout": 60},
            },
            "tasks",
        )
        assert isinstance(cmd, RegisterGroup)
        assert cmd.container_config == {"timeout": 60}

    def test_direct_message(self):
        cmd = parse_command({"type": "direct_message", "userId": "U1", "text": "hi"}, "tasks")
        assert isinstance(cmd, DirectMessage)
        assert cmd.user_id == "U1"

    @pytest.mark.parametrize("folder", ["../escape", "", "with space", "-leading"])
    def test_register_group_rejects_bad_folder(self, folder):
        with pytest.raises(IpcValidationError):
            parse_command(
                {"type": "register_group", "jid": "j", "name": "n", "folder": folder}, "tasks"
            )

    def test_unknown_type(self):
        with pytest.raises(IpcValidationError, match="Invalid self_destruct"):
            parse_command({"type": "self_destruct"}, "tasks")

    def test_missing_type(self):
        with pytest.raises(IpcValidationError, match="<missing>"):
            parse_command({"text": "hi"}, "messages")

    def test_missing_required_field(self):
        with pytest.raises(IpcValidationError):
            parse_command({"type": "message", "chatJid": "a@g.us"}, "messages")

    def test_task_command_in_messages_box(self):
        with pytest.raises(IpcValidationError, match="not accepted in messages/"):
            parse_command({"type": "pause_task", "taskId": "t1"}, "messages")

    def test_message_in_tasks_box(self):
        with pytest.raises(IpcValidationError, match="not accepted in tasks/"):
            parse_command({"type": "message", "chatJid": "a@g.us", "text": "hi"}, "tasks")
