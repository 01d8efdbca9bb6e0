"""Tests for host-change approvals: scanning, replies, buttons and apply."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from conftest import make_group

from clawgate.approvals import (
    NOTIFIED_FILENAME,
    PENDING_FILENAME,
    HostChangeApprovals,
    parse_summary,
    transition,
)
from clawgate.errors import InvalidTransitionError
from clawgate.state import RouterState
from clawgate.types import HostModificationRequest
from clawgate.utils import ProcessResult

PLAN = "# Plan\n\n## Summary\nAdd a cron job for backups\n\n## Details\nEdit crontab.\n"


class FakeNotifier:
    def __init__(self, channel=None):
        self.sent: list[tuple[str, str]] = []
        self._channel = channel

    async def send_text(self, jid: str, raw_text: str) -> bool:
        self.sent.append((jid, raw_text))
        return True

    def channel_for(self, jid: str):
        return self._channel


class ButtonChannel:
    name = "slack"

    def __init__(self, fail: bool = False):
        self.prompts: list[tuple[str, HostModificationRequest]] = []
        self._fail = fail

    async def send_approval_prompt(self, jid: str, request: HostModificationRequest) -> None:
        if self._fail:
            raise ConnectionError("blocks rejected")
        self.prompts.append((jid, request))


@pytest.fixture
def state():
    s = RouterState()
    s.registered_groups["team@g.us"] = make_group("team")
    return s


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def approvals(state, notifier, dirs):
    return HostChangeApprovals(state, notifier)


def _write_plan(dirs, folder: str = "team", content: str = PLAN):
    group_dir = dirs.groups_dir / folder
    group_dir.mkdir(parents=True, exist_ok=True)
    path = group_dir / PENDING_FILENAME
    path.write_text(content)
    return path


def _ok(stdout: str = "Done.") -> ProcessResult:
    return ProcessResult(returncode=0, stdout=stdout, stderr="")


class TestParseSummary:
    def test_summary_section(self):
        assert parse_summary(PLAN) == "Add a cron job for backups"

    def test_summary_until_rule(self):
        assert parse_summary("## Summary\nline one\n---\nrest") == "line one"

    def test_falls_back_to_first_plain_line(self):
        assert parse_summary("# Title\n\nJust do it\nmore") == "Just do it"

    def test_truncated(self):
        assert len(parse_summary("## Summary\n" + "x" * 500)) == 200

    def test_empty(self):
        assert parse_summary("# Only heading\n") == "No summary provided"


class TestTransition:
    def _req(self, status="pending"):
        return HostModificationRequest(
            id="hc-1", group_folder="g", chat_jid="j", summary="s", file_path="f", timestamp=1,
            status=status,
        )

    def test_allowed(self):
        req = self._req()
        transition(req, "approved")
        transition(req, "applied")
        assert req.status == "applied"

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("pending", "applied"),
            ("denied", "pending"),
            ("applied", "failed"),
            ("failed", "approved"),
        ],
    )
    def test_forbidden(self, current, target):
        with pytest.raises(InvalidTransitionError):
            transition(self._req(current), target)


class TestScan:
    async def test_announces_and_renames(self, approvals, notifier, dirs):
        path = _write_plan(dirs)

        [request] = await approvals.scan()

        assert request.id.startswith("hc-")
        assert request.chat_jid == "team@g.us"
        assert request.summary == "Add a cron job for backups"
        assert not path.exists()
        assert (dirs.groups_dir / "team" / NOTIFIED_FILENAME).exists()
        [(jid, text)] = notifier.sent
        assert jid == "team@g.us"
        assert f"Host Changes Request ({request.id})" in text
        assert 'Reply "approve" or "deny"' in text

    async def test_announced_only_once(self, approvals, notifier, dirs):
        _write_plan(dirs)
        await approvals.scan()
        assert await approvals.scan() == []
        assert len(notifier.sent) == 1

    async def test_new_plan_while_pending_waits(self, approvals, notifier, dirs):
        _write_plan(dirs)
        await approvals.scan()
        _write_plan(dirs)

        assert await approvals.scan() == []
        assert (dirs.groups_dir / "team" / PENDING_FILENAME).exists()

    async def test_unregistered_folder_skipped(self, approvals, notifier, dirs):
        path = _write_plan(dirs, folder="stranger")
        assert await approvals.scan() == []
        assert path.exists()
        assert notifier.sent == []

    async def test_missing_groups_dir(self, approvals):
        assert await approvals.scan() == []

    async def test_interactive_prompt_preferred(self, state, dirs):
        channel = ButtonChannel()
        notifier = FakeNotifier(channel)
        approvals = HostChangeApprovals(state, notifier)
        _write_plan(dirs)

        [request] = await approvals.scan()
        assert channel.prompts == [("team@g.us", request)]
        assert notifier.sent == []

    async def test_interactive_failure_falls_back_to_text(self, state, dirs):
        notifier = FakeNotifier(ButtonChannel(fail=True))
        approvals = HostChangeApprovals(state, notifier)
        _write_plan(dirs)

        await approvals.scan()
        assert len(notifier.sent) == 1


class TestCheckApprovalMessage:
    async def test_unqualified_resolves_latest_pending(self, approvals, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()

        assert approvals.check_approval_message("Approve", "team@g.us") == (request.id, True)
        assert approvals.check_approval_message(" deny ", "team@g.us") == (request.id, False)

    async def test_explicit_id(self, approvals):
        assert approvals.check_approval_message("approve hc-123", "x@g.us") == ("hc-123", True)

    async def test_nothing_pending(self, approvals):
        assert approvals.check_approval_message("approve", "team@g.us") is None

    async def test_ordinary_text(self, approvals, dirs):
        _write_plan(dirs)
        await approvals.scan()
        assert approvals.check_approval_message("approve the PR please", "team@g.us") is None

    async def test_other_chat_not_matched(self, approvals, dirs):
        _write_plan(dirs)
        await approvals.scan()
        assert approvals.check_approval_message("approve", "other@g.us") is None


class TestHandleApproval:
    async def test_deny(self, approvals, notifier, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()

        await approvals.handle_approval(request.id, False, "Alice")

        assert request.status == "denied"
        assert request.approved_by == "Alice"
        assert notifier.sent[-1] == ("team@g.us", f"Host changes request {request.id} denied.")
        denied = list((dirs.groups_dir / "team").glob("HOST_CHANGES_DENIED_*.md"))
        assert len(denied) == 1
        assert not (dirs.groups_dir / "team" / NOTIFIED_FILENAME).exists()

    async def test_approve_applies(self, approvals, notifier, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()

        run = AsyncMock(return_value=_ok("All good"))
        with patch("clawgate.approvals.run_command", run):
            await approvals.handle_approval(request.id, True, "Alice")

        assert request.status == "applied"
        argv = run.call_args.args[0]
        assert argv[:2] == ["claude", "--print"]
        assert "Add a cron job for backups" in argv[-1]
        assert notifier.sent[1][1].endswith("approved. Applying...")
        assert "applied successfully" in notifier.sent[2][1]
        assert "All good" in notifier.sent[2][1]
        assert list((dirs.groups_dir / "team").glob("HOST_CHANGES_APPLIED_*.md"))

    async def test_apply_failure(self, approvals, notifier, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()
        failed = ProcessResult(returncode=1, stdout="", stderr="permission denied")

        with patch("clawgate.approvals.run_command", AsyncMock(return_value=failed)):
            await approvals.handle_approval(request.id, True, "Alice")

        assert request.status == "failed"
        assert request.error == "permission denied"
        assert "failed to apply: permission denied" in notifier.sent[-1][1]

    async def test_apply_timeout(self, approvals, notifier, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()
        timed_out = ProcessResult(returncode=None, stdout="", stderr="", timed_out=True)

        with patch("clawgate.approvals.run_command", AsyncMock(return_value=timed_out)):
            await approvals.handle_approval(request.id, True, "Alice")

        assert request.status == "failed"
        assert "timed out" in request.error

    async def test_second_decision_ignored(self, approvals, notifier, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()
        await approvals.handle_approval(request.id, False, "Alice")
        sent_before = len(notifier.sent)

        await approvals.handle_approval(request.id, True, "Bob")
        assert request.status == "denied"
        assert len(notifier.sent) == sent_before

    async def test_unknown_request(self, approvals, notifier):
        await approvals.handle_approval("hc-404", True, "Alice")
        assert notifier.sent == []

    async def test_new_plan_announced_after_decision(self, approvals, notifier, dirs):
        _write_plan(dirs)
        [first] = await approvals.scan()
        await approvals.handle_approval(first.id, False, "Alice")

        _write_plan(dirs)
        [second] = await approvals.scan()
        assert second.id != first.id


class TestInteractive:
    async def test_button_approves(self, approvals, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()

        with patch("clawgate.approvals.run_command", AsyncMock(return_value=_ok())):
            reply = await approvals.handle_interactive(f"hc_approve_{request.id}", "alice")

        assert reply == "Approved by alice (applied)"

    async def test_button_denies(self, approvals, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()
        reply = await approvals.handle_interactive(f"hc_deny_{request.id}", "bob")
        assert reply == "Denied by bob (denied)"

    async def test_stale_button(self, approvals, dirs):
        _write_plan(dirs)
        [request] = await approvals.scan()
        await approvals.handle_interactive(f"hc_deny_{request.id}", "bob")

        reply = await approvals.handle_interactive(f"hc_approve_{request.id}", "alice")
        assert reply == "Request already denied."
        assert request.status == "denied"

    async def test_unknown_request(self, approvals):
        assert await approvals.handle_interactive("hc_approve_hc-1", "a") == (
            "Unknown or expired request."
        )

    async def test_foreign_action(self, approvals):
        assert approvals.resolve_action("something_else") is None
        assert await approvals.handle_interactive("something_else", "a") == "Unknown action."
