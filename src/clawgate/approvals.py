"""Host-change approvals — human-gated requests to modify the host itself.

An agent asks for a host change by writing ``PENDING_HOST_CHANGES.md`` into
its group folder. The scanner turns that file into a request, announces it in
the group's chat and renames the file to ``PENDING_HOST_CHANGES.notified.md``.
A human answers with ``approve`` / ``deny`` (optionally ``approve hc-<id>``)
or with an interactive button.

State machine (one-way, never back to ``pending``)::

    pending ──► approved ──► applied
       │            └──────► failed
       └──────► denied

Requests live in process memory only. A restart forgets them; a
``.notified.md`` file left behind is not re-announced.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from clawgate.config import get_settings
from clawgate.errors import InvalidTransitionError
from clawgate.logger import logger
from clawgate.state import RouterState
from clawgate.types import Channel, HostChangeStatus, HostModificationRequest
from clawgate.utils import describe_failure, now_ms, run_command

PENDING_FILENAME = "PENDING_HOST_CHANGES.md"
NOTIFIED_FILENAME = "PENDING_HOST_CHANGES.notified.md"

APPROVE_ACTION_PREFIX = "hc_approve_"
DENY_ACTION_PREFIX = "hc_deny_"

_SUMMARY_MAX = 200
_APPLIED_PREVIEW_MAX = 500
_ERROR_PREVIEW_MAX = 300

_APPROVAL_RE = re.compile(r"^(approve|deny)(?:\s+(hc-\d+))?\s*$", re.IGNORECASE)
_SUMMARY_RE = re.compile(r"## Summary\s*\n([\s\S]*?)(?=\n## |\n---|\n?\Z)")

_TRANSITIONS: dict[HostChangeStatus, frozenset[HostChangeStatus]] = {
    "pending": frozenset({"approved", "denied"}),
    "approved": frozenset({"applied", "failed"}),
}

APPLY_INSTRUCTION = (
    "Apply the following host modification plan. Read the relevant source files "
    "first, then make the changes described. After applying, run the project's "
    "build or tests to verify."
)


class ApprovalNotifier(Protocol):
    async def send_text(self, jid: str, raw_text: str) -> bool: ...

    def channel_for(self, jid: str) -> Channel | None: ...


@dataclass
class ActionDecision:
    request_id: str
    approved: bool
    error: str | None = None  # user-facing reason the action can't be applied


def parse_summary(content: str) -> str:
    """The ``## Summary`` section, else the first non-heading line, truncated."""
    match = _SUMMARY_RE.search(content)
    if match and match.group(1).strip():
        return match.group(1).strip()[:_SUMMARY_MAX]
    for line in content.split("\n"):
        if line.strip() and not line.startswith("#"):
            return line.strip()[:_SUMMARY_MAX]
    return "No summary provided"


def transition(request: HostModificationRequest, target: HostChangeStatus) -> None:
    if target not in _TRANSITIONS.get(request.status, frozenset()):
        raise InvalidTransitionError(request.id, request.status, target)
    logger.debug("Host change transition", request_id=request.id, old=request.status, new=target)
    request.status = target


class HostChangeApprovals:
    def __init__(self, state: RouterState, notifier: ApprovalNotifier) -> None:
        self._state = state
        self._notifier = notifier
        self._requests: dict[str, HostModificationRequest] = {}
        self._running = False

    @property
    def requests(self) -> dict[str, HostModificationRequest]:
        return self._requests

    def pending_for_folder(self, folder: str) -> HostModificationRequest | None:
        return next(
            (
                r
                for r in self._requests.values()
                if r.group_folder == folder and r.status == "pending"
            ),
            None,
        )

    def _new_id(self) -> tuple[str, int]:
        ms = now_ms()
        while f"hc-{ms}" in self._requests:
            ms += 1
        return f"hc-{ms}", ms

    # --- Scanner ---

    async def start(self) -> None:
        if self._running:
            logger.debug("Host change scanner already running, skipping duplicate start")
            return
        self._running = True
        interval = get_settings().intervals.approval_scan
        logger.info("Host change scanner started")
        while self._running:
            try:
                await self.scan()
            except Exception:
                logger.exception("Error scanning for host changes")
            await asyncio.sleep(interval)

    def stop(self) -> None:
        self._running = False

    async def scan(self) -> list[HostModificationRequest]:
        """Announce every new plan file once. Returns the requests created."""
        groups_dir = get_settings().groups_dir
        try:
            folders = sorted(d.name for d in groups_dir.iterdir() if d.is_dir())
        except FileNotFoundError:
            return []

        created: list[HostModificationRequest] = []
        for folder in folders:
            pending_file = groups_dir / folder / PENDING_FILENAME
            if not pending_file.exists():
                continue
            if self.pending_for_folder(folder) is not None:
                continue

            found = self._state.group_for_folder(folder)
            if found is None:
                logger.warning("Host changes file found but no registered group", folder=folder)
                continue
            chat_jid = found[0]

            request_id, ms = self._new_id()
            request = HostModificationRequest(
                id=request_id,
                group_folder=folder,
                chat_jid=chat_jid,
                summary=parse_summary(pending_file.read_text(encoding="utf-8")),
                file_path=str(pending_file),
                timestamp=ms,
            )
            self._requests[request_id] = request
            logger.info("New host changes request found", id=request_id, folder=folder)

            await self._announce(request)

            notified = pending_file.with_name(NOTIFIED_FILENAME)
            pending_file.rename(notified)
            request.file_path = str(notified)
            created.append(request)
        return created

    async def _announce(self, request: HostModificationRequest) -> None:
        channel = self._notifier.channel_for(request.chat_jid)
        if channel is not None and hasattr(channel, "send_approval_prompt"):
            try:
                await channel.send_approval_prompt(request.chat_jid, request)
                return
            except Exception as exc:
                logger.error(
                    "Failed to send interactive approval request", id=request.id, err=str(exc)
                )
        await self._notifier.send_text(
            request.chat_jid,
            f"Host Changes Request ({request.id})\n"
            f"Group: {request.group_folder}\n"
            f"Summary: {request.summary}\n\n"
            'Reply "approve" or "deny"',
        )

    # --- Resolution ---

    def check_approval_message(self, content: str, chat_jid: str) -> tuple[str, bool] | None:
        """Map an ``approve``/``deny`` reply to ``(request_id, approved)``.

        An unqualified reply resolves to the newest pending request for the
        chat. Returns None when the text is not an approval or nothing is
        pending, so the message is routed normally.
        """
        match = _APPROVAL_RE.match(content.strip())
        if not match:
            return None
        approved = match.group(1).lower() == "approve"
        if match.group(2):
            return match.group(2), approved

        pending = [
            r for r in self._requests.values() if r.chat_jid == chat_jid and r.status == "pending"
        ]
        if not pending:
            return None
        latest = max(pending, key=lambda r: r.timestamp)
        return latest.id, approved

    def resolve_action(self, action_id: str) -> ActionDecision | None:
        """Decode an interactive button id. None when the id is not ours."""
        if action_id.startswith(APPROVE_ACTION_PREFIX):
            decision = ActionDecision(action_id[len(APPROVE_ACTION_PREFIX) :], True)
        elif action_id.startswith(DENY_ACTION_PREFIX):
            decision = ActionDecision(action_id[len(DENY_ACTION_PREFIX) :], False)
        else:
            return None

        request = self._requests.get(decision.request_id)
        if request is None:
            decision.error = "Unknown or expired request."
        elif request.status != "pending":
            decision.error = f"Request already {request.status}."
        return decision

    async def handle_interactive(self, action_id: str, user: str) -> str:
        """Resolve a button click and return the text to show the clicker."""
        decision = self.resolve_action(action_id)
        if decision is None:
            return "Unknown action."
        if decision.error:
            return decision.error
        await self.handle_approval(decision.request_id, decision.approved, user)
        status = self._requests[decision.request_id].status
        return f"{'Approved' if decision.approved else 'Denied'} by {user} ({status})"

    async def handle_approval(self, request_id: str, approved: bool, approved_by: str) -> None:
        request = self._requests.get(request_id)
        if request is None:
            logger.warning("Unknown host changes request", request_id=request_id)
            return
        if request.status != "pending":
            logger.warning(
                "Request already processed", request_id=request_id, status=request.status
            )
            return

        request.approved_by = approved_by
        if not approved:
            await self._deny(request)
            return

        transition(request, "approved")
        await self._notifier.send_text(
            request.chat_jid, f"Host changes request {request_id} approved. Applying..."
        )
        await self._apply(request)

    async def _deny(self, request: HostModificationRequest) -> None:
        transition(request, "denied")
        denied_path = self._record_path(request, "DENIED")
        try:
            Path(request.file_path).rename(denied_path)
            request.file_path = str(denied_path)
        except FileNotFoundError:
            logger.warning("Plan file already moved", request_id=request.id)
        await self._notifier.send_text(
            request.chat_jid, f"Host changes request {request.id} denied."
        )
        logger.info("Host changes denied", request_id=request.id, approved_by=request.approved_by)

    async def _apply(self, request: HostModificationRequest) -> None:
        s = get_settings()
        try:
            plan = Path(request.file_path).read_text(encoding="utf-8")
        except OSError as exc:
            await self._fail(request, f"Cannot read plan: {exc}")
            return

        result = await run_command(
            [*s.host_changes.apply_command, f"{APPLY_INSTRUCTION}\n\n{plan}"],
            cwd=s.groups_dir.parent,
            timeout_seconds=s.host_changes.timeout,
        )
        if not result.ok:
            await self._fail(request, describe_failure(result, label="Host change agent"))
            return

        transition(request, "applied")
        applied_path = self._record_path(request, "APPLIED")
        Path(request.file_path).rename(applied_path)
        request.file_path = str(applied_path)
        await self._notifier.send_text(
            request.chat_jid,
            f"Host changes {request.id} applied successfully.\n\n"
            f"{result.stdout[:_APPLIED_PREVIEW_MAX]}",
        )
        logger.info("Host changes applied", request_id=request.id, approved_by=request.approved_by)

    async def _fail(self, request: HostModificationRequest, error: str) -> None:
        transition(request, "failed")
        request.error = error
        await self._notifier.send_text(
            request.chat_jid,
            f"Host changes {request.id} failed to apply: {error[:_ERROR_PREVIEW_MAX]}",
        )
        logger.error("Failed to apply host changes", request_id=request.id, err=error)

    @staticmethod
    def _record_path(request: HostModificationRequest, outcome: str) -> Path:
        return (
            get_settings().groups_dir
            / request.group_folder
            / f"HOST_CHANGES_{outcome}_{now_ms()}.md"
        )
