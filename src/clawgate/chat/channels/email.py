"""Email channel — polls Gmail through the Gmail MCP server.

Gmail is reached through ``@gongrzhe/server-gmail-autoauth-mcp`` over stdio.
Each tool call spawns the server, runs one call and closes it; a server
kept alive across polls is not needed at these poll intervals.

Unlike the chat channels, email does not flow through the message store.
Each new email runs the agent directly in a per-context group folder and the
reply goes back as an email. A reply that fails to send is held as
``pending_reply`` and resent on the next poll without re-running the agent.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import TextContent

from clawgate import db
from clawgate.chat.formatter import format_email_prompt, strip_internal_tags
from clawgate.chat.normalizer import ChannelNormalizer
from clawgate.config import EmailConfig, get_settings
from clawgate.errors import AgentInvocationError, ChannelError
from clawgate.logger import logger
from clawgate.state import RouterState
from clawgate.types import RegisteredGroup
from clawgate.utils import now_iso

_ADDRESS_RE = re.compile(r"<(.+?)>")
_SENDER_KEY_STRIP_RE = re.compile(r"[^a-z0-9.@-]")


@dataclass
class EmailSummary:
    id: str
    subject: str = ""
    sender: str = ""
    date: str = ""


@dataclass
class EmailMessage:
    id: str
    thread_id: str
    sender: str
    subject: str
    body: str
    date: str


# ---------------------------------------------------------------------------
# MCP client
# ---------------------------------------------------------------------------


class GmailClient(Protocol):
    async def call(self, tool: str, arguments: dict[str, Any]) -> str: ...


class GmailMcpClient:
    """One-shot stdio MCP calls against the Gmail server."""

    def __init__(self, command: str, args: list[str], timeout: float = 20.0) -> None:
        self._params = StdioServerParameters(command=command, args=args)
        self._timeout = timeout

    @classmethod
    def from_settings(cls, cfg: EmailConfig) -> GmailMcpClient:
        return cls(cfg.mcp_command, list(cfg.mcp_args), cfg.mcp_timeout)

    async def call(self, tool: str, arguments: dict[str, Any]) -> str:
        """Run one tool call and return its first text content ("" if none).

        Raises ChannelError when the tool reports an error or the call does
        not finish within the timeout.
        """
        try:
            return await asyncio.wait_for(self._call(tool, arguments), timeout=self._timeout)
        except TimeoutError as exc:
            raise ChannelError(f"Gmail MCP call {tool} timed out") from exc

    async def _call(self, tool: str, arguments: dict[str, Any]) -> str:
        async with stdio_client(self._params) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                result = await session.call_tool(tool, arguments)

        text = next((c.text for c in result.content if isinstance(c, TextContent)), "")
        if result.isError:
            raise ChannelError(f"Gmail MCP {tool} failed: {text}")
        return text


# ---------------------------------------------------------------------------
# Parsing helpers for the plain-text responses of the Gmail MCP server
# ---------------------------------------------------------------------------


def _header_pairs(lines: list[str]):
    for line in lines:
        key, sep, val = line.partition(":")
        if sep:
            yield key.strip().lower(), val.strip()


def parse_search_results(text: str) -> list[EmailSummary]:
    """Parse ``search_emails`` output: blank-line separated header blocks.

    Blocks look like ``ID: ..`` / ``Subject: ..`` / ``From: ..`` / ``Date: ..``;
    blocks without an ID are skipped.
    """
    results: list[EmailSummary] = []
    for block in re.split(r"\n\s*\n", text):
        if not block.strip():
            continue
        summary = EmailSummary(id="")
        for key, val in _header_pairs(block.strip().split("\n")):
            if key == "id":
                summary.id = val
            elif key == "subject":
                summary.subject = val
            elif key == "from":
                summary.sender = val
            elif key == "date":
                summary.date = val
        if summary.id:
            results.append(summary)
    return results


def parse_read_email(text: str) -> dict[str, str]:
    """Parse ``read_email`` output: headers, a blank line, then the body."""
    headers, sep, body = text.partition("\n\n")
    parsed = {"thread_id": "", "sender": "", "subject": "", "date": "", "body": body if sep else ""}
    for key, val in _header_pairs(headers.split("\n")):
        if key == "thread id":
            parsed["thread_id"] = val
        elif key == "from":
            parsed["sender"] = val
        elif key == "subject":
            parsed["subject"] = val
        elif key == "date":
            parsed["date"] = val
    return parsed


def build_search_query(
    trigger_mode: Literal["label", "address", "subject"], trigger_value: str
) -> str:
    match trigger_mode:
        case "label":
            return f"label:{trigger_value} is:unread"
        case "address":
            return f"to:{trigger_value} is:unread"
        case "subject":
            return f'subject:"{trigger_value}" is:unread'
    raise ValueError(f"Unknown trigger mode: {trigger_mode}")


def extract_address(sender: str) -> str:
    """``"Jane <jane@example.com>"`` → ``"jane@example.com"``."""
    match = _ADDRESS_RE.search(sender)
    return match.group(1) if match else sender


def get_context_key(
    email: EmailMessage, context_mode: Literal["thread", "sender", "single"]
) -> str:
    """Group folder (and chat identity) an email's conversation lives in."""
    match context_mode:
        case "thread":
            return f"email-thread-{email.thread_id}"
        case "sender":
            addr = _SENDER_KEY_STRIP_RE.sub("", extract_address(email.sender).lower())
            return f"email-sender-{addr}"
        case "single":
            return "email-main"
    raise ValueError(f"Unknown context mode: {context_mode}")


def reply_subject(subject: str) -> str:
    return subject if subject.startswith("Re:") else f"Re: {subject}"


def _claude_md(sender_addr: str) -> str:
    return (
        f"# Email conversation with {sender_addr}\n\n"
        f"You are responding to emails from {sender_addr}. "
        "Your responses will be sent as email replies.\n\n"
        "## Guidelines\n\n"
        "- Be professional and clear\n"
        "- Keep responses concise but complete\n"
        "- Use proper email formatting\n"
        "- If the email requires action you cannot take, explain what the user should do\n"
    )


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


class EmailAgent(Protocol):
    @property
    def state(self) -> RouterState: ...

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        *,
        is_scheduled_task: bool = False,
        use_session: bool = True,
    ) -> str | None: ...


class EmailChannel:
    name = "email"

    def __init__(
        self,
        client: GmailClient,
        agent: EmailAgent,
        normalizer: ChannelNormalizer,
    ) -> None:
        self._client = client
        self._agent = agent
        self._normalizer = normalizer
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.debug("Email loop already running, skipping duplicate start")
            return
        cfg = get_settings().email
        self._running = True
        logger.info(
            "Email channel running",
            trigger_mode=cfg.trigger_mode,
            trigger_value=cfg.trigger_value,
        )
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Error in email loop")
            await asyncio.sleep(cfg.poll_interval)

    def stop(self) -> None:
        self._running = False

    async def poll_once(self) -> int:
        """Resend held replies, then handle new mail. Returns emails answered."""
        await self.resend_pending_replies()

        answered = 0
        for email in await self.check_for_new_emails():
            if await db.is_email_processed(email.id):
                continue
            record = await db.get_processed_email(email.id)
            if record is not None and record.pending_reply is not None:
                continue  # agent already answered; waiting on delivery
            if await self.handle_email(email):
                answered += 1
        return answered

    async def resend_pending_replies(self) -> None:
        for record in await db.get_unresponded_emails():
            assert record.pending_reply is not None
            logger.info("Resending held email reply", email_id=record.id)
            if await self.send_reply(
                record.sender, record.subject, record.pending_reply, record.thread_id, record.id
            ):
                await db.mark_email_responded(record.id)

    async def check_for_new_emails(self) -> list[EmailMessage]:
        cfg = get_settings().email
        query = build_search_query(cfg.trigger_mode, cfg.trigger_value)
        try:
            search_text = await self._client.call(
                "search_emails", {"query": query, "maxResults": cfg.max_results}
            )
        except Exception as exc:
            logger.error("Gmail search failed", err=str(exc))
            return []

        summaries = parse_search_results(search_text)
        if not summaries:
            return []
        logger.info("Gmail found new emails", count=len(summaries))

        emails: list[EmailMessage] = []
        for summary in summaries:
            try:
                parsed = parse_read_email(
                    await self._client.call("read_email", {"messageId": summary.id})
                )
            except Exception as exc:
                logger.error("Gmail read_email failed", id=summary.id, err=str(exc))
                continue
            emails.append(
                EmailMessage(
                    id=summary.id,
                    thread_id=parsed["thread_id"] or summary.id,
                    sender=parsed["sender"] or summary.sender,
                    subject=parsed["subject"] or summary.subject,
                    body=parsed["body"],
                    date=parsed["date"] or summary.date,
                )
            )
        return emails

    async def handle_email(self, email: EmailMessage) -> bool:
        """Run the agent for one email and deliver (or hold) its reply."""
        s = get_settings()
        logger.info("Processing email", sender=email.sender, subject=email.subject)
        await db.mark_email_processed(email.id, email.thread_id, email.sender, email.subject)

        context_key = get_context_key(email, s.email.context_mode)
        group_dir = s.groups_dir / context_key
        (group_dir / "logs").mkdir(parents=True, exist_ok=True)
        claude_md = group_dir / "CLAUDE.md"
        if not claude_md.exists():
            claude_md.write_text(_claude_md(extract_address(email.sender)))

        group = RegisteredGroup(
            name=f"Email: {email.sender}",
            folder=context_key,
            trigger="",
            added_at=now_iso(),
        )
        self._agent.state.register_transient_group(context_key, group)
        await self._normalizer.normalize_email(
            context_key=context_key,
            email_id=email.id,
            sender=email.sender,
            body=email.body,
            date=email.date,
        )

        prompt = format_email_prompt(email.sender, email.subject, email.body)
        try:
            response = await self._agent.run_agent(group, prompt, context_key)
        except AgentInvocationError as exc:
            logger.error("Email agent error", group=group.name, err=str(exc))
            return False

        reply = strip_internal_tags(response or "")
        if not reply:
            # Nothing to send; don't re-run the agent on the next poll
            logger.info("Email agent produced no reply", email_id=email.id)
            await db.mark_email_responded(email.id)
            return False

        if await self.send_reply(email.sender, email.subject, reply, email.thread_id, email.id):
            await db.mark_email_responded(email.id)
            return True
        await db.set_pending_reply(email.id, reply)
        return False

    async def send_reply(
        self,
        to: str,
        subject: str,
        body: str,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
    ) -> bool:
        """Send a reply through Gmail. Returns False (logged) on failure."""
        prefix = get_settings().email.reply_prefix
        addr = extract_address(to)
        args: dict[str, Any] = {
            "to": [addr],
            "subject": reply_subject(subject),
            "body": f"{prefix}{body}" if prefix else body,
        }
        if thread_id:
            args["threadId"] = thread_id
        if in_reply_to:
            args["inReplyTo"] = in_reply_to

        try:
            await self._client.call("send_email", args)
        except Exception as exc:
            logger.error("Failed to send email reply", to=addr, err=str(exc))
            return False
        logger.info("Email reply sent", to=addr, subject=args["subject"])
        return True
