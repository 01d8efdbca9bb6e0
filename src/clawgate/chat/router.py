"""Message router — the at-least-once delivery loop.

Each cycle fetches messages newer than the global watermark across all
registered chats, decides each one in timestamp order and advances the
watermark only past decided messages. An agent failure stops the batch
without advancing anything, so the failed message (and every message after
it) is fetched again next cycle and its missed context rebuilt.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from clawgate import db
from clawgate.agent_runner import AgentRunner, write_groups_snapshot, write_tasks_snapshot
from clawgate.chat.authorization import eligible_group, is_privileged_folder
from clawgate.chat.formatter import format_messages, split_text, strip_internal_tags
from clawgate.chat.typing import TypingManager
from clawgate.config import get_settings
from clawgate.errors import AgentInvocationError
from clawgate.logger import logger
from clawgate.state import RouterState
from clawgate.types import (
    DEFAULT_MAX_MESSAGE_LENGTH,
    AgentInput,
    Channel,
    InboundMessage,
    RegisteredGroup,
)


class ApprovalGate(Protocol):
    """The slice of the host-change approval flow the router needs."""

    def check_approval_message(self, content: str, chat_jid: str) -> tuple[str, bool] | None: ...

    async def handle_approval(self, request_id: str, approved: bool, approved_by: str) -> None: ...


class MessageRouter:
    def __init__(
        self,
        state: RouterState,
        runner: AgentRunner,
        channels: list[Channel],
        typing: TypingManager | None = None,
        approvals: ApprovalGate | None = None,
    ) -> None:
        self._state = state
        self._runner = runner
        self._channels = channels
        self._typing = typing or TypingManager(lambda: self._channels)
        self.approvals = approvals
        self._running = False

    @property
    def state(self) -> RouterState:
        return self._state

    @property
    def channels(self) -> list[Channel]:
        return self._channels

    # --- Delivery loop ---

    async def start(self) -> None:
        """Poll for new messages until stopped. Safe to call more than once."""
        if self._running:
            logger.debug("Message loop already running, skipping duplicate start")
            return
        self._running = True
        s = get_settings()
        logger.info("Message loop started", assistant=s.agent.name)

        while self._running:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Error in message loop")
            await asyncio.sleep(s.intervals.message_poll)

    def stop(self) -> None:
        self._running = False

    async def run_cycle(self) -> int:
        """Run one fetch-and-decide pass. Returns the number of decided messages."""
        s = get_settings()
        jids = list(self._state.registered_groups)
        messages = await db.get_new_messages(
            jids, self._state.last_timestamp, s.agent.name, limit=s.router.batch_size
        )
        if messages:
            logger.info("New messages", count=len(messages))

        decided = 0
        for msg in messages:
            try:
                await self.process_message(msg)
            except AgentInvocationError as exc:
                logger.error(
                    "Agent failed, will retry next cycle",
                    chat_jid=msg.chat_jid,
                    message_id=msg.id,
                    err=str(exc),
                )
                break
            except Exception:
                logger.exception(
                    "Error processing message, will retry next cycle",
                    chat_jid=msg.chat_jid,
                    message_id=msg.id,
                )
                break
            await self._state.advance_global(msg.timestamp)
            decided += 1
        return decided

    async def process_message(self, msg: InboundMessage) -> bool:
        """Decide one message. Returns True when it was acted on.

        Raises AgentInvocationError when the agent fails; the caller must
        not advance the watermark past ``msg`` in that case.
        """
        if msg.chat_jid not in self._state.registered_groups:
            return False

        # Approval replies are intercepted before the trigger check
        if self.approvals is not None:
            decision = self.approvals.check_approval_message(msg.content, msg.chat_jid)
            if decision is not None:
                request_id, approved = decision
                await self.approvals.handle_approval(request_id, approved, msg.sender_name)
                return True

        group = eligible_group(self._state.registered_groups, msg)
        if group is None:
            return False

        missed = await db.get_messages_since(
            msg.chat_jid, self._state.agent_timestamp(msg.chat_jid), get_settings().agent.name
        )
        if not missed:
            return False

        logger.info("Processing message", group=group.name, message_count=len(missed))
        await self._typing.set_typing(msg.chat_jid, True)
        try:
            result = await self.run_agent(group, format_messages(missed), msg.chat_jid)
        finally:
            await self._typing.set_typing(msg.chat_jid, False)

        await self._state.advance_agent(msg.chat_jid, msg.timestamp)
        if result:
            await self.send_text(msg.chat_jid, result)
        return True

    # --- Agent invocation ---

    async def run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        *,
        is_scheduled_task: bool = False,
        use_session: bool = True,
    ) -> str | None:
        """Run one agent turn and persist any new session token.

        Raises AgentInvocationError on any failure.
        """
        s = get_settings()
        is_main = is_privileged_folder(group.folder, s.router.main_group_folder)

        tasks = await db.get_all_tasks()
        write_tasks_snapshot(group.folder, is_main, [t.to_snapshot_dict() for t in tasks])
        chats = await db.get_all_chats()
        write_groups_snapshot(
            group.folder,
            is_main,
            [{"jid": c.jid, "name": c.name, "lastActivity": c.last_message_time} for c in chats],
            set(self._state.registered_groups),
        )

        agent_input = AgentInput(
            prompt=prompt,
            session_id=self._state.session_for(group.folder) if use_session else None,
            group_folder=group.folder,
            chat_jid=chat_jid,
            is_main=is_main,
            is_scheduled_task=is_scheduled_task,
        )
        try:
            output = await self._runner.run(group, agent_input)
        except Exception as exc:
            raise AgentInvocationError(f"Agent runner raised: {exc}") from exc

        if output.new_session_id and use_session:
            await self._state.set_session(group.folder, output.new_session_id)

        if output.status == "error":
            raise AgentInvocationError(output.error or "Agent returned an error")
        return output.result

    # --- Outbound ---

    def channel_for(self, jid: str) -> Channel | None:
        return next((c for c in self._channels if c.owns_jid(jid) and c.is_connected()), None)

    async def send_text(self, jid: str, raw_text: str) -> bool:
        """Send agent text to a chat, chunked to the channel's size limit.

        Returns False when nothing was delivered. Send failures are logged and
        swallowed.
        """
        text = strip_internal_tags(raw_text)
        if not text:
            return False

        channel = self.channel_for(jid)
        if channel is None:
            logger.warning("No connected channel for chat, dropping reply", jid=jid)
            return False

        if getattr(channel, "prefix_assistant_name", True):
            text = f"{get_settings().agent.name}: {text}"
        max_len = getattr(channel, "max_message_length", DEFAULT_MAX_MESSAGE_LENGTH)

        try:
            for chunk in split_text(text, max_len):
                await channel.send_message(jid, chunk)
        except Exception as exc:
            logger.warning("Failed to send message", channel=channel.name, jid=jid, err=str(exc))
            return False
        return True
