"""Slack channel — Socket Mode via slack_bolt.

Channels are identified as ``slack:<CHANNEL_ID>`` and direct messages as
``slack:<USER_ID>``, so a DM keeps its identity even if Slack reopens the IM
under a new channel id. A first DM from a user auto-registers a group for
them (folder ``slack-dm-<user>``, no trigger).

Host-change approval prompts are posted with Approve / Deny buttons; clicks
are resolved through the context's ``on_interactive`` callback.

Activation: set ``slack.bot_token`` and ``slack.app_token`` (or
``SLACK__BOT_TOKEN`` / ``SLACK__APP_TOKEN``).
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

import pluggy

from clawgate.approvals import APPROVE_ACTION_PREFIX, DENY_ACTION_PREFIX
from clawgate.chat.normalizer import SLACK_PREFIX, ChannelNormalizer
from clawgate.config import get_settings
from clawgate.logger import logger
from clawgate.state import RouterState
from clawgate.types import HostModificationRequest, InboundMessage, RegisteredGroup
from clawgate.utils import now_iso

hookimpl = pluggy.HookimplMarker("clawgate")

SLACK_MAX_MESSAGE_LENGTH = 3000  # section block limit
_ACTION_RE = re.compile(rf"^({APPROVE_ACTION_PREFIX}|{DENY_ACTION_PREFIX})")

InteractiveHandler = Callable[[str, str], Awaitable[str]]


def _channel_id_from_jid(jid: str) -> str:
    return jid.removeprefix(SLACK_PREFIX)


def dm_folder(user_id: str) -> str:
    return f"slack-dm-{user_id.lower()}"


def build_approval_blocks(request: HostModificationRequest) -> list[dict[str, Any]]:
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"*Host Changes Request* `{request.id}`\n"
                    f"*Group:* {request.group_folder}\n"
                    f"*Summary:* {request.summary}"
                ),
            },
        },
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Approve"},
                    "style": "primary",
                    "action_id": f"{APPROVE_ACTION_PREFIX}{request.id}",
                    "value": request.id,
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Deny"},
                    "style": "danger",
                    "action_id": f"{DENY_ACTION_PREFIX}{request.id}",
                    "value": request.id,
                },
            ],
        },
    ]


class SlackChannel:
    """``Channel`` protocol implementation backed by Slack Socket Mode."""

    name = "slack"
    prefix_assistant_name = False  # Slack shows the bot username already
    max_message_length = SLACK_MAX_MESSAGE_LENGTH

    def __init__(
        self,
        bot_token: str,
        app_token: str,
        normalizer: ChannelNormalizer,
        state: RouterState,
        on_message: Callable[[InboundMessage], Awaitable[None]],
        on_interactive: InteractiveHandler | None = None,
    ) -> None:
        self._bot_token = bot_token
        self._app_token = app_token
        self._normalizer = normalizer
        self._state = state
        self._on_message = on_message
        self._on_interactive = on_interactive
        self._connected = False
        self._shutting_down = False

        # Lazy-initialised in connect()
        self._app: Any = None
        self._handler: Any = None
        self._handler_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._bot_user_id = ""
        # Slack fires both `message` and `app_mention` for one @mention
        self._seen_ts: dict[str, float] = {}
        self._seen_ts_max = 500
        self._user_names: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Channel protocol
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
        from slack_bolt.async_app import AsyncApp

        self._app = AsyncApp(token=self._bot_token)
        try:
            auth = await self._app.client.auth_test()
            self._bot_user_id = auth.get("user_id", "")
        except Exception:
            logger.warning("Failed to resolve bot user ID (mention rewriting disabled)")

        self._register_handlers()
        self._handler = AsyncSocketModeHandler(self._app, self._app_token)
        self._handler_task = asyncio.create_task(
            self._handler.start_async(), name="slack-socket-mode"
        )
        self._handler_task.add_done_callback(self._on_handler_done)
        self._connected = True
        logger.info("Slack channel connected (Socket Mode)", bot_user_id=self._bot_user_id)

    async def send_message(self, jid: str, text: str) -> None:
        if not self._app or not self.owns_jid(jid):
            return
        await self._app.client.chat_postMessage(channel=_channel_id_from_jid(jid), text=text)

    def is_connected(self) -> bool:
        return self._connected and self._handler_task is not None and not self._handler_task.done()

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(SLACK_PREFIX)

    async def disconnect(self) -> None:
        self._shutting_down = True
        self._connected = False
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._handler:
            with contextlib.suppress(Exception):
                await self._handler.close_async()
        if self._handler_task and not self._handler_task.done():
            self._handler_task.cancel()
        logger.info("Slack channel disconnected")

    # ------------------------------------------------------------------
    # Optional protocol extensions
    # ------------------------------------------------------------------

    async def send_approval_prompt(self, jid: str, request: HostModificationRequest) -> None:
        await self._app.client.chat_postMessage(
            channel=_channel_id_from_jid(jid),
            text=f"Host Changes Request {request.id}: {request.summary}",
            blocks=build_approval_blocks(request),
        )

    async def send_direct_message(self, user_id: str, text: str) -> None:
        resp = await self._app.client.conversations_open(users=user_id)
        channel_id = resp["channel"]["id"]
        await self._app.client.chat_postMessage(channel=channel_id, text=text)

    # ------------------------------------------------------------------
    # Reconnect on unexpected socket task exit
    # ------------------------------------------------------------------

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        if not self._connected or self._shutting_down:
            return
        exc = task.exception() if not task.cancelled() else None
        logger.warning(
            "Slack Socket Mode task exited unexpectedly, scheduling reconnect",
            exc=str(exc) if exc else "cancelled",
        )
        self._connected = False
        coro = self._reconnect_with_backoff()
        try:
            self._reconnect_task = task.get_loop().create_task(coro, name="slack-reconnect")
        except RuntimeError:
            coro.close()

    async def _reconnect_with_backoff(self, delay: float = 5.0) -> None:
        """Reconnect with exponential backoff, capped at 5 minutes."""
        while not (self._connected or self._shutting_down):
            await asyncio.sleep(delay)
            if self._connected or self._shutting_down:
                return
            logger.info("Slack attempting reconnect", delay=delay)
            try:
                self._handler = None
                self._handler_task = None
                await self.connect()
            except Exception as exc:
                logger.warning("Slack reconnect failed, will retry", delay=delay, exc=str(exc))
                delay = min(delay * 2, 300)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _register_handlers(self) -> None:
        assert self._app is not None

        @self._app.event("message")
        async def _handle_message(event: dict[str, Any]) -> None:
            await self._on_slack_message(event)

        @self._app.event("app_mention")
        async def _handle_mention(event: dict[str, Any]) -> None:
            await self._on_slack_message(event)

        @self._app.action(_ACTION_RE)
        async def _handle_action(ack: Any, body: dict[str, Any], respond: Any) -> None:
            await ack()
            await self._on_slack_action(body, respond)

    async def _on_slack_action(self, body: dict[str, Any], respond: Any) -> None:
        actions = body.get("actions") or []
        if not actions:
            return
        action_id = actions[0].get("action_id", "")
        user = body.get("user", {})
        user_name = user.get("username") or user.get("name") or user.get("id", "unknown")
        if self._on_interactive is None:
            logger.warning("Interactive action received but no handler", action_id=action_id)
            return
        try:
            text = await self._on_interactive(action_id, user_name)
        except Exception:
            logger.exception("Interactive action failed", action_id=action_id)
            text = "Failed to process the request."
        await respond(text=text, replace_original=True)

    def _normalize_bot_mention(self, text: str) -> str:
        """Replace ``<@BOT_ID>`` with ``@AgentName`` so trigger patterns match."""
        if not self._bot_user_id:
            return text
        trigger = f"@{get_settings().agent.name}"
        return re.sub(rf"<@{re.escape(self._bot_user_id)}>", trigger, text).strip()

    def _dedup_ts(self, ts: str) -> bool:
        """True when this ``ts`` was already seen (duplicate event)."""
        now = time.monotonic()
        if ts in self._seen_ts:
            return True
        if len(self._seen_ts) >= self._seen_ts_max:
            cutoff = now - 120
            self._seen_ts = {k: v for k, v in self._seen_ts.items() if v > cutoff}
        self._seen_ts[ts] = now
        return False

    async def _on_slack_message(self, event: dict[str, Any]) -> None:
        channel_id = event.get("channel", "")
        user_id = event.get("user")
        ts = event.get("ts", "")
        if not channel_id or not ts or self._dedup_ts(ts):
            return

        is_direct = event.get("channel_type") == "im"
        sender_name = await self._resolve_user_name(user_id) if user_id else None
        msg = await self._normalizer.normalize_gateway_event(
            channel_id=channel_id,
            user_id=user_id,
            text=self._normalize_bot_mention(event.get("text", "")),
            ts=ts,
            is_direct=is_direct,
            sender_name=sender_name,
            bot_id=event.get("bot_id"),
            subtype=event.get("subtype"),
            channel_name=f"Slack DM: {sender_name}" if is_direct else None,
        )
        if msg is None:
            return

        if is_direct and msg.chat_jid not in self._state.registered_groups:
            await self._register_dm(msg.chat_jid, msg.sender, msg.sender_name)

        logger.info("Slack inbound message", chat_jid=msg.chat_jid, text_len=len(msg.content))
        await self._on_message(msg)

    async def _register_dm(self, jid: str, user_id: str, sender_name: str) -> None:
        folder = dm_folder(user_id)
        group_dir = get_settings().groups_dir / folder
        (group_dir / "logs").mkdir(parents=True, exist_ok=True)
        claude_md = group_dir / "CLAUDE.md"
        if not claude_md.exists():
            claude_md.write_text(
                f"# Slack DM with {sender_name}\n\n"
                "You are chatting one-to-one with this user in Slack. "
                "Every message is addressed to you.\n"
            )
        await self._state.register_group(
            jid,
            RegisteredGroup(
                name=f"Slack DM: {sender_name}",
                folder=folder,
                trigger="",
                added_at=now_iso(),
            ),
        )

    async def _resolve_user_name(self, user_id: str) -> str:
        """Look up a Slack user's display name, falling back to the user ID."""
        cached = self._user_names.get(user_id)
        if cached is not None:
            return cached
        try:
            resp = await self._app.client.users_info(user=user_id)
        except Exception as exc:
            logger.debug("Slack users_info failed", user=user_id, err=str(exc))
            return user_id
        user = resp.get("user", {})
        profile = user.get("profile", {})
        name = profile.get("display_name") or profile.get("real_name") or user_id
        self._user_names[user_id] = name
        return name


# ------------------------------------------------------------------
# Plugin entry point
# ------------------------------------------------------------------


class SlackChannelPlugin:
    """Built-in plugin that activates when Slack tokens are configured."""

    @hookimpl
    def clawgate_create_channel(self, context: Any) -> SlackChannel | None:
        cfg = get_settings().slack
        if cfg.bot_token is None or cfg.app_token is None:
            logger.debug("Slack channel skipped - tokens not configured")
            return None
        if context is None:
            return None
        return SlackChannel(
            bot_token=cfg.bot_token.get_secret_value(),
            app_token=cfg.app_token.get_secret_value(),
            normalizer=context.normalizer,
            state=context.state,
            on_message=context.on_message,
            on_interactive=getattr(context, "on_interactive", None),
        )
