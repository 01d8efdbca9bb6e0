"""WhatsApp channel using neonize (whatsmeow Python bindings).

Run ``clawgate whatsapp-auth`` once to link an account; the service itself
never shows a QR code and refuses to start without stored credentials.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import sys
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import pluggy
from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.proto.Neonize_pb2 import JID
from neonize.utils.jid import Jid2String, build_jid

from clawgate.chat.normalizer import ChannelNormalizer
from clawgate.config import get_settings
from clawgate.db import get_last_group_sync, set_last_group_sync, update_chat_name
from clawgate.errors import FatalStartupError
from clawgate.logger import logger
from clawgate.types import InboundMessage

hookimpl = pluggy.HookimplMarker("clawgate")

GROUP_SYNC_INTERVAL: float = 24 * 60 * 60  # 24 hours in seconds
AUTH_COMMAND = "clawgate whatsapp-auth"


@dataclass
class _OutgoingMessage:
    jid: str
    text: str


def _bind_neonize_loop() -> None:
    # Neonize keeps module-level loop references; bind both to the running loop
    loop = asyncio.get_running_loop()
    neonize_events.event_global_loop = loop
    neonize_client.event_global_loop = loop


def _auth_db_path() -> str:
    store_dir = get_settings().store_dir
    store_dir.mkdir(parents=True, exist_ok=True)
    return str(store_dir / "neonize.db")


class WhatsAppChannel:
    """WhatsApp channel implemented via neonize (whatsmeow Go bindings)."""

    name = "whatsapp"
    prefix_assistant_name = True
    max_message_length = 4000

    def __init__(
        self,
        normalizer: ChannelNormalizer,
        on_message: Callable[[InboundMessage], Awaitable[None]],
        on_fatal: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self._normalizer = normalizer
        self._on_message = on_message
        self._on_fatal = on_fatal
        self._connected = False
        self._outgoing_queue: deque[_OutgoingMessage] = deque()
        self._flushing = False
        self._group_sync_task: asyncio.Task[None] | None = None
        self._idle_task: asyncio.Task[None] | None = None
        self._first_connect = asyncio.Event()
        self._auth_required = False

        _bind_neonize_loop()
        self._client = NewAClient(_auth_db_path())
        self._register_events()

    def _register_events(self) -> None:
        @self._client.event(ConnectedEv)
        async def on_connected(_client: NewAClient, _ev: ConnectedEv) -> None:
            self._connected = True
            logger.info("Connected to WhatsApp")
            self._learn_self_alias()

            asyncio.ensure_future(self._flush_outgoing_queue())
            asyncio.ensure_future(self._sync_group_metadata())
            if self._group_sync_task is None:
                self._group_sync_task = asyncio.ensure_future(self._periodic_group_sync())
            self._first_connect.set()

        @self._client.event(DisconnectedEv)
        async def on_disconnected(_client: NewAClient, _ev: DisconnectedEv) -> None:
            self._connected = False
            logger.warning("WhatsApp disconnected")

        @self._client.event(LoggedOutEv)
        async def on_logged_out(_client: NewAClient, _ev: LoggedOutEv) -> None:
            await self._handle_logged_out()

        @self._client.event(ConnectFailureEv)
        async def on_connect_failure(_client: NewAClient, _ev: ConnectFailureEv) -> None:
            self._connected = False
            logger.error("WhatsApp connection failed")

        @self._client.event(PairStatusEv)
        async def on_pair_status(_client: NewAClient, ev: PairStatusEv) -> None:
            logger.info("WhatsApp paired", user=ev.ID.User)

        @self._client.event(MessageEv)
        async def on_message(_client: NewAClient, message: MessageEv) -> None:
            try:
                await self._handle_message(message)
            except Exception:
                logger.exception(
                    "Unhandled error in message handler",
                    message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
                )

    async def _handle_logged_out(self) -> None:
        """Credentials were revoked; the service cannot continue without re-pairing."""
        self._connected = False
        logger.error(f"Logged out from WhatsApp. Run '{AUTH_COMMAND}' to re-authenticate.")
        if self._on_fatal is None:
            sys.exit(1)
        await self._on_fatal("Logged out from WhatsApp")

    def _learn_self_alias(self) -> None:
        device = self._client.me
        if not device:
            return
        jid = getattr(device, "JID", None)
        lid = getattr(device, "LID", None)
        if jid and lid and lid.User:
            self._normalizer.aliases.learn(lid.User, f"{jid.User}@s.whatsapp.net")

    async def connect(self) -> None:
        @self._client.event.qr
        async def on_qr(_client: NewAClient, _qr_data: bytes) -> None:
            self._auth_required = True
            self._first_connect.set()

        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())
        await self._first_connect.wait()
        if self._auth_required:
            await self.disconnect()
            raise FatalStartupError(f"WhatsApp authentication required. Run: {AUTH_COMMAND}")

    async def send_message(self, jid: str, text: str) -> None:
        if not self._connected:
            self._outgoing_queue.append(_OutgoingMessage(jid=jid, text=text))
            logger.info("WhatsApp disconnected, message queued", jid=jid)
            return
        try:
            await self._client.send_message(self._parse_jid(jid), text)
        except Exception as err:
            self._outgoing_queue.append(_OutgoingMessage(jid=jid, text=text))
            logger.warning("Failed to send, message queued", jid=jid, error=str(err))

    async def disconnect(self) -> None:
        self._connected = False
        if self._group_sync_task:
            self._group_sync_task.cancel()
        if self._idle_task:
            self._idle_task.cancel()
        with contextlib.suppress(Exception):
            await self._client.disconnect()

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        from neonize.utils.enum import ChatPresence, ChatPresenceMedia

        presence = (
            ChatPresence.CHAT_PRESENCE_COMPOSING if is_typing else ChatPresence.CHAT_PRESENCE_PAUSED
        )
        try:
            await self._client.send_chat_presence(
                self._parse_jid(jid), presence, ChatPresenceMedia.CHAT_PRESENCE_MEDIA_TEXT
            )
        except Exception as err:
            logger.debug("Failed to update typing status", jid=jid, error=str(err))

    async def sync_group_metadata(self, force: bool = False) -> None:
        await self._sync_group_metadata(force=force)

    async def _sync_group_metadata(self, force: bool = False) -> None:
        if not force:
            last_sync = await get_last_group_sync()
            if last_sync:
                elapsed = (datetime.now(UTC) - datetime.fromisoformat(last_sync)).total_seconds()
                if elapsed < GROUP_SYNC_INTERVAL:
                    logger.debug("Skipping group sync - synced recently", last_sync=last_sync)
                    return
        try:
            logger.info("Syncing group metadata from WhatsApp...")
            groups = await self._client.get_joined_groups()
            count = 0
            for group in groups:
                name = group.GroupName.Name
                if name:
                    await update_chat_name(Jid2String(group.JID), name)
                    count += 1
            await set_last_group_sync()
            logger.info("Group metadata synced", count=count)
        except Exception as err:
            logger.error("Failed to sync group metadata", error=str(err))

    async def _periodic_group_sync(self) -> None:
        while True:
            await asyncio.sleep(GROUP_SYNC_INTERVAL)
            await self._sync_group_metadata()

    async def _flush_outgoing_queue(self) -> None:
        if self._flushing or not self._outgoing_queue:
            return
        self._flushing = True
        try:
            logger.info("Flushing outgoing message queue", count=len(self._outgoing_queue))
            while self._outgoing_queue and self._connected:
                item = self._outgoing_queue.popleft()
                await self.send_message(item.jid, item.text)
        finally:
            self._flushing = False

    async def _handle_message(self, message: MessageEv) -> None:
        info = message.Info
        source = info.MessageSource
        msg = message.Message
        content = (
            msg.conversation
            or msg.extendedTextMessage.text
            or msg.imageMessage.caption
            or msg.videoMessage.caption
            or ""
        )
        sender_jid = Jid2String(source.Sender)
        inbound = await self._normalizer.normalize_socket_event(
            message_id=info.ID,
            chat_jid=Jid2String(source.Chat),
            sender_jid=sender_jid,
            sender_name=info.Pushname or source.Sender.User,
            content=content,
            timestamp=info.Timestamp,
            is_from_me=source.IsFromMe,
        )
        if inbound is not None:
            await self._on_message(inbound)

    @staticmethod
    def _parse_jid(jid_str: str) -> JID:
        if "@" not in jid_str:
            return build_jid(jid_str)
        user, server = jid_str.split("@", 1)
        return build_jid(user, server)

    def is_connected(self) -> bool:
        return self._connected

    def owns_jid(self, jid: str) -> bool:
        return jid.endswith("@g.us") or jid.endswith("@s.whatsapp.net")


# ---------------------------------------------------------------------------
# One-time pairing
# ---------------------------------------------------------------------------


async def authenticate() -> int:
    """Link a WhatsApp account by QR code. Returns a process exit code."""
    import qrcode

    _bind_neonize_loop()
    auth_db = _auth_db_path()
    client = NewAClient(auth_db)

    if await client.is_logged_in:
        print("[OK] Already authenticated with WhatsApp")
        print(f"     Delete {auth_db} to force re-authentication.")
        return 0

    print("Scan the QR code with WhatsApp:")
    print("  1. Open WhatsApp on your phone")
    print("  2. Tap Settings -> Linked Devices -> Link a Device")
    print("  3. Point your camera at the QR code below")
    print()

    done = asyncio.Event()
    exit_code = 0

    @client.event.qr
    async def on_qr(_client: NewAClient, qr_data: bytes) -> None:
        qr = qrcode.QRCode(border=1)
        qr.add_data(qr_data)
        qr.make()
        buf = io.StringIO()
        qr.print_ascii(out=buf, invert=True)
        print(buf.getvalue(), flush=True)

    @client.event(ConnectedEv)
    async def on_connected(_client: NewAClient, _ev: ConnectedEv) -> None:
        print()
        print("[OK] Successfully authenticated with WhatsApp")
        print(f"     Credentials saved to {auth_db}")
        done.set()

    @client.event(LoggedOutEv)
    async def on_logged_out(_client: NewAClient, _ev: LoggedOutEv) -> None:
        nonlocal exit_code
        print(f"\n[ERROR] Logged out. Delete {auth_db} and try again.", file=sys.stderr)
        exit_code = 1
        done.set()

    @client.event(ConnectFailureEv)
    async def on_connect_failure(_client: NewAClient, _ev: ConnectFailureEv) -> None:
        nonlocal exit_code
        print("\n[ERROR] Connection failed. Please try again.", file=sys.stderr)
        exit_code = 1
        done.set()

    await client.connect()
    idle_task = asyncio.ensure_future(client.idle())
    await done.wait()
    idle_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await idle_task
    return exit_code


# ---------------------------------------------------------------------------
# Plugin entry point
# ---------------------------------------------------------------------------


class WhatsAppPlugin:
    @hookimpl
    def clawgate_create_channel(self, context: Any) -> WhatsAppChannel | None:
        if not get_settings().whatsapp.enabled:
            logger.debug("WhatsApp channel skipped - disabled in config")
            return None
        if context is None:
            return None
        return WhatsAppChannel(
            normalizer=context.normalizer,
            on_message=context.on_message,
            on_fatal=getattr(context, "on_fatal", None),
        )
