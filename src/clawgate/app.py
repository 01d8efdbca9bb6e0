"""Main orchestrator — wires all subsystems together.

Startup order: database → router state → runtime check → channels → loops.
Each loop (messages, IPC, approvals, scheduler, email) runs as its own
background task with its own re-entrancy guard; the first SIGINT/SIGTERM
stops them all and disconnects the channels, a second one force-exits.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import Any

from clawgate import db
from clawgate.agent_runner import ContainerAgentRunner, ensure_runtime_available
from clawgate.approvals import HostChangeApprovals
from clawgate.chat.channels.email import EmailChannel, GmailMcpClient
from clawgate.chat.normalizer import ChannelNormalizer
from clawgate.chat.router import MessageRouter
from clawgate.chat.typing import TypingManager
from clawgate.config import get_settings
from clawgate.errors import ChannelError, FatalStartupError
from clawgate.ipc import FileMailbox, IpcWatcher
from clawgate.logger import logger, set_level
from clawgate.plugin import ChannelPluginContext, get_plugin_manager, load_channels
from clawgate.state import RouterState
from clawgate.task_scheduler import TaskScheduler
from clawgate.types import Channel, InboundMessage
from clawgate.utils import create_background_task

_FORCE_EXIT_AFTER = 12.0  # seconds


class ClawgateApp:
    """Owns all runtime objects and wires subsystems together."""

    def __init__(self) -> None:
        self.state: RouterState = RouterState()
        self.channels: list[Channel] = []
        self.typing = TypingManager(lambda: self.channels)
        self.router: MessageRouter | None = None
        self.approvals: HostChangeApprovals | None = None
        self.ipc_watcher: IpcWatcher | None = None
        self.scheduler: TaskScheduler | None = None
        self.email: EmailChannel | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._stopped = asyncio.Event()
        self._shutting_down = False
        self.exit_code = 0

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _on_inbound(self, msg: InboundMessage) -> None:
        """Persist messages of registered chats; the router loop picks them up."""
        if msg.chat_jid not in self.state.registered_groups:
            return
        await db.store_message(msg)

    # ------------------------------------------------------------------
    # Host services for the IPC handlers
    # ------------------------------------------------------------------

    async def send_text(self, jid: str, text: str) -> bool:
        assert self.router is not None
        return await self.router.send_text(jid, text)

    def start_typing(self, jid: str, duration: float) -> None:
        self.typing.start(jid, duration)

    async def sync_group_metadata(self, force: bool) -> None:
        for channel in self.channels:
            if hasattr(channel, "sync_group_metadata"):
                await channel.sync_group_metadata(force)

    async def send_direct_message(self, user_id: str, text: str) -> None:
        channel = next(
            (
                c
                for c in self.channels
                if hasattr(c, "send_direct_message") and c.is_connected()
            ),
            None,
        )
        if channel is None:
            raise ChannelError("No connected channel supports direct messages")
        try:
            await channel.send_direct_message(user_id, text)
        except Exception as exc:
            raise ChannelError(f"Direct message failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _connect_channels(self, normalizer: ChannelNormalizer) -> None:
        assert self.approvals is not None
        context = ChannelPluginContext(
            normalizer=normalizer,
            state=self.state,
            on_message=self._on_inbound,
            on_interactive=self.approvals.handle_interactive,
            on_fatal=self._on_channel_fatal,
        )
        for channel in load_channels(get_plugin_manager(), context):
            try:
                await channel.connect()
            except FatalStartupError:
                raise
            except Exception:
                logger.exception("Channel failed to connect, skipping", channel=channel.name)
                continue
            self.channels.append(channel)

    def _start_loops(self) -> None:
        assert self.router and self.ipc_watcher and self.approvals and self.scheduler
        loops = {
            "message-loop": self.router.start(),
            "ipc-watcher": self.ipc_watcher.start(),
            "host-change-scanner": self.approvals.start(),
            "scheduler": self.scheduler.start(),
        }
        if self.email is not None:
            loops["email-loop"] = self.email.start()
        for name, coro in loops.items():
            self._tasks.append(create_background_task(coro, name=name))

    async def _on_channel_fatal(self, reason: str) -> None:
        """A channel can no longer operate; stop everything and exit non-zero."""
        logger.error("Fatal channel error, shutting down", reason=reason)
        self.exit_code = 1
        if self._shutting_down:
            return
        self._shutting_down = True
        # Stop from a separate task: the caller is usually a channel callback
        create_background_task(self.stop(), name="fatal-shutdown")

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        loop = asyncio.get_running_loop()
        loop.call_later(_FORCE_EXIT_AFTER, lambda: os._exit(1))
        await self.stop()

    async def stop(self) -> None:
        components = (self.router, self.ipc_watcher, self.approvals, self.scheduler, self.email)
        for component in components:
            if component is not None:
                component.stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.typing.stop_all()
        for channel in self.channels:
            with contextlib.suppress(Exception):
                await channel.disconnect()
        await db.close_database()
        self._stopped.set()

    async def run(self) -> int:
        """Main entry point — startup sequence. Returns the process exit code."""
        s = get_settings()
        set_level(s.logging.level)
        await db.init_database()
        logger.info("Database initialized")
        self.state = await RouterState.load()
        ensure_runtime_available()

        self.router = MessageRouter(
            self.state, ContainerAgentRunner(), self.channels, typing=self.typing
        )
        self.approvals = HostChangeApprovals(self.state, self.router)
        self.router.approvals = self.approvals
        self.ipc_watcher = IpcWatcher(FileMailbox(s.ipc_dir), self)
        self.scheduler = TaskScheduler(self.router)

        normalizer = ChannelNormalizer(s.agent.name)
        await self._connect_channels(normalizer)
        if s.email.enabled:
            gmail = GmailMcpClient.from_settings(s.email)
            self.email = EmailChannel(gmail, self.router, normalizer)
        else:
            logger.info("Email channel disabled")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        self._start_loops()
        logger.info(
            "Clawgate running",
            assistant=s.agent.name,
            channels=[c.name for c in self.channels],
            groups=len(self.state.registered_groups),
        )
        await self._stopped.wait()
        return self.exit_code
