"""Typing indicators — best-effort, one cancellable refresh task per chat.

Platforms expire a typing indicator after a few seconds, so a timed
indicator is re-signalled every ``refresh_interval`` until its deadline.
Starting a new indicator for a chat cancels the previous one. Channels
without ``set_typing`` are skipped entirely.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

from clawgate.logger import logger
from clawgate.types import Channel

DEFAULT_REFRESH_INTERVAL = 9.0  # seconds


class TypingManager:
    def __init__(
        self,
        channels: Callable[[], list[Channel]],
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        self._channels = channels
        self._refresh_interval = refresh_interval
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        """Signal typing once on every connected channel that owns ``jid``."""
        for ch in self._channels():
            if not (ch.owns_jid(jid) and ch.is_connected() and hasattr(ch, "set_typing")):
                continue
            try:
                await ch.set_typing(jid, is_typing)
            except Exception as exc:
                logger.debug("Typing update failed", channel=ch.name, jid=jid, err=str(exc))

    def start(self, jid: str, duration: float) -> None:
        """Show typing in ``jid`` for ``duration`` seconds, superseding any prior indicator."""
        self.cancel(jid)
        task = asyncio.create_task(self._run(jid, duration), name=f"typing-{jid}")
        self._tasks[jid] = task
        task.add_done_callback(lambda t, jid=jid: self._forget(jid, t))

    def _forget(self, jid: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(jid) is task:
            del self._tasks[jid]

    def cancel(self, jid: str) -> None:
        task = self._tasks.pop(jid, None)
        if task is not None and not task.done():
            task.cancel()

    def active(self, jid: str) -> bool:
        task = self._tasks.get(jid)
        return task is not None and not task.done()

    async def _run(self, jid: str, duration: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        try:
            while (remaining := deadline - loop.time()) > 0:
                await self.set_typing(jid, True)
                await asyncio.sleep(min(self._refresh_interval, remaining))
        finally:
            # A superseding indicator owns the chat now; leave its state alone
            current = self._tasks.get(jid)
            if current is None or current is asyncio.current_task():
                with contextlib.suppress(asyncio.CancelledError):
                    await asyncio.shield(self.set_typing(jid, False))

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
