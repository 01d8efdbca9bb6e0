"""IPC watcher — polls every group's mailbox and dispatches commands.

Every file is handled on its own: one bad file never stops the rest of
the scan. Outcomes per file:

- handled → deleted (result written when a ``requestId`` was given)
- unauthorized → warning logged, deleted, never retried
- unparseable / unknown type / handler crash → moved to quarantine

Two files with the same logical content are two commands; there is no
content-level dedup.
"""

from __future__ import annotations

import asyncio

from clawgate.chat.authorization import is_privileged_folder
from clawgate.config import get_settings
from clawgate.errors import IpcAuthorizationError, IpcValidationError
from clawgate.ipc.commands import parse_command
from clawgate.ipc.handlers import IpcDeps, IpcResult, handle_command
from clawgate.ipc.queue import BOXES, Envelope, MailboxQueue
from clawgate.logger import logger


class IpcWatcher:
    def __init__(self, mailbox: MailboxQueue, deps: IpcDeps) -> None:
        self._mailbox = mailbox
        self._deps = deps
        self._running = False

    async def start(self) -> None:
        """Start the polling loop. A second call while running is a no-op."""
        if self._running:
            logger.debug("IPC watcher already running, skipping duplicate start")
            return
        self._running = True
        interval = get_settings().intervals.ipc_poll
        logger.info("IPC watcher started")

        while self._running:
            try:
                await self.process_once()
            except Exception:
                logger.exception("Error scanning IPC mailboxes")
            await asyncio.sleep(interval)

    def stop(self) -> None:
        self._running = False

    async def process_once(self) -> int:
        """Drain every mailbox once. Returns the number of files seen."""
        main_folder = get_settings().router.main_group_folder
        seen = 0
        for source in self._mailbox.sources():
            is_privileged = is_privileged_folder(source, main_folder)
            for box in BOXES:
                for envelope in self._mailbox.dequeue(source, box):
                    seen += 1
                    await self._process_envelope(envelope, is_privileged)
        return seen

    async def _process_envelope(self, envelope: Envelope, is_privileged: bool) -> None:
        try:
            if envelope.data is None:
                raise IpcValidationError(envelope.parse_error or "Empty IPC payload")
            cmd = parse_command(envelope.data, envelope.box)
            result = await handle_command(cmd, envelope.source, is_privileged, self._deps)
        except IpcAuthorizationError as exc:
            logger.warning(
                "Unauthorized IPC command blocked",
                command=exc.command,
                source_group=exc.source_group,
                detail=exc.detail,
            )
            self._mailbox.ack(envelope)
            self._respond(envelope, IpcResult(False, "Unauthorized"))
            return
        except IpcValidationError as exc:
            logger.error(
                "Invalid IPC command",
                file=envelope.name,
                source_group=envelope.source,
                err=str(exc),
            )
            self._mailbox.dead_letter(envelope, str(exc))
            self._respond(envelope, IpcResult(False, str(exc)))
            return
        except Exception as exc:
            logger.exception(
                "Error processing IPC command",
                file=envelope.name,
                source_group=envelope.source,
            )
            self._mailbox.dead_letter(envelope, str(exc))
            self._respond(envelope, IpcResult(False, f"Internal error: {exc}"))
            return

        self._mailbox.ack(envelope)
        self._respond(envelope, result)

    def _respond(self, envelope: Envelope, result: IpcResult) -> None:
        request_id = envelope.request_id
        if request_id is None:
            return
        try:
            self._mailbox.write_result(envelope.source, request_id, result.to_response(request_id))
        except OSError as exc:
            logger.error(
                "Failed to write IPC result",
                source_group=envelope.source,
                request_id=request_id,
                err=str(exc),
            )
