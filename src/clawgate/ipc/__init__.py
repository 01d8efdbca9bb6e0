"""File-based IPC command bus between agent sandboxes and the host."""

from clawgate.ipc.commands import IpcCommand, parse_command
from clawgate.ipc.handlers import IpcDeps, IpcResult, handle_command
from clawgate.ipc.queue import Envelope, FileMailbox, MailboxQueue
from clawgate.ipc.watcher import IpcWatcher

__all__ = [
    "Envelope",
    "FileMailbox",
    "IpcCommand",
    "IpcDeps",
    "IpcResult",
    "IpcWatcher",
    "MailboxQueue",
    "handle_command",
    "parse_command",
]
