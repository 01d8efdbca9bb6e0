"""Mailbox queue — the transport under the IPC command bus.

The bus only talks to ``MailboxQueue``. ``FileMailbox`` is the production
backend: one directory per group under ``data/ipc``::

    data/ipc/<group>/messages/*.json   fire-and-forget actions
    data/ipc/<group>/tasks/*.json      request/response commands
    data/ipc/<group>/results/<requestId>.json
    data/ipc/errors/<group>-<file>     quarantine

A file's source identity is the directory it was read from; nothing inside
the payload can change it.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

from clawgate.logger import logger
from clawgate.utils import now_ms, random_suffix, write_json_atomic

Box = Literal["messages", "tasks"]
BOXES: tuple[Box, ...] = ("messages", "tasks")
ERRORS_DIR = "errors"

# Request ids become result file names
REQUEST_ID_PATTERN = r"^[A-Za-z0-9_-]{1,128}$"
_REQUEST_ID_RE = re.compile(REQUEST_ID_PATTERN)


@dataclass
class Envelope:
    source: str  # group folder the file was read from
    box: Box
    name: str
    data: dict[str, Any] | None = None
    parse_error: str | None = None
    path: Path | None = None

    @property
    def request_id(self) -> str | None:
        if self.data is None:
            return None
        rid = self.data.get("requestId")
        return rid if isinstance(rid, str) and _REQUEST_ID_RE.fullmatch(rid) else None


class MailboxQueue(Protocol):
    def sources(self) -> list[str]: ...

    def enqueue(self, source: str, box: Box, payload: dict[str, Any]) -> str: ...

    def dequeue(self, source: str, box: Box) -> list[Envelope]: ...

    def ack(self, envelope: Envelope) -> None: ...

    def dead_letter(self, envelope: Envelope, reason: str) -> None: ...

    def write_result(self, source: str, request_id: str, payload: dict[str, Any]) -> None: ...


class FileMailbox:
    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def group_dir(self, source: str) -> Path:
        return self.base_dir / source

    def sources(self) -> list[str]:
        try:
            return sorted(
                d.name for d in self.base_dir.iterdir() if d.is_dir() and d.name != ERRORS_DIR
            )
        except FileNotFoundError:
            return []

    def enqueue(self, source: str, box: Box, payload: dict[str, Any]) -> str:
        """Write a command file; the name orders files by creation time."""
        name = f"{now_ms()}-{random_suffix()}.json"
        write_json_atomic(self.group_dir(source) / box / name, payload)
        return name

    def dequeue(self, source: str, box: Box) -> list[Envelope]:
        box_dir = self.group_dir(source) / box
        try:
            files = sorted(f for f in box_dir.iterdir() if f.suffix == ".json")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.error("Error reading IPC directory", source_group=source, box=box, err=str(exc))
            return []

        envelopes: list[Envelope] = []
        for path in files:
            env = Envelope(source=source, box=box, name=path.name, path=path)
            try:
                data = json.loads(path.read_text())
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                env.parse_error = f"Unreadable IPC file: {exc}"
            else:
                if isinstance(data, dict):
                    env.data = data
                else:
                    env.parse_error = "IPC payload must be a JSON object"
            envelopes.append(env)
        return envelopes

    def ack(self, envelope: Envelope) -> None:
        if envelope.path is not None:
            envelope.path.unlink(missing_ok=True)

    def dead_letter(self, envelope: Envelope, reason: str) -> None:
        """Move the file to the quarantine directory, keeping the payload intact."""
        if envelope.path is None or not envelope.path.exists():
            return
        error_dir = self.base_dir / ERRORS_DIR
        error_dir.mkdir(parents=True, exist_ok=True)
        target = error_dir / f"{envelope.source}-{envelope.name}"
        envelope.path.rename(target)
        logger.warning(
            "IPC file quarantined",
            source_group=envelope.source,
            file=envelope.name,
            reason=reason,
        )

    def result_path(self, source: str, request_id: str) -> Path:
        if not _REQUEST_ID_RE.fullmatch(request_id):
            raise ValueError(f"Invalid request id: {request_id!r}")
        return self.group_dir(source) / "results" / f"{request_id}.json"

    def write_result(self, source: str, request_id: str, payload: dict[str, Any]) -> None:
        write_json_atomic(self.result_path(source, request_id), payload)
