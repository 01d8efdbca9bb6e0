"""Shared utility functions.

Small helpers used across multiple modules: timestamped ID generation,
schedule calculations, async subprocess execution, atomic file writing and
background task supervision.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import random
import string
from asyncio.subprocess import PIPE
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo

from croniter import croniter

from clawgate.logger import logger


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content, never a
    partial write. Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    tmp.rename(path)


def random_suffix(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_id(prefix: str, *, with_suffix: bool = False) -> str:
    """Generate a ``{prefix}-{ms}`` id, optionally with a random tail.

    ``generate_id("hc")`` → ``hc-1718000000000``;
    ``generate_id("task", with_suffix=True)`` → ``task-1718000000000-a1b2c3``.
    """
    base = f"{prefix}-{now_ms()}"
    return f"{base}-{random_suffix()}" if with_suffix else base


def compute_next_run(
    schedule_type: Literal["cron", "interval", "once"],
    schedule_value: str,
    timezone: str,
) -> str | None:
    """Compute the next run ISO timestamp for a scheduled task.

    Always returns UTC isoformat so SQLite lexicographic comparison
    against ``datetime.now(UTC).isoformat()`` works in ``get_due_tasks()``.

    Returns None for 'once' tasks (no recurrence after execution).
    Raises ValueError for invalid cron/interval values so callers can reject them.
    """
    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ValueError(f"Invalid cron expression: {schedule_value}")
        tz = ZoneInfo(timezone)
        cron = croniter(schedule_value, datetime.now(tz))
        return cron.get_next(datetime).astimezone(UTC).isoformat()

    if schedule_type == "interval":
        ms = int(schedule_value)
        if ms <= 0:
            raise ValueError("Interval must be positive")
        return datetime.fromtimestamp(
            datetime.now(UTC).timestamp() + ms / 1000,
            tz=UTC,
        ).isoformat()

    return None


def parse_once_timestamp(value: str) -> str:
    """Validate a one-shot schedule value and normalize it to UTC isoformat.

    Naive timestamps are taken as UTC. Raises ValueError when the value is
    unparseable or already in the past.
    """
    scheduled = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=UTC)
    scheduled = scheduled.astimezone(UTC)
    if scheduled <= datetime.now(UTC):
        raise ValueError(f"Timestamp is in the past: {value}")
    return scheduled.isoformat()


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here: we're in a done-callback,
        # not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


@dataclass
class ProcessResult:
    """Result of an async subprocess execution."""

    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    start_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.start_error is None


async def run_command(
    argv: list[str],
    *,
    cwd: str | Path,
    timeout_seconds: float,
    stdin_data: bytes | None = None,
) -> ProcessResult:
    """Run a command asynchronously with a hard timeout.

    Never raises for process-level failures; the outcome is captured in the
    returned ProcessResult.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            stdin=PIPE if stdin_data is not None else None,
            stdout=PIPE,
            stderr=PIPE,
        )
    except OSError as exc:
        return ProcessResult(returncode=None, stdout="", stderr="", start_error=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(stdin_data),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.communicate()
        return ProcessResult(returncode=None, stdout="", stderr="", timed_out=True)

    return ProcessResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )


def describe_failure(result: ProcessResult, *, label: str) -> str:
    """Human-readable reason a command did not succeed."""
    if result.start_error:
        return f"{label} failed to start: {result.start_error}"
    if result.timed_out:
        return f"{label} timed out"
    return result.stderr or result.stdout or f"{label} exited with code {result.returncode}"
