"""Task scheduler — runs scheduled tasks on their due dates."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Protocol

from clawgate import db
from clawgate.config import get_settings
from clawgate.logger import logger
from clawgate.state import RouterState
from clawgate.types import RegisteredGroup, ScheduledTask, TaskRunLog
from clawgate.utils import compute_next_run


class SchedulerDeps(Protocol):
    """The slice of the router the scheduler needs."""

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

    async def send_text(self, jid: str, raw_text: str) -> bool: ...


class TaskScheduler:
    def __init__(self, deps: SchedulerDeps) -> None:
        self._deps = deps
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.debug("Scheduler loop already running, skipping duplicate start")
            return
        self._running = True
        logger.info("Scheduler loop started")

        while self._running:
            try:
                await self.run_due_tasks()
            except Exception as exc:
                logger.error("Error in scheduler loop", err=str(exc))
            await asyncio.sleep(get_settings().scheduler.poll_interval)

    def stop(self) -> None:
        self._running = False

    async def run_due_tasks(self) -> int:
        """Run every task that is due now. Returns how many ran."""
        due_tasks = await db.get_due_tasks()
        if due_tasks:
            logger.info("Found due tasks", count=len(due_tasks))

        ran = 0
        for task in due_tasks:
            # Re-check status (may have been paused or cancelled since the query)
            current = await db.get_task_by_id(task.id)
            if current is None or current.status != "active":
                continue
            await self.run_task(current)
            ran += 1
        return ran

    async def run_task(self, task: ScheduledTask) -> None:
        start_time = datetime.now(UTC)
        logger.info("Running scheduled task", task_id=task.id, group=task.group_folder)

        found = self._deps.state.group_for_folder(task.group_folder)
        if found is None:
            logger.error(
                "Group not found for task", task_id=task.id, group_folder=task.group_folder
            )
            await db.log_task_run(
                TaskRunLog(
                    task_id=task.id,
                    run_at=datetime.now(UTC).isoformat(),
                    duration_ms=(datetime.now(UTC) - start_time).total_seconds() * 1000,
                    status="error",
                    error=f"Group not found: {task.group_folder}",
                )
            )
            # Stay active so re-registering the group resumes the task
            retry_at = datetime.now(UTC) + timedelta(
                seconds=get_settings().scheduler.missing_group_retry
            )
            await db.update_task(task.id, {"next_run": retry_at.isoformat()})
            return
        _, group = found

        result: str | None = None
        error: str | None = None
        try:
            result = await self._deps.run_agent(
                group,
                task.prompt,
                task.chat_jid,
                is_scheduled_task=True,
                use_session=task.context_mode == "group",
            )
            if result:
                await self._deps.send_text(task.chat_jid, result)
            logger.info("Task completed", task_id=task.id)
        except Exception as exc:
            error = str(exc)
            logger.error("Task failed", task_id=task.id, error=error)

        await db.log_task_run(
            TaskRunLog(
                task_id=task.id,
                run_at=datetime.now(UTC).isoformat(),
                duration_ms=(datetime.now(UTC) - start_time).total_seconds() * 1000,
                status="error" if error else "success",
                result=result,
                error=error,
            )
        )

        try:
            next_run = compute_next_run(
                task.schedule_type, task.schedule_value, get_settings().timezone
            )
        except ValueError as exc:
            logger.error("Invalid stored schedule, completing task", task_id=task.id, err=str(exc))
            next_run = None

        summary = f"Error: {error}" if error else (result[:200] if result else "Completed")
        await db.update_task_after_run(task.id, next_run, summary)
