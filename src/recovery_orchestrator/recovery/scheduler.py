"""Periodic sweeps: launch due scheduled tasks and time out stuck ones."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from recovery_orchestrator.errors import RecoveryError
from recovery_orchestrator.recovery.clock import Clock, utc_now
from recovery_orchestrator.recovery.orchestrator import RecoveryOrchestrator
from recovery_orchestrator.recovery.registry import RunningTaskRegistry
from recovery_orchestrator.storage.models import Actor

logger = logging.getLogger(__name__)

STUCK_TASK_MESSAGE = "execution timed out"


class RecoveryScheduler:
    """Two independent periodic jobs sharing the orchestrator's running-task registry."""

    def __init__(
        self,
        orchestrator: RecoveryOrchestrator,
        *,
        running_tasks: RunningTaskRegistry | None = None,
        clock: Clock = utc_now,
        due_task_interval_s: float = 60 * 60,
        stuck_sweep_interval_s: float = 10 * 60,
        stuck_task_timeout_s: float = 2 * 60 * 60,
    ) -> None:
        self.orchestrator = orchestrator
        self.running_tasks = (
            running_tasks if running_tasks is not None else orchestrator.running_tasks
        )
        self.clock = clock
        self.due_task_interval_s = due_task_interval_s
        self.stuck_sweep_interval_s = stuck_sweep_interval_s
        self.stuck_task_timeout_s = stuck_task_timeout_s
        self._stopping = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []

    async def run_due_tasks(self) -> list[str]:
        """Execute every Pending task whose scheduled time has passed."""
        now = self.clock()
        due = await self.orchestrator.find_due_tasks(now)
        started: list[str] = []
        for task in due:
            try:
                await self.orchestrator.execute_task(task.id, Actor(id=task.created_by))
            except RecoveryError as exc:
                logger.warning(
                    "scheduler event=due_task_skipped task_id=%s error=%s",
                    task.id,
                    exc,
                )
                continue
            except Exception:  # noqa: BLE001
                logger.exception("scheduler event=due_task_failed task_id=%s", task.id)
                continue
            started.append(task.id)
            logger.info("scheduler event=due_task_started task_id=%s", task.id)
        return started

    async def sweep_stuck_tasks(self) -> list[str]:
        """Time out registry entries running longer than the ceiling."""
        now = self.clock()
        expired: list[str] = []
        for entry in self.running_tasks.snapshot():
            elapsed = (now - entry.started_at).total_seconds()
            if elapsed <= self.stuck_task_timeout_s:
                continue
            try:
                updated = await self.orchestrator.expire_task(
                    entry.task_id,
                    STUCK_TASK_MESSAGE,
                    run_id=entry.run_id,
                    actor=entry.actor,
                )
            except Exception:  # noqa: BLE001
                logger.exception("scheduler event=stuck_sweep_failed task_id=%s", entry.task_id)
                continue
            if updated is not None:
                expired.append(entry.task_id)
                logger.warning(
                    "scheduler event=stuck_task_expired task_id=%s running_s=%s",
                    entry.task_id,
                    int(elapsed),
                )
        return expired

    def start(self) -> None:
        if self._loops:
            return
        self._stopping.clear()
        self._loops = [
            asyncio.create_task(
                self._loop("due_tasks", self.due_task_interval_s, self.run_due_tasks),
                name="recovery-scheduler-due-tasks",
            ),
            asyncio.create_task(
                self._loop("stuck_tasks", self.stuck_sweep_interval_s, self.sweep_stuck_tasks),
                name="recovery-scheduler-stuck-tasks",
            ),
        ]
        logger.info(
            "scheduler event=started due_interval_s=%s stuck_interval_s=%s",
            self.due_task_interval_s,
            self.stuck_sweep_interval_s,
        )

    async def stop(self) -> None:
        self._stopping.set()
        loops, self._loops = self._loops, []
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        logger.info("scheduler event=stopped")

    @property
    def running(self) -> bool:
        return bool(self._loops)

    async def _loop(
        self,
        name: str,
        interval_s: float,
        job: Callable[[], Awaitable[list[str]]],
    ) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval_s)
            except TimeoutError:
                pass
            else:
                return
            try:
                await job()
            except Exception:  # noqa: BLE001
                logger.exception("scheduler event=job_failed job=%s", name)
