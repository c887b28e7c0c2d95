"""Recovery task state machine.

Lifecycle of one task:

    Pending --execute--> Running --success--> Success
    Pending --cancel---> Cancelled
    Running --cancel---> Cancelled
    Running --failure--> Failed
    Running --timeout--> Timeout

``execute_task`` flips the task to Running and returns at once; the clone,
wait-for-ready, validate and complete phases run as a detached asyncio task.
Every write the pipeline makes is conditional on the task still being
Running, so a cancel or timeout that lands mid-phase stops the pipeline at
its next write instead of being overwritten.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field

from recovery_orchestrator.audit import AuditSink, StorageAuditSink, record_safely
from recovery_orchestrator.errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    RecoveryError,
    RecoveryTimeoutError,
)
from recovery_orchestrator.provider.base import (
    BackupSelector,
    CloneRequest,
    CloudProviderClient,
    ProviderInstance,
    ValidationReport,
)
from recovery_orchestrator.recovery.clock import Clock, Sleeper, asyncio_sleep, utc_now
from recovery_orchestrator.recovery.registry import RunningTask, RunningTaskRegistry
from recovery_orchestrator.storage.base import TaskStorage
from recovery_orchestrator.storage.models import (
    TASK_STATUSES,
    TERMINAL_STATUSES,
    Actor,
    AuditEvent,
    NewRecoveryTask,
    RecoveryTask,
    TaskFilters,
    TaskStatistics,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXECUTABLE_STATUSES = ("Pending", "Failed")
CANCELLABLE_STATUSES = tuple(s for s in TASK_STATUSES if s not in TERMINAL_STATUSES)
DELETABLE_STATUSES = tuple(s for s in TASK_STATUSES if s != "Running")
EDITABLE_STATUSES = ("Pending", "Failed")
EDITABLE_FIELDS = frozenset({"task_name", "priority", "scheduled_at", "config"})

CLONE_PROGRESS = 20
CLONED_PROGRESS = 40
READY_PROGRESS = 70
VALIDATED_PROGRESS = 90


class ExecutionTicket(BaseModel):
    task_id: str
    status: Literal["Running"] = "Running"
    message: str = "recovery task started"


class AnnualTaskBatch(BaseModel):
    created: list[RecoveryTask] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class _PipelineAborted(Exception):
    """The task left Running while its pipeline was in flight."""


class _Run:
    """Mutable per-execution state of one pipeline."""

    def __init__(self, task: RecoveryTask, actor: Actor, entry: RunningTask) -> None:
        self.task = task
        self.actor = actor
        self.entry = entry
        self.progress = 0

    @property
    def task_id(self) -> str:
        return self.task.id


class RecoveryOrchestrator:
    """Drive recovery tasks through their lifecycle."""

    def __init__(
        self,
        *,
        storage: TaskStorage,
        provider: CloudProviderClient,
        audit_sink: AuditSink | None = None,
        running_tasks: RunningTaskRegistry | None = None,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio_sleep,
        poll_interval_s: float = 30.0,
        instance_ready_timeout_s: float = 30 * 60,
        default_instance_class: str = "mysql.n1.micro.1",
        default_storage_size: int = 20,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.audit_sink = audit_sink or StorageAuditSink(storage)
        self.running_tasks = running_tasks if running_tasks is not None else RunningTaskRegistry()
        self.clock = clock
        self.sleep = sleep
        self.poll_interval_s = poll_interval_s
        self.instance_ready_timeout_s = instance_ready_timeout_s
        self.default_instance_class = default_instance_class
        self.default_storage_size = default_storage_size
        self._pipelines: set[asyncio.Task[None]] = set()

    # Read accessors

    async def get_task(self, task_id: str) -> RecoveryTask:
        task = await self._store(self.storage.get_task, task_id)
        if task is None:
            raise NotFoundError(f"recovery task {task_id} does not exist")
        return task

    async def list_tasks(
        self,
        filters: TaskFilters,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[RecoveryTask], int]:
        offset = (max(page, 1) - 1) * limit
        return await self._store(self.storage.list_tasks, filters, offset=offset, limit=limit)

    async def find_due_tasks(self, now: datetime) -> list[RecoveryTask]:
        return await self._store(self.storage.find_due_tasks, now)

    # Commands

    async def create_task(self, spec: NewRecoveryTask, actor: Actor) -> RecoveryTask:
        instance = await self._store(self.storage.get_instance, spec.rds_instance_id)
        if instance is None:
            raise NotFoundError(f"RDS instance {spec.rds_instance_id} does not exist")

        if spec.is_annual_task:
            existing = await self._store(
                self.storage.find_active_annual_task,
                spec.rds_instance_id,
                spec.compliance_year,
            )
            if existing is not None:
                raise ConflictError(
                    f"annual compliance task for {spec.compliance_year} already exists "
                    f"(task {existing.id}, status {existing.status})"
                )

        task = await self._store(self.storage.create_task, spec, created_by=actor.id)
        await self._audit(
            actor,
            task,
            action="create recovery task",
            operation_type="Create",
            status="Success",
            description=f"created recovery task {task.task_name}",
            risk_level="Medium",
        )
        logger.info(
            "recovery_task event=created task_id=%s rds_instance_id=%s annual=%s actor=%s",
            task.id,
            task.rds_instance_id,
            task.is_annual_task,
            actor.id,
        )
        return task

    async def create_annual_tasks(
        self,
        year: int,
        instance_ids: list[str],
        actor: Actor,
    ) -> AnnualTaskBatch:
        """Create one annual compliance task per instance, collecting per-instance errors."""
        batch = AnnualTaskBatch()
        for instance_ref in instance_ids:
            instance = await self._store(self.storage.get_instance, instance_ref)
            if instance is None:
                batch.errors.append(f"instance {instance_ref} does not exist")
                continue
            spec = NewRecoveryTask(
                task_name=f"{year} annual compliance recovery - {instance.instance_name}",
                rds_instance_id=instance.id,
                source_instance_id=instance.instance_id,
                target_instance_name=f"{instance.instance_name}-compliance-{year}",
                task_type="Annual",
                priority="Normal",
                compliance_year=year,
                is_annual_task=True,
                restore_type="BackupSet",
                backup_type="FullBackup",
            )
            try:
                batch.created.append(await self.create_task(spec, actor))
            except RecoveryError as exc:
                batch.errors.append(f"instance {instance_ref}: {exc}")
        logger.info(
            "recovery_task event=annual_batch year=%s created=%s errors=%s actor=%s",
            year,
            len(batch.created),
            len(batch.errors),
            actor.id,
        )
        return batch

    async def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        actor: Actor,
    ) -> RecoveryTask:
        unsupported = set(changes) - EDITABLE_FIELDS
        if unsupported:
            raise ValueError(f"fields cannot be edited: {sorted(unsupported)}")
        task = await self.get_task(task_id)
        if task.status not in EDITABLE_STATUSES:
            raise ConflictError(f"cannot edit task in status {task.status}")
        if not changes:
            return task

        updated = await self._store(
            self.storage.update_task,
            task_id,
            changes,
            expected_status=EDITABLE_STATUSES,
        )
        if updated is None:
            raise ConflictError("task changed state while being edited")
        await self._audit(
            actor,
            updated,
            action="update recovery task",
            operation_type="Update",
            status="Success",
            description=f"updated fields {sorted(changes)}",
            risk_level="Medium",
        )
        return updated

    async def delete_task(self, task_id: str, actor: Actor) -> None:
        task = await self.get_task(task_id)
        if task.status == "Running":
            raise ConflictError("cannot delete a running task")
        deleted = await self._store(
            self.storage.delete_task, task_id, expected_status=DELETABLE_STATUSES
        )
        if not deleted:
            # An execute landed between the read and the delete.
            current = await self.get_task(task_id)
            raise ConflictError(f"cannot delete task in status {current.status}")
        await self._audit(
            actor,
            task,
            action="delete recovery task",
            operation_type="Delete",
            status="Success",
            description=f"deleted recovery task {task.task_name}",
            risk_level="High",
        )
        logger.info("recovery_task event=deleted task_id=%s actor=%s", task_id, actor.id)

    async def execute_task(self, task_id: str, actor: Actor) -> ExecutionTicket:
        task = await self.get_task(task_id)
        self._check_executable(task)

        now = self.clock()
        running = await self._store(
            self.storage.update_task,
            task_id,
            {
                "status": "Running",
                "started_at": now,
                "progress": 0,
                "completed_at": None,
                "duration_seconds": None,
                "error_message": None,
                "verification_status": "Pending",
                "verification_result": None,
                "target_instance_id": None,
            },
            expected_status=EXECUTABLE_STATUSES,
        )
        if running is None:
            # Another caller won the race; report what it left behind.
            self._check_executable(await self.get_task(task_id))
            raise ConflictError("task is already running")

        entry = RunningTask(task_id=task_id, started_at=now, actor=actor)
        self.running_tasks.add(entry)
        pipeline = asyncio.create_task(
            self._perform_recovery(_Run(running, actor, entry)),
            name=f"recovery-{task_id}",
        )
        self._pipelines.add(pipeline)
        pipeline.add_done_callback(self._pipelines.discard)

        logger.info(
            "recovery_task event=started task_id=%s task_name=%s actor=%s",
            task_id,
            running.task_name,
            actor.id,
        )
        return ExecutionTicket(task_id=task_id)

    async def cancel_task(self, task_id: str, actor: Actor) -> RecoveryTask:
        task = await self.get_task(task_id)
        if task.status not in CANCELLABLE_STATUSES:
            raise ConflictError(f"cannot cancel task in status {task.status}")

        now = self.clock()
        cancelled = await self._store(
            self.storage.update_task,
            task_id,
            {
                "status": "Cancelled",
                "completed_at": now,
                "duration_seconds": _duration_seconds(task.started_at, now),
                "error_message": "cancelled by user",
            },
            expected_status=CANCELLABLE_STATUSES,
        )
        if cancelled is None:
            current = await self.get_task(task_id)
            raise ConflictError(f"cannot cancel task in status {current.status}")

        self.running_tasks.discard(task_id)
        await self._audit(
            actor,
            cancelled,
            action="cancel recovery task",
            operation_type="Update",
            status="Success",
            description="recovery task cancelled by user",
            risk_level="Medium",
        )
        logger.info("recovery_task event=cancelled task_id=%s actor=%s", task_id, actor.id)
        return cancelled

    async def expire_task(
        self,
        task_id: str,
        message: str,
        *,
        run_id: str | None = None,
        actor: Actor | None = None,
    ) -> RecoveryTask | None:
        """Move a Running task to Timeout; a task no longer Running is left alone."""
        now = self.clock()
        try:
            current = await self._store(self.storage.get_task, task_id)
            started_at = current.started_at if current else None
            expired = await self._store(
                self.storage.update_task,
                task_id,
                {
                    "status": "Timeout",
                    "completed_at": now,
                    "duration_seconds": _duration_seconds(started_at, now),
                    "error_message": message,
                    "verification_status": "Failed",
                },
                expected_status=("Running",),
            )
        except KeyError:
            expired = None
        finally:
            self.running_tasks.discard(task_id, run_id=run_id)

        if expired is None:
            logger.info(
                "recovery_task event=timeout_skipped task_id=%s reason=not_running",
                task_id,
            )
            return None
        logger.warning(
            "recovery_task event=timed_out task_id=%s error=%s",
            task_id,
            message,
        )
        await self._audit(
            actor or Actor(id=expired.created_by),
            expired,
            action="execute recovery task",
            operation_type="Execute",
            status="Failed",
            description=f"recovery task timed out: {message}",
            risk_level="High",
        )
        return expired

    async def get_task_statistics(self, filters: TaskFilters | None = None) -> TaskStatistics:
        counts = await self._store(self.storage.count_tasks_by_status, filters or TaskFilters())
        tally = TaskStatistics().model_dump()
        known = {status.lower() for status in TASK_STATUSES}
        for status, count in counts.items():
            tally["total"] += count
            key = status.lower()
            if key in known:
                tally[key] += count
            else:
                logger.warning(
                    "recovery_task event=unknown_status status=%s count=%s",
                    status,
                    count,
                )
        return TaskStatistics.model_validate(tally)

    async def join(self) -> None:
        """Wait for every detached pipeline started so far."""
        while self._pipelines:
            await asyncio.gather(*list(self._pipelines), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop in-flight pipelines at process shutdown.

        Their tasks stay Running in storage; the registry does not survive a
        restart, so they must be cancelled or reaped by an operator.
        """
        pipelines = list(self._pipelines)
        for pipeline in pipelines:
            pipeline.cancel()
        if pipelines:
            await asyncio.gather(*pipelines, return_exceptions=True)
            logger.warning("recovery_task event=pipelines_cancelled count=%s", len(pipelines))

    # Pipeline

    async def _perform_recovery(self, run: _Run) -> None:
        task = run.task
        try:
            await self._advance(run, CLONE_PROGRESS, "cloning instance")
            clone = await self._provider_call(
                self.provider.clone_instance,
                CloneRequest(
                    source_instance_id=task.source_instance_id,
                    target_instance_name=task.target_instance_name,
                    backup=BackupSelector(
                        restore_type=task.restore_type,
                        backup_id=task.backup_id,
                        restore_time=task.restore_time,
                    ),
                    instance_class=task.config.get("instance_class")
                    or self.default_instance_class,
                    storage_size=task.config.get("storage_size") or self.default_storage_size,
                ),
            )
            target_instance_id = clone.provider_task_id
            await self._write(
                run,
                {"target_instance_id": target_instance_id, "progress": CLONED_PROGRESS},
            )
            run.progress = CLONED_PROGRESS

            await self._wait_for_instance_ready(run, target_instance_id)

            await self._advance(
                run,
                READY_PROGRESS,
                "validating data",
                verification_status="InProgress",
            )
            report = await self._validate_recovered_data(run, target_instance_id)
            if not report.success:
                raise RecoveryError(f"data validation failed for instance {target_instance_id}")

            await self._complete(run)
        except _PipelineAborted:
            self.running_tasks.discard(task.id, run_id=run.entry.run_id)
            logger.info(
                "recovery_task event=pipeline_aborted task_id=%s progress=%s",
                task.id,
                run.progress,
            )
        except RecoveryTimeoutError as exc:
            try:
                await self.expire_task(
                    task.id,
                    str(exc),
                    run_id=run.entry.run_id,
                    actor=run.actor,
                )
            except Exception:  # noqa: BLE001
                logger.exception("recovery_task event=timeout_write_error task_id=%s", task.id)
        except Exception as exc:  # noqa: BLE001
            await self._fail(run, exc)
        else:
            if task.config.get("cleanup_target_instance"):
                await self._cleanup_target(task.id, target_instance_id)

    async def _wait_for_instance_ready(
        self,
        run: _Run,
        instance_id: str,
    ) -> ProviderInstance:
        started = self.clock()
        while True:
            elapsed = (self.clock() - started).total_seconds()
            if elapsed > self.instance_ready_timeout_s:
                raise RecoveryTimeoutError(
                    f"instance {instance_id} not ready within "
                    f"{int(self.instance_ready_timeout_s)} seconds"
                )
            instance = await self._provider_call(self.provider.get_instance, instance_id)
            span = READY_PROGRESS - CLONED_PROGRESS
            ratio = min(elapsed / self.instance_ready_timeout_s, 1.0)
            status = instance.status if instance is not None else "Unknown"
            await self._advance(
                run,
                CLONED_PROGRESS + int(span * ratio),
                f"instance status {status}",
            )
            if instance is not None and instance.status == "Running":
                return instance
            await self.sleep(self.poll_interval_s)

    async def _validate_recovered_data(
        self,
        run: _Run,
        target_instance_id: str,
    ) -> ValidationReport:
        target = await self._provider_call(self.provider.get_instance, target_instance_id)
        if target is None:
            raise ProviderError(f"target instance {target_instance_id} not found")
        rules = run.task.config.get("validation_rules") or {}
        report = await self._provider_call(self.provider.validate_data, target_instance_id, rules)
        await self._write(
            run,
            {
                "progress": max(run.progress, VALIDATED_PROGRESS),
                "verification_result": report.model_dump(mode="json"),
            },
        )
        run.progress = max(run.progress, VALIDATED_PROGRESS)
        return report

    async def _complete(self, run: _Run) -> None:
        now = self.clock()
        duration = _duration_seconds(run.entry.started_at, now)
        await self._write(
            run,
            {
                "status": "Success",
                "progress": 100,
                "completed_at": now,
                "duration_seconds": duration,
                "verification_status": "Passed",
            },
        )
        run.progress = 100
        self.running_tasks.discard(run.task_id, run_id=run.entry.run_id)
        await self._audit(
            run.actor,
            run.task,
            action="execute recovery task",
            operation_type="Execute",
            status="Success",
            description=f"recovery task succeeded in {duration} seconds",
            risk_level="Medium",
        )
        logger.info(
            "recovery_task event=succeeded task_id=%s duration_s=%s",
            run.task_id,
            duration,
        )

    async def _fail(self, run: _Run, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        now = self.clock()
        try:
            failed = await self._store(
                self.storage.update_task,
                run.task_id,
                {
                    "status": "Failed",
                    "completed_at": now,
                    "duration_seconds": _duration_seconds(run.entry.started_at, now),
                    "error_message": message,
                    "verification_status": "Failed",
                },
                expected_status=("Running",),
            )
        except Exception:  # noqa: BLE001
            logger.exception("recovery_task event=fail_write_error task_id=%s", run.task_id)
            failed = None
        finally:
            self.running_tasks.discard(run.task_id, run_id=run.entry.run_id)

        logger.error(
            "recovery_task event=failed task_id=%s progress=%s error=%s",
            run.task_id,
            run.progress,
            message,
        )
        if failed is None:
            return
        await self._audit(
            run.actor,
            run.task,
            action="execute recovery task",
            operation_type="Execute",
            status="Failed",
            description=f"recovery task failed: {message}",
            risk_level="High",
        )

    async def _cleanup_target(self, task_id: str, target_instance_id: str) -> None:
        try:
            await self._provider_call(self.provider.delete_instance, target_instance_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "recovery_task event=cleanup_failed task_id=%s target=%s error=%s",
                task_id,
                target_instance_id,
                exc,
            )
            return
        logger.info(
            "recovery_task event=cleanup_done task_id=%s target=%s",
            task_id,
            target_instance_id,
        )

    async def _advance(self, run: _Run, progress: int, note: str, **changes: Any) -> None:
        value = max(run.progress, progress)
        await self._write(run, {"progress": value, **changes})
        run.progress = value
        logger.info(
            "recovery_task event=progress task_id=%s progress=%s note=%s",
            run.task_id,
            value,
            note,
        )

    async def _write(self, run: _Run, changes: dict[str, Any]) -> RecoveryTask:
        try:
            updated = await self._store(
                self.storage.update_task,
                run.task_id,
                changes,
                expected_status=("Running",),
            )
        except KeyError as exc:
            raise _PipelineAborted(run.task_id) from exc
        if updated is None:
            raise _PipelineAborted(run.task_id)
        run.task = updated
        return updated

    def _check_executable(self, task: RecoveryTask) -> None:
        if task.status == "Running":
            raise ConflictError("task is already running")
        if task.status == "Success":
            raise ConflictError("task already succeeded")
        if task.status in TERMINAL_STATUSES and task.status not in EXECUTABLE_STATUSES:
            raise ConflictError(f"cannot execute task in status {task.status}")

    async def _audit(
        self,
        actor: Actor,
        task: RecoveryTask,
        *,
        action: str,
        operation_type: str,
        status: str,
        description: str,
        risk_level: str,
    ) -> None:
        event = AuditEvent(
            actor_id=actor.id,
            actor_name=actor.username,
            action=action,
            resource_type="RecoveryTask",
            resource_id=task.id,
            resource_name=task.task_name,
            operation_type=operation_type,
            status=status,
            description=description,
            risk_level=risk_level,
            created_at=self.clock(),
        )
        await asyncio.to_thread(record_safely, self.audit_sink, event)

    @staticmethod
    async def _store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    @staticmethod
    async def _provider_call(fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except RecoveryError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ProviderError(str(exc) or exc.__class__.__name__) from exc


def _duration_seconds(started_at: datetime | None, ended_at: datetime) -> int | None:
    if started_at is None:
        return None
    return max(int((ended_at - started_at).total_seconds()), 0)


__all__ = [
    "AnnualTaskBatch",
    "ExecutionTicket",
    "RecoveryOrchestrator",
    "EXECUTABLE_STATUSES",
]
