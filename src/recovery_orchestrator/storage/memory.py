"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from recovery_orchestrator.storage.base import check_task_changes
from recovery_orchestrator.storage.models import (
    AuditEvent,
    NewRecoveryTask,
    RDSInstance,
    RecoveryTask,
    TaskFilters,
)

ACTIVE_ANNUAL_STATUSES = ("Pending", "Running", "Success")


class InMemoryTaskStorage:
    """Dict-backed implementation; a lock makes conditional updates atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instances: dict[str, RDSInstance] = {}
        self._tasks: dict[str, RecoveryTask] = {}
        self._audit_events: list[AuditEvent] = []

    def migrate(self) -> None:
        return None

    def create_instance(
        self,
        *,
        instance_id: str,
        instance_name: str,
        engine: str = "MySQL",
        region: str | None = None,
        status: str = "Unknown",
    ) -> RDSInstance:
        record = RDSInstance(
            id=str(uuid4()),
            instance_id=instance_id,
            instance_name=instance_name,
            engine=engine,
            region=region,
            status=status,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._instances[record.id] = record
        return record

    def get_instance(self, instance_ref: str) -> RDSInstance | None:
        with self._lock:
            record = self._instances.get(instance_ref)
        return record.model_copy(deep=True) if record else None

    def list_instances(self) -> list[RDSInstance]:
        with self._lock:
            records = list(self._instances.values())
        records.sort(key=lambda item: item.created_at)
        return [record.model_copy(deep=True) for record in records]

    def create_task(self, task: NewRecoveryTask, *, created_by: str) -> RecoveryTask:
        now = datetime.now(UTC)
        record = RecoveryTask(
            **task.model_dump(),
            id=str(uuid4()),
            created_by=created_by,
            status="Pending",
            progress=0,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._tasks[record.id] = record
        return record.model_copy(deep=True)

    def get_task(self, task_id: str) -> RecoveryTask | None:
        with self._lock:
            record = self._tasks.get(task_id)
        return record.model_copy(deep=True) if record else None

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> RecoveryTask | None:
        check_task_changes(changes)
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            if expected_status is not None and current.status not in expected_status:
                return None
            updated = current.model_copy(
                update={**changes, "updated_at": datetime.now(UTC)},
                deep=True,
            )
            # model_copy skips validation; re-validate so bad values fail here.
            updated = RecoveryTask.model_validate(updated.model_dump())
            self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    def list_tasks(
        self,
        filters: TaskFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[RecoveryTask], int]:
        with self._lock:
            matching = [task for task in self._tasks.values() if filters.matches(task)]
        matching.sort(key=lambda item: item.created_at, reverse=True)
        page = matching[offset : offset + limit]
        return [task.model_copy(deep=True) for task in page], len(matching)

    def find_due_tasks(self, now: datetime) -> list[RecoveryTask]:
        with self._lock:
            due = [
                task
                for task in self._tasks.values()
                if task.status == "Pending"
                and task.scheduled_at is not None
                and task.scheduled_at <= now
            ]
        due.sort(key=lambda item: item.scheduled_at)
        return [task.model_copy(deep=True) for task in due]

    def find_active_annual_task(
        self,
        rds_instance_id: str,
        compliance_year: int,
    ) -> RecoveryTask | None:
        with self._lock:
            for task in self._tasks.values():
                if (
                    task.is_annual_task
                    and task.rds_instance_id == rds_instance_id
                    and task.compliance_year == compliance_year
                    and task.status in ACTIVE_ANNUAL_STATUSES
                ):
                    return task.model_copy(deep=True)
        return None

    def count_tasks_by_status(self, filters: TaskFilters) -> dict[str, int]:
        with self._lock:
            counts = Counter(task.status for task in self._tasks.values() if filters.matches(task))
        return dict(counts)

    def delete_task(
        self,
        task_id: str,
        *,
        expected_status: Collection[str] | None = None,
    ) -> bool:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False
            if expected_status is not None and current.status not in expected_status:
                return False
            del self._tasks[task_id]
            return True

    def record_audit_event(self, event: AuditEvent) -> None:
        stamped = event.model_copy(update={"created_at": event.created_at or datetime.now(UTC)})
        with self._lock:
            self._audit_events.append(stamped)

    def list_audit_events(self, *, resource_id: str | None = None) -> list[AuditEvent]:
        with self._lock:
            events = list(self._audit_events)
        if resource_id is not None:
            events = [event for event in events if event.resource_id == resource_id]
        return events
