"""Storage interfaces for recovery task persistence."""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol

from recovery_orchestrator.storage.models import (
    AuditEvent,
    NewRecoveryTask,
    RDSInstance,
    RecoveryTask,
    TaskFilters,
)

# Columns the orchestrator is allowed to change after creation.
MUTABLE_TASK_FIELDS: frozenset[str] = frozenset(
    {
        "task_name",
        "priority",
        "scheduled_at",
        "config",
        "status",
        "progress",
        "started_at",
        "completed_at",
        "duration_seconds",
        "error_message",
        "verification_status",
        "verification_result",
        "target_instance_id",
    }
)


def check_task_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_TASK_FIELDS
    if unknown:
        raise ValueError(f"Unsupported task fields: {sorted(unknown)}")


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_instance(
        self,
        *,
        instance_id: str,
        instance_name: str,
        engine: str = "MySQL",
        region: str | None = None,
        status: str = "Unknown",
    ) -> RDSInstance: ...

    def get_instance(self, instance_ref: str) -> RDSInstance | None: ...

    def list_instances(self) -> list[RDSInstance]: ...

    def create_task(self, task: NewRecoveryTask, *, created_by: str) -> RecoveryTask: ...

    def get_task(self, task_id: str) -> RecoveryTask | None: ...

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> RecoveryTask | None:
        """Apply changes atomically.

        Returns None without writing when ``expected_status`` is given and the
        stored status is not in it. Raises KeyError for unknown task ids.
        """
        ...

    def list_tasks(
        self,
        filters: TaskFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[RecoveryTask], int]: ...

    def find_due_tasks(self, now: datetime) -> list[RecoveryTask]: ...

    def find_active_annual_task(
        self,
        rds_instance_id: str,
        compliance_year: int,
    ) -> RecoveryTask | None: ...

    def count_tasks_by_status(self, filters: TaskFilters) -> dict[str, int]: ...

    def delete_task(
        self,
        task_id: str,
        *,
        expected_status: Collection[str] | None = None,
    ) -> bool:
        """Delete a task; False when it is missing or its status is not expected."""
        ...


    def record_audit_event(self, event: AuditEvent) -> None: ...

    def list_audit_events(self, *, resource_id: str | None = None) -> list[AuditEvent]: ...
