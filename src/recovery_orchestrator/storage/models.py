"""Pydantic models shared by the orchestrator, API and persistence backends.

Terms used in this file:
- Backup set: a complete snapshot a new instance can be cloned from.
- Point-in-time restore: clone state as of a timestamp (base backup + logs).
- Compliance year: calendar year an annual recovery test counts towards.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

# Task lifecycle states. Success, Failed, Cancelled and Timeout are terminal.
TaskStatus = Literal["Pending", "Running", "Success", "Failed", "Cancelled", "Timeout"]
TASK_STATUSES: tuple[str, ...] = (
    "Pending",
    "Running",
    "Success",
    "Failed",
    "Cancelled",
    "Timeout",
)
TERMINAL_STATUSES: frozenset[str] = frozenset({"Success", "Failed", "Cancelled", "Timeout"})

VerificationStatus = Literal["Pending", "InProgress", "Passed", "Failed"]
RestoreType = Literal["BackupSet", "PointInTime"]
BackupType = Literal["FullBackup", "IncrementalBackup", "LogBackup"]
TaskType = Literal["Manual", "Scheduled", "Annual"]
TaskPriority = Literal["Low", "Normal", "High", "Critical"]
InstanceStatus = Literal["Running", "Creating", "Stopped", "Deleting", "Rebooting", "Unknown"]

OperationType = Literal["Create", "Read", "Update", "Delete", "Execute"]
AuditStatus = Literal["Success", "Failed", "Warning"]
RiskLevel = Literal["Low", "Medium", "High", "Critical"]


class Actor(BaseModel):
    """Whoever triggered an operation (API user or the scheduler)."""

    id: str
    username: str | None = None


class RDSInstance(BaseModel):
    """Registered source database instance."""

    id: str
    # Identifier of the instance at the cloud provider.
    instance_id: str
    instance_name: str
    engine: str = "MySQL"
    region: str | None = None
    status: InstanceStatus = "Unknown"
    created_at: datetime


class NewRecoveryTask(BaseModel):
    """Fields fixed at task creation time.

    The backup selector depends on ``restore_type``: BackupSet restores use
    ``backup_id`` (None means the latest full backup set), PointInTime
    restores use ``restore_time``. Supplying the other selector is an error.
    """

    task_name: str = Field(min_length=1, max_length=100)
    rds_instance_id: str
    source_instance_id: str = Field(min_length=1)
    target_instance_name: str = Field(min_length=1, max_length=100)
    restore_type: RestoreType = "BackupSet"
    backup_id: str | None = None
    backup_type: BackupType = "FullBackup"
    restore_time: datetime | None = None
    task_type: TaskType = "Manual"
    priority: TaskPriority = "Normal"
    compliance_year: int | None = Field(default=None, ge=2020, le=2050)
    is_annual_task: bool = False
    scheduled_at: datetime | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_restore_selector(self) -> NewRecoveryTask:
        if self.restore_type == "PointInTime":
            if self.restore_time is None:
                raise ValueError("PointInTime restore requires restore_time")
            if self.backup_id is not None:
                raise ValueError("PointInTime restore does not accept backup_id")
        elif self.restore_time is not None:
            raise ValueError("BackupSet restore does not accept restore_time")
        if self.is_annual_task and self.compliance_year is None:
            raise ValueError("annual tasks require compliance_year")
        return self


class RecoveryTask(NewRecoveryTask):
    """Canonical recovery task record returned by storage and API."""

    id: str
    created_by: str
    status: TaskStatus = "Pending"
    progress: int = Field(default=0, ge=0, le=100)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    error_message: str | None = None
    verification_status: VerificationStatus = "Pending"
    verification_result: dict[str, Any] | None = None
    # Assigned once the provider accepts the clone request.
    target_instance_id: str | None = None
    created_at: datetime
    updated_at: datetime


class TaskFilters(BaseModel):
    """Equality predicates used by list and statistics queries."""

    status: TaskStatus | None = None
    task_type: TaskType | None = None
    compliance_year: int | None = None
    is_annual_task: bool | None = None
    rds_instance_id: str | None = None

    def matches(self, task: RecoveryTask) -> bool:
        for field_name, expected in self.model_dump(exclude_none=True).items():
            if getattr(task, field_name) != expected:
                return False
        return True


class TaskStatistics(BaseModel):
    """Fixed-shape tally of tasks per status."""

    total: int = 0
    pending: int = 0
    running: int = 0
    success: int = 0
    failed: int = 0
    cancelled: int = 0
    timeout: int = 0


class AuditEvent(BaseModel):
    """Structured record of one orchestrator operation."""

    actor_id: str
    actor_name: str | None = None
    action: str
    resource_type: str = "RecoveryTask"
    resource_id: str | None = None
    resource_name: str | None = None
    operation_type: OperationType
    status: AuditStatus
    description: str = ""
    risk_level: RiskLevel = "Low"
    created_at: datetime | None = None
