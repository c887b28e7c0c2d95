"""Request/response bodies specific to the HTTP layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from recovery_orchestrator.storage.models import (
    InstanceStatus,
    NewRecoveryTask,
    RecoveryTask,
    TaskPriority,
)


class CreateInstanceRequest(BaseModel):
    instance_id: str = Field(min_length=1)
    instance_name: str = Field(min_length=1)
    engine: str = "MySQL"
    region: str | None = None
    status: InstanceStatus = "Unknown"


class CreateTaskRequest(NewRecoveryTask):
    model_config = ConfigDict(extra="forbid")


class UpdateTaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_name: str | None = Field(default=None, min_length=1, max_length=100)
    priority: TaskPriority | None = None
    scheduled_at: datetime | None = None
    config: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _only_schedule_is_nullable(self) -> UpdateTaskRequest:
        # scheduled_at: null clears the schedule; the other fields cannot be unset.
        for name in ("task_name", "priority", "config"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class AnnualTasksRequest(BaseModel):
    year: int = Field(ge=2020, le=2050)
    instance_ids: list[str] = Field(min_length=1)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class TaskListResponse(BaseModel):
    tasks: list[RecoveryTask]
    pagination: Pagination
