"""Contract between the orchestrator and the managed-database cloud provider."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class BackupSelector(StrictModel):
    """backup_id for BackupSet (None: latest set), restore_time for PointInTime."""

    restore_type: Literal["BackupSet", "PointInTime"]
    backup_id: str | None = None
    restore_time: datetime | None = None

    @model_validator(mode="after")
    def _check_selector(self) -> BackupSelector:
        if self.restore_type == "PointInTime" and self.restore_time is None:
            raise ValueError("PointInTime restore requires restore_time")
        return self


class CloneRequest(StrictModel):
    source_instance_id: str
    target_instance_name: str
    backup: BackupSelector
    instance_class: str
    storage_size: int = Field(ge=1)


class CloneResult(BaseModel):
    # Identifier of the new instance; used as the task's target instance id.
    provider_task_id: str
    order_id: str | None = None
    request_id: str | None = None


class ProviderInstance(BaseModel):
    instance_id: str
    status: str = "Unknown"
    instance_name: str | None = None
    engine: str | None = None


class ValidationReport(BaseModel):
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)
    validated_at: str | None = None


class DeleteResult(BaseModel):
    request_id: str | None = None


class CloudProviderClient(Protocol):
    def get_instance(self, instance_id: str) -> ProviderInstance | None: ...

    def clone_instance(self, request: CloneRequest) -> CloneResult: ...

    def validate_data(self, instance_id: str, rules: dict[str, Any]) -> ValidationReport: ...

    def delete_instance(self, instance_id: str) -> DeleteResult: ...
