"""Simulated RDS management gateway for local runs and contract tests.

Run with: uvicorn recovery_orchestrator.mock_systems.rds_api:app --port 8090
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Path
from pydantic import BaseModel, Field


class Instance(BaseModel):
    instance_id: str
    instance_name: str | None = None
    engine: str = "MySQL"
    status: str = "Running"


class RegisterInstanceRequest(BaseModel):
    instance_id: str = Field(..., min_length=1)
    instance_name: str | None = None
    engine: str = "MySQL"


class CloneRequest(BaseModel):
    region: str
    target_instance_name: str = Field(..., min_length=1)
    instance_class: str
    storage_size: int = Field(..., ge=1)
    restore_type: Literal["BackupSet", "PointInTime"]
    backup_id: str | None = None
    restore_time: str | None = None


class ValidateRequest(BaseModel):
    rules: dict[str, Any] = Field(default_factory=dict)


class RdsStore:
    def __init__(self, *, ready_after_polls: int = 1) -> None:
        self._instances: dict[str, dict[str, Any]] = {}
        self._polls: dict[str, int] = {}
        self.ready_after_polls = ready_after_polls

    def register(self, payload: RegisterInstanceRequest) -> dict[str, Any]:
        record = {
            "instance_id": payload.instance_id,
            "instance_name": payload.instance_name or payload.instance_id,
            "engine": payload.engine,
            "status": "Running",
        }
        self._instances[payload.instance_id] = record
        return record

    def get(self, instance_id: str) -> dict[str, Any] | None:
        record = self._instances.get(instance_id)
        if record is None:
            return None
        if record["status"] == "Creating":
            # Clones come up after a fixed number of status polls.
            self._polls[instance_id] = self._polls.get(instance_id, 0) + 1
            if self._polls[instance_id] >= self.ready_after_polls:
                record["status"] = "Running"
        return record

    def clone(self, source_id: str, payload: CloneRequest) -> dict[str, Any]:
        source = self._instances.get(source_id)
        if source is None:
            raise KeyError(source_id)
        clone_id = f"rm-{uuid4().hex[:12]}"
        self._instances[clone_id] = {
            "instance_id": clone_id,
            "instance_name": payload.target_instance_name,
            "engine": source["engine"],
            "status": "Creating",
        }
        return {
            "provider_task_id": clone_id,
            "order_id": uuid4().hex[:10],
            "request_id": str(uuid4()),
        }

    def delete(self, instance_id: str) -> dict[str, Any]:
        if self._instances.pop(instance_id, None) is None:
            raise KeyError(instance_id)
        return {"request_id": str(uuid4())}


store = RdsStore()
app = FastAPI(
    title="Mock RDS Gateway",
    version="1.0.0",
    description="Local simulation of the managed database provider API.",
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/instances", response_model=Instance, status_code=201)
def register_instance(payload: RegisterInstanceRequest) -> Instance:
    return Instance.model_validate(store.register(payload))


@app.get("/instances/{instance_id}", response_model=Instance)
def get_instance(instance_id: str = Path(...)) -> Instance:
    record = store.get(instance_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")
    return Instance.model_validate(record)


@app.post("/instances/{instance_id}/clone")
def clone_instance(payload: CloneRequest, instance_id: str = Path(...)) -> dict[str, Any]:
    if payload.restore_type == "PointInTime" and not payload.restore_time:
        raise HTTPException(status_code=400, detail="restore_time is required")
    try:
        return store.clone(instance_id, payload)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found") from exc


@app.post("/instances/{instance_id}/validate")
def validate_instance(payload: ValidateRequest, instance_id: str = Path(...)) -> dict[str, Any]:
    if store.get(instance_id) is None:
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")
    failing = set(payload.rules.get("fail_checks", []))
    checks = ["data_integrity", "data_consistency", "business_rules", "performance"]
    details = {name: {"passed": name not in failing} for name in checks}
    return {
        "success": not failing,
        "details": details,
        "validated_at": datetime.now(timezone.utc).isoformat(),
    }


@app.delete("/instances/{instance_id}")
def delete_instance(instance_id: str = Path(...)) -> dict[str, Any]:
    try:
        return store.delete(instance_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found") from exc
