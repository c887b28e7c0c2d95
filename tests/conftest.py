from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Collection
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from recovery_orchestrator.provider.base import (
    CloneRequest,
    CloneResult,
    DeleteResult,
    ProviderInstance,
    ValidationReport,
)
from recovery_orchestrator.recovery.orchestrator import RecoveryOrchestrator
from recovery_orchestrator.recovery.registry import RunningTaskRegistry
from recovery_orchestrator.storage.memory import InMemoryTaskStorage
from recovery_orchestrator.storage.models import (
    Actor,
    NewRecoveryTask,
    RDSInstance,
    RecoveryTask,
)

START = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeProvider:
    """Test-only provider double that records every call it receives."""

    def __init__(
        self,
        *,
        clone_id: str = "tgt-1",
        statuses: list[str] | None = None,
        validation_success: bool = True,
    ) -> None:
        self.clone_id = clone_id
        # The last status repeats once the list is exhausted.
        self.statuses = list(statuses or ["Running"])
        self.validation_success = validation_success
        self.clone_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.calls: list[tuple[str, Any]] = []

    def get_instance(self, instance_id: str) -> ProviderInstance | None:
        self.calls.append(("get_instance", instance_id))
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return ProviderInstance(instance_id=instance_id, status=status)

    def clone_instance(self, request: CloneRequest) -> CloneResult:
        self.calls.append(("clone_instance", request))
        if self.clone_error is not None:
            raise self.clone_error
        return CloneResult(provider_task_id=self.clone_id, order_id="order-1")

    def validate_data(self, instance_id: str, rules: dict[str, Any]) -> ValidationReport:
        self.calls.append(("validate_data", (instance_id, rules)))
        return ValidationReport(
            success=self.validation_success,
            details={"data_integrity": {"passed": self.validation_success}},
            validated_at="2026-03-01T09:05:00+00:00",
        )

    def delete_instance(self, instance_id: str) -> DeleteResult:
        self.calls.append(("delete_instance", instance_id))
        if self.delete_error is not None:
            raise self.delete_error
        return DeleteResult(request_id="req-delete")

    def called(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]


class RecordingStorage(InMemoryTaskStorage):
    """Memory backend that keeps the progress value of every successful write."""

    def __init__(self) -> None:
        super().__init__()
        self.progress_log: dict[str, list[int]] = {}

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> RecoveryTask | None:
        updated = super().update_task(task_id, changes, expected_status=expected_status)
        if updated is not None:
            self.progress_log.setdefault(task_id, []).append(updated.progress)
        return updated


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class AdvancingSleep:
    """Sleeper that moves the fake clock forward instead of waiting."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


class GatedSleep:
    """Sleeper that parks the pipeline until the test opens the gate."""

    def __init__(self) -> None:
        self.reached = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        _ = seconds
        self.reached.set()
        await self.gate.wait()


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def actor() -> Actor:
    return Actor(id="user-1", username="alice")


@pytest.fixture
def instance(storage: RecordingStorage) -> RDSInstance:
    return storage.create_instance(
        instance_id="rm-src-001",
        instance_name="orders-db",
        region="cn-shenzhen",
        status="Running",
    )


@pytest_asyncio.fixture
async def orchestrator(
    storage: RecordingStorage,
    provider: FakeProvider,
    clock: FakeClock,
) -> AsyncIterator[RecoveryOrchestrator]:
    orchestrator = RecoveryOrchestrator(
        storage=storage,
        provider=provider,
        running_tasks=RunningTaskRegistry(),
        clock=clock,
        sleep=AdvancingSleep(clock),
        poll_interval_s=30,
        instance_ready_timeout_s=30 * 60,
    )
    yield orchestrator
    await orchestrator.aclose()


def make_task(instance: RDSInstance, **overrides: Any) -> NewRecoveryTask:
    fields: dict[str, Any] = {
        "task_name": "orders-db restore drill",
        "rds_instance_id": instance.id,
        "source_instance_id": instance.instance_id,
        "target_instance_name": "orders-db-drill",
        "restore_type": "BackupSet",
        "backup_id": "bk-100",
    }
    fields.update(overrides)
    return NewRecoveryTask(**fields)
