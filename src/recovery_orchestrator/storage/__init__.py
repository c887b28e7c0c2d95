"""Storage backends and models."""

from recovery_orchestrator.storage.base import TaskStorage
from recovery_orchestrator.storage.memory import InMemoryTaskStorage
from recovery_orchestrator.storage.models import (
    Actor,
    AuditEvent,
    NewRecoveryTask,
    RDSInstance,
    RecoveryTask,
    TaskFilters,
    TaskStatistics,
)
from recovery_orchestrator.storage.postgres import PostgresTaskStorage

__all__ = [
    "Actor",
    "AuditEvent",
    "InMemoryTaskStorage",
    "NewRecoveryTask",
    "PostgresTaskStorage",
    "RDSInstance",
    "RecoveryTask",
    "TaskFilters",
    "TaskStatistics",
    "TaskStorage",
]
