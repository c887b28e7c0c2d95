"""Recovery task orchestration: state machine, running-task registry, scheduler."""

from recovery_orchestrator.recovery.orchestrator import (
    AnnualTaskBatch,
    ExecutionTicket,
    RecoveryOrchestrator,
)
from recovery_orchestrator.recovery.registry import RunningTask, RunningTaskRegistry
from recovery_orchestrator.recovery.scheduler import RecoveryScheduler

__all__ = [
    "AnnualTaskBatch",
    "ExecutionTicket",
    "RecoveryOrchestrator",
    "RecoveryScheduler",
    "RunningTask",
    "RunningTaskRegistry",
]
