"""Audit sinks for orchestrator events."""

from __future__ import annotations

import logging
from typing import Protocol

from recovery_orchestrator.storage.base import TaskStorage
from recovery_orchestrator.storage.models import AuditEvent

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class StorageAuditSink:
    """Persist audit events through the task storage backend."""

    def __init__(self, storage: TaskStorage) -> None:
        self.storage = storage

    def record(self, event: AuditEvent) -> None:
        self.storage.record_audit_event(event)
        logger.info(
            "audit event=recorded actor_id=%s action=%s resource_id=%s status=%s risk=%s",
            event.actor_id,
            event.action,
            event.resource_id,
            event.status,
            event.risk_level,
        )


def record_safely(sink: AuditSink, event: AuditEvent) -> None:
    """Record an event; a sink failure is logged and never propagates."""
    try:
        sink.record(event)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "audit event=record_failed action=%s resource_id=%s error=%s",
            event.action,
            event.resource_id,
            exc,
        )
