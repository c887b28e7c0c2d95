"""Process-local registry of recovery tasks whose pipeline is executing.

The registry is owned by one orchestrator instance and shared with the
scheduler. It is not replicated: running more than one orchestrator process
against the same database needs an external registry.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from recovery_orchestrator.storage.models import Actor


@dataclass(frozen=True)
class RunningTask:
    task_id: str
    started_at: datetime
    actor: Actor
    # Distinguishes two executions of the same task (retry after Failed).
    run_id: str = field(default_factory=lambda: uuid4().hex)


class RunningTaskRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, RunningTask] = {}

    def add(self, entry: RunningTask) -> None:
        with self._lock:
            self._entries[entry.task_id] = entry

    def get(self, task_id: str) -> RunningTask | None:
        with self._lock:
            return self._entries.get(task_id)

    def discard(self, task_id: str, *, run_id: str | None = None) -> bool:
        """Remove an entry; missing entries and stale run ids are a no-op."""
        with self._lock:
            current = self._entries.get(task_id)
            if current is None:
                return False
            if run_id is not None and current.run_id != run_id:
                return False
            del self._entries[task_id]
            return True

    def snapshot(self) -> list[RunningTask]:
        with self._lock:
            return list(self._entries.values())

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
