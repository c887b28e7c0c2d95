"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

from recovery_orchestrator.storage.base import check_task_changes
from recovery_orchestrator.storage.models import (
    AuditEvent,
    NewRecoveryTask,
    RDSInstance,
    RecoveryTask,
    TaskFilters,
)

ACTIVE_ANNUAL_STATUSES = ["Pending", "Running", "Success"]
_JSON_TASK_COLUMNS = frozenset({"config", "verification_result"})


class PostgresTaskStorage:
    """Persist instances, recovery tasks and audit events in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("RECOVERY_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS rds_instances (
                    id UUID PRIMARY KEY,
                    instance_id TEXT NOT NULL UNIQUE,
                    instance_name TEXT NOT NULL,
                    engine TEXT NOT NULL,
                    region TEXT,
                    status TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recovery_tasks (
                    id UUID PRIMARY KEY,
                    task_name TEXT NOT NULL,
                    rds_instance_id UUID NOT NULL REFERENCES rds_instances(id),
                    source_instance_id TEXT NOT NULL,
                    backup_id TEXT,
                    backup_type TEXT NOT NULL,
                    restore_time TIMESTAMPTZ,
                    restore_type TEXT NOT NULL,
                    target_instance_name TEXT NOT NULL,
                    target_instance_id TEXT,
                    task_type TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL DEFAULT 0,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    duration_seconds INTEGER,
                    error_message TEXT,
                    verification_status TEXT NOT NULL,
                    verification_result JSONB,
                    compliance_year INTEGER,
                    is_annual_task BOOLEAN NOT NULL DEFAULT FALSE,
                    scheduled_at TIMESTAMPTZ,
                    config JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_by TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            for column in (
                "rds_instance_id",
                "status",
                "task_type",
                "compliance_year",
                "is_annual_task",
                "created_at",
            ):
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_recovery_tasks_{column} "
                    f"ON recovery_tasks({column})"
                )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id BIGSERIAL PRIMARY KEY,
                    actor_id TEXT NOT NULL,
                    actor_name TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    resource_name TEXT,
                    operation_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    risk_level TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_logs_resource_id
                ON audit_logs(resource_id)
                """)
            conn.commit()

    def create_instance(
        self,
        *,
        instance_id: str,
        instance_name: str,
        engine: str = "MySQL",
        region: str | None = None,
        status: str = "Unknown",
    ) -> RDSInstance:
        record_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO rds_instances (
                    id, instance_id, instance_name, engine, region, status, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (record_id, instance_id, instance_name, engine, region, status, now),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist RDS instance")
        return self._row_to_instance(row)

    def get_instance(self, instance_ref: str) -> RDSInstance | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rds_instances WHERE id::text = %s",
                (instance_ref,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_instance(row)

    def list_instances(self) -> list[RDSInstance]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM rds_instances ORDER BY created_at").fetchall()
        return [self._row_to_instance(row) for row in rows]

    def create_task(self, task: NewRecoveryTask, *, created_by: str) -> RecoveryTask:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO recovery_tasks (
                    id,
                    task_name,
                    rds_instance_id,
                    source_instance_id,
                    backup_id,
                    backup_type,
                    restore_time,
                    restore_type,
                    target_instance_name,
                    task_type,
                    priority,
                    status,
                    progress,
                    verification_status,
                    compliance_year,
                    is_annual_task,
                    scheduled_at,
                    config,
                    created_by,
                    created_at,
                    updated_at
                ) VALUES (
                    %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                )
                RETURNING *
                """,
                (
                    task_id,
                    task.task_name,
                    task.rds_instance_id,
                    task.source_instance_id,
                    task.backup_id,
                    task.backup_type,
                    task.restore_time,
                    task.restore_type,
                    task.target_instance_name,
                    task.task_type,
                    task.priority,
                    "Pending",
                    0,
                    "Pending",
                    task.compliance_year,
                    task.is_annual_task,
                    task.scheduled_at,
                    self._json_wrapper(task.config),
                    created_by,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist recovery task")
        return self._row_to_task(row)

    def get_task(self, task_id: str) -> RecoveryTask | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM recovery_tasks WHERE id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        changes: dict[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> RecoveryTask | None:
        check_task_changes(changes)
        assignments = [f"{column} = %s" for column in changes]
        params: list[Any] = [
            self._json_wrapper(value) if column in _JSON_TASK_COLUMNS and value is not None
            else value
            for column, value in changes.items()
        ]
        assignments.append("updated_at = %s")
        params.append(datetime.now(tz=UTC))
        query = f"UPDATE recovery_tasks SET {', '.join(assignments)} WHERE id::text = %s"
        params.append(task_id)
        if expected_status is not None:
            # Compare-and-swap on status closes the read-then-write race.
            query += " AND status = ANY(%s)"
            params.append(list(expected_status))
        query += " RETURNING *"

        with self._lock, self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            if row is None:
                exists = conn.execute(
                    "SELECT 1 FROM recovery_tasks WHERE id::text = %s",
                    (task_id,),
                ).fetchone()
            conn.commit()
        if row is None:
            if exists is None:
                raise KeyError(f"Task {task_id} does not exist")
            return None
        return self._row_to_task(row)

    def list_tasks(
        self,
        filters: TaskFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[RecoveryTask], int]:
        where_sql, params = self._where_clause(filters)
        with self._lock, self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM recovery_tasks{where_sql}",
                params,
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM recovery_tasks{where_sql}
                ORDER BY created_at DESC
                OFFSET %s LIMIT %s
                """,
                [*params, offset, limit],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_task(row) for row in rows], total

    def find_due_tasks(self, now: datetime) -> list[RecoveryTask]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM recovery_tasks
                WHERE status = 'Pending'
                  AND scheduled_at IS NOT NULL
                  AND scheduled_at <= %s
                ORDER BY scheduled_at
                """,
                (now,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def find_active_annual_task(
        self,
        rds_instance_id: str,
        compliance_year: int,
    ) -> RecoveryTask | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM recovery_tasks
                WHERE rds_instance_id::text = %s
                  AND compliance_year = %s
                  AND is_annual_task
                  AND status = ANY(%s)
                LIMIT 1
                """,
                (rds_instance_id, compliance_year, ACTIVE_ANNUAL_STATUSES),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def count_tasks_by_status(self, filters: TaskFilters) -> dict[str, int]:
        where_sql, params = self._where_clause(filters)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT status, COUNT(*) AS count
                FROM recovery_tasks{where_sql}
                GROUP BY status
                """,
                params,
            ).fetchall()
        return {str(row["status"]): int(row["count"]) for row in rows}

    def delete_task(
        self,
        task_id: str,
        *,
        expected_status: Collection[str] | None = None,
    ) -> bool:
        query = "DELETE FROM recovery_tasks WHERE id::text = %s"
        params: list[Any] = [task_id]
        if expected_status is not None:
            query += " AND status = ANY(%s)"
            params.append(list(expected_status))
        query += " RETURNING id"
        with self._lock, self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        return row is not None

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (
                    actor_id,
                    actor_name,
                    action,
                    resource_type,
                    resource_id,
                    resource_name,
                    operation_type,
                    status,
                    description,
                    risk_level,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.actor_id,
                    event.actor_name,
                    event.action,
                    event.resource_type,
                    event.resource_id,
                    event.resource_name,
                    event.operation_type,
                    event.status,
                    event.description,
                    event.risk_level,
                    event.created_at or datetime.now(tz=UTC),
                ),
            )
            conn.commit()

    def list_audit_events(self, *, resource_id: str | None = None) -> list[AuditEvent]:
        query = "SELECT * FROM audit_logs"
        params: list[Any] = []
        if resource_id is not None:
            query += " WHERE resource_id = %s"
            params.append(resource_id)
        query += " ORDER BY id"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            AuditEvent.model_validate({key: value for key, value in row.items() if key != "id"})
            for row in rows
        ]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _where_clause(filters: TaskFilters) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in filters.model_dump(exclude_none=True).items():
            if column == "rds_instance_id":
                clauses.append("rds_instance_id::text = %s")
            else:
                clauses.append(f"{column} = %s")
            params.append(value)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime_optional(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_instance(cls, row: Any) -> RDSInstance:
        return RDSInstance(
            id=str(row["id"]),
            instance_id=row["instance_id"],
            instance_name=row["instance_name"],
            engine=row["engine"],
            region=row["region"],
            status=row["status"],
            created_at=cls._parse_datetime_optional(row["created_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> RecoveryTask:
        return RecoveryTask(
            id=str(row["id"]),
            task_name=row["task_name"],
            rds_instance_id=str(row["rds_instance_id"]),
            source_instance_id=row["source_instance_id"],
            backup_id=row["backup_id"],
            backup_type=row["backup_type"],
            restore_time=cls._parse_datetime_optional(row["restore_time"]),
            restore_type=row["restore_type"],
            target_instance_name=row["target_instance_name"],
            target_instance_id=row["target_instance_id"],
            task_type=row["task_type"],
            priority=row["priority"],
            status=row["status"],
            progress=int(row["progress"]),
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
            duration_seconds=row["duration_seconds"],
            error_message=row["error_message"],
            verification_status=row["verification_status"],
            verification_result=cls._parse_json_optional(row["verification_result"]),
            compliance_year=row["compliance_year"],
            is_annual_task=bool(row["is_annual_task"]),
            scheduled_at=cls._parse_datetime_optional(row["scheduled_at"]),
            config=cls._parse_json_optional(row["config"]) or {},
            created_by=row["created_by"],
            created_at=cls._parse_datetime_optional(row["created_at"]),
            updated_at=cls._parse_datetime_optional(row["updated_at"]),
        )
