"""FastAPI app entrypoint for the recovery orchestrator."""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse

from recovery_orchestrator.api.schemas import (
    AnnualTasksRequest,
    CreateInstanceRequest,
    CreateTaskRequest,
    Pagination,
    TaskListResponse,
    UpdateTaskRequest,
)
from recovery_orchestrator.config.settings import Settings, get_settings
from recovery_orchestrator.errors import ConflictError, NotFoundError
from recovery_orchestrator.provider.base import CloudProviderClient
from recovery_orchestrator.provider.http_client import HttpCloudProviderClient
from recovery_orchestrator.recovery.clock import Clock, Sleeper, asyncio_sleep, utc_now
from recovery_orchestrator.recovery.orchestrator import (
    AnnualTaskBatch,
    ExecutionTicket,
    RecoveryOrchestrator,
)
from recovery_orchestrator.recovery.scheduler import RecoveryScheduler
from recovery_orchestrator.storage.base import TaskStorage
from recovery_orchestrator.storage.memory import InMemoryTaskStorage
from recovery_orchestrator.storage.models import (
    Actor,
    NewRecoveryTask,
    RDSInstance,
    RecoveryTask,
    TaskFilters,
    TaskStatistics,
    TaskStatus,
    TaskType,
)
from recovery_orchestrator.storage.postgres import PostgresTaskStorage

logger = logging.getLogger(__name__)


def _build_storage(settings: Settings) -> TaskStorage:
    if settings.storage_backend == "memory":
        return InMemoryTaskStorage()
    if not settings.database_url:
        raise RuntimeError(
            "Missing database URL. Set RECOVERY_DATABASE_URL or "
            "RECOVERY_STORAGE_BACKEND=memory before starting the app."
        )
    return PostgresTaskStorage(settings.database_url)


def _build_provider(settings: Settings) -> CloudProviderClient:
    if not settings.provider_base_url:
        raise RuntimeError(
            "Missing provider URL. Set RECOVERY_PROVIDER_BASE_URL before starting the app."
        )
    return HttpCloudProviderClient(
        settings.provider_base_url,
        region=settings.provider_region,
        timeout_s=settings.provider_timeout_s,
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStorage | None,
    provider_override: CloudProviderClient | None,
    clock: Clock,
    sleep: Sleeper,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or _build_storage(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        orchestrator = RecoveryOrchestrator(
            storage=app.state.storage,
            provider=provider_override or _build_provider(settings),
            clock=clock,
            sleep=sleep,
            poll_interval_s=settings.poll_interval_s,
            instance_ready_timeout_s=settings.instance_ready_timeout_s,
            default_instance_class=settings.default_instance_class,
            default_storage_size=settings.default_storage_size,
        )
        app.state.orchestrator = orchestrator
        # Scheduler shares the orchestrator's running-task registry.
        app.state.scheduler = RecoveryScheduler(
            orchestrator,
            running_tasks=orchestrator.running_tasks,
            clock=clock,
            due_task_interval_s=settings.due_task_interval_s,
            stuck_sweep_interval_s=settings.stuck_sweep_interval_s,
            stuck_task_timeout_s=settings.stuck_task_timeout_s,
        )


def create_app(
    *,
    storage: TaskStorage | None = None,
    provider: CloudProviderClient | None = None,
    settings_override: Settings | None = None,
    clock: Clock = utc_now,
    sleep: Sleeper = asyncio_sleep,
) -> FastAPI:
    settings = settings_override or get_settings()
    logging.getLogger("recovery_orchestrator").setLevel(settings.log_level.upper())

    def _ensure(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            provider_override=provider,
            clock=clock,
            sleep=sleep,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure(app)
        scheduler: RecoveryScheduler = app.state.scheduler
        if settings.scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            await app.state.orchestrator.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None and provider is not None:
        _ensure(app)

    def _orchestrator(request: Request) -> RecoveryOrchestrator:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure(request.app)
        return request.app.state.orchestrator

    def _actor(user_id: str | None, username: str | None) -> Actor:
        return Actor(id=user_id or "system", username=username)

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _bad_request(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/instances", response_model=RDSInstance, status_code=status.HTTP_201_CREATED)
    def create_instance(payload: CreateInstanceRequest, request: Request) -> RDSInstance:
        task_storage: TaskStorage = _orchestrator(request).storage
        return task_storage.create_instance(**payload.model_dump())

    @app.get("/instances", response_model=list[RDSInstance])
    def list_instances(request: Request) -> list[RDSInstance]:
        return _orchestrator(request).storage.list_instances()

    @app.get("/instances/{instance_id}", response_model=RDSInstance)
    def get_instance(instance_id: str, request: Request) -> RDSInstance:
        record = _orchestrator(request).storage.get_instance(instance_id)
        if record is None:
            raise NotFoundError(f"RDS instance {instance_id} does not exist")
        return record

    @app.post(
        "/recovery/tasks",
        response_model=RecoveryTask,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_task(
        payload: CreateTaskRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_username: str | None = Header(default=None),
    ) -> RecoveryTask:
        spec = NewRecoveryTask.model_validate(payload.model_dump())
        return await _orchestrator(request).create_task(spec, _actor(x_user_id, x_username))

    @app.get("/recovery/tasks", response_model=TaskListResponse)
    async def list_tasks(
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        task_status: TaskStatus | None = Query(default=None, alias="status"),
        task_type: TaskType | None = None,
        compliance_year: int | None = None,
        is_annual_task: bool | None = None,
        rds_instance_id: str | None = None,
    ) -> TaskListResponse:
        filters = TaskFilters(
            status=task_status,
            task_type=task_type,
            compliance_year=compliance_year,
            is_annual_task=is_annual_task,
            rds_instance_id=rds_instance_id,
        )
        tasks, total = await _orchestrator(request).list_tasks(filters, page=page, limit=limit)
        return TaskListResponse(
            tasks=tasks,
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit),
            ),
        )

    @app.get("/recovery/tasks/{task_id}", response_model=RecoveryTask)
    async def get_task(task_id: str, request: Request) -> RecoveryTask:
        return await _orchestrator(request).get_task(task_id)

    @app.put("/recovery/tasks/{task_id}", response_model=RecoveryTask)
    async def update_task(
        task_id: str,
        payload: UpdateTaskRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_username: str | None = Header(default=None),
    ) -> RecoveryTask:
        changes = payload.model_dump(exclude_unset=True)
        return await _orchestrator(request).update_task(
            task_id,
            changes,
            _actor(x_user_id, x_username),
        )

    @app.delete("/recovery/tasks/{task_id}")
    async def delete_task(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_username: str | None = Header(default=None),
    ) -> dict[str, str]:
        await _orchestrator(request).delete_task(task_id, _actor(x_user_id, x_username))
        return {"message": "recovery task deleted", "task_id": task_id}

    @app.post(
        "/recovery/tasks/{task_id}/execute",
        response_model=ExecutionTicket,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def execute_task(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_username: str | None = Header(default=None),
    ) -> ExecutionTicket:
        return await _orchestrator(request).execute_task(task_id, _actor(x_user_id, x_username))

    @app.post("/recovery/tasks/{task_id}/cancel", response_model=RecoveryTask)
    async def cancel_task(
        task_id: str,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_username: str | None = Header(default=None),
    ) -> RecoveryTask:
        return await _orchestrator(request).cancel_task(task_id, _actor(x_user_id, x_username))

    @app.get("/recovery/statistics", response_model=TaskStatistics)
    async def statistics(
        request: Request,
        year: int | None = None,
        task_type: TaskType | None = None,
    ) -> TaskStatistics:
        filters = TaskFilters(compliance_year=year, task_type=task_type)
        return await _orchestrator(request).get_task_statistics(filters)

    @app.post(
        "/recovery/annual-tasks",
        response_model=AnnualTaskBatch,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_annual_tasks(
        payload: AnnualTasksRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
        x_username: str | None = Header(default=None),
    ) -> AnnualTaskBatch:
        return await _orchestrator(request).create_annual_tasks(
            payload.year,
            payload.instance_ids,
            _actor(x_user_id, x_username),
        )

    return app


app = create_app()
