"""FastAPI app entrypoint for the job orchestrator.

Route handlers stay thin: they parse the request, call ``LifecycleManager`` or
``LocalTaskQueue`` and return the record. Errors from the taxonomy in
``job_orchestrator.errors`` are turned into responses by the exception
handlers registered in ``create_app``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from job_orchestrator.api.schemas import (
    CreateJobRequest,
    CreateLocalTaskRequest,
    CreateStepsRequest,
    HealthConfig,
    HealthResponse,
    HealthServices,
    JobMessageResponse,
    NoPendingStepResponse,
    RejectJobRequest,
    RequestChangesRequest,
    SubmitResultRequest,
    UpdateJobStatusRequest,
    UpdateStepRequest,
)
from job_orchestrator.config.settings import Settings, get_settings
from job_orchestrator.errors import OrchestratorError, StorageError
from job_orchestrator.lifecycle import LifecycleManager
from job_orchestrator.notifier import WorkflowNotifier, build_notifier
from job_orchestrator.storage.base import OrchestratorStorage
from job_orchestrator.storage.factory import backend_name, build_storage
from job_orchestrator.storage.models import (
    JobDetail,
    JobLogRecord,
    JobRecord,
    LocalTaskRecord,
    StepRecord,
    utc_now,
)
from job_orchestrator.task_queue import LocalTaskQueue

logger = logging.getLogger(__name__)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: OrchestratorStorage | None,
    notifier_override: WorkflowNotifier | None,
) -> None:
    if not hasattr(app.state, "storage"):
        storage = storage_override or build_storage(settings)
        storage.migrate()
        app.state.storage = storage

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "lifecycle"):
        app.state.notifier = notifier_override or build_notifier(settings)
        app.state.lifecycle = LifecycleManager(
            app.state.storage,
            app.state.notifier,
            strict_transitions=settings.strict_transitions,
            exclusive_task_resolution=settings.exclusive_task_resolution,
        )
        app.state.task_queue = LocalTaskQueue(app.state.lifecycle)


def create_app(
    *,
    storage: OrchestratorStorage | None = None,
    notifier: WorkflowNotifier | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            notifier_override=notifier,
        )
        yield
        app.state.storage.close()

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            notifier_override=notifier,
        )

    def _lifecycle(request: Request) -> LifecycleManager:
        if not hasattr(request.app.state, "lifecycle"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                notifier_override=notifier,
            )
        return request.app.state.lifecycle

    def _task_queue(request: Request) -> LocalTaskQueue:
        _lifecycle(request)
        return request.app.state.task_queue

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info(
            "request method=%s path=%s status=%s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response

    @app.exception_handler(OrchestratorError)
    async def handle_orchestrator_error(_request: Request, exc: OrchestratorError) -> JSONResponse:
        if isinstance(exc, StorageError):
            logger.error("storage_error detail=%s", exc.detail)
            return JSONResponse(status_code=500, content={"detail": "Storage backend failure"})
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "unhandled_error method=%s path=%s",
            request.method,
            request.url.path,
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # ===== Health =====

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> HealthResponse:
        lifecycle = _lifecycle(request)
        database_ok = lifecycle.storage.ping()
        return HealthResponse(
            status="ok" if database_ok else "degraded",
            service=settings.app_name,
            storage=backend_name(lifecycle.storage),
            timestamp=utc_now().isoformat(),
            services=HealthServices(
                database=database_ok,
                workflow_engine=lifecycle.notifier.health_check(),
            ),
            config=HealthConfig(
                dev_only_mode=settings.dev_only_mode,
                max_fix_retries=settings.max_fix_retries,
                strict_transitions=settings.strict_transitions,
                exclusive_task_resolution=settings.exclusive_task_resolution,
            ),
        )

    # ===== Jobs =====

    @app.post("/jobs", response_model=JobRecord, status_code=201)
    def create_job(payload: CreateJobRequest, request: Request) -> JobRecord:
        return _lifecycle(request).create_job(
            payload.goal,
            risk_level=payload.risk_level,
            require_approval=payload.require_approval,
        )

    @app.get("/jobs", response_model=list[JobRecord])
    def list_jobs(request: Request) -> list[JobRecord]:
        return _lifecycle(request).list_jobs()

    @app.get("/jobs/{job_id}", response_model=JobDetail)
    def get_job(job_id: str, request: Request) -> JobDetail:
        return _lifecycle(request).get_job_detail(job_id)

    @app.patch("/jobs/{job_id}/status", response_model=JobRecord)
    def update_job_status(
        job_id: str, payload: UpdateJobStatusRequest, request: Request
    ) -> JobRecord:
        return _lifecycle(request).transition(job_id, payload.status or "")

    @app.post("/jobs/{job_id}/approve", response_model=JobRecord)
    def approve_job(job_id: str, request: Request) -> JobRecord:
        return _lifecycle(request).approve(job_id)

    @app.post("/jobs/{job_id}/request-changes", response_model=JobMessageResponse)
    def request_changes(
        job_id: str,
        request: Request,
        payload: RequestChangesRequest | None = None,
    ) -> JobMessageResponse:
        feedback = payload.feedback if payload else None
        job = _lifecycle(request).request_changes(job_id, feedback)
        return JobMessageResponse(
            **job.model_dump(),
            message="Changes requested. Job returned to planning phase.",
        )

    @app.post("/jobs/{job_id}/reject", response_model=JobRecord)
    def reject_job(
        job_id: str,
        request: Request,
        payload: RejectJobRequest | None = None,
    ) -> JobRecord:
        return _lifecycle(request).reject(job_id, payload.reason if payload else None)

    @app.get("/jobs/{job_id}/logs", response_model=list[JobLogRecord])
    def list_job_logs(
        job_id: str,
        request: Request,
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[JobLogRecord]:
        return _lifecycle(request).list_logs(job_id, limit=limit)

    # ===== Steps =====

    @app.post("/jobs/{job_id}/steps", response_model=list[StepRecord], status_code=201)
    def create_steps(job_id: str, payload: CreateStepsRequest, request: Request) -> list[StepRecord]:
        return _lifecycle(request).create_steps_for_job(job_id, payload.steps)

    @app.get("/jobs/{job_id}/steps", response_model=list[StepRecord])
    def list_steps(job_id: str, request: Request) -> list[StepRecord]:
        return _lifecycle(request).list_steps(job_id)

    @app.get("/jobs/{job_id}/steps/next", response_model=StepRecord | NoPendingStepResponse)
    def next_pending_step(job_id: str, request: Request) -> StepRecord | NoPendingStepResponse:
        step = _lifecycle(request).get_next_pending_step(job_id)
        if step is None:
            return NoPendingStepResponse()
        return step

    @app.get("/steps/{step_id}", response_model=StepRecord)
    def get_step(step_id: str, request: Request) -> StepRecord:
        return _lifecycle(request).get_step(step_id)

    @app.patch("/steps/{step_id}", response_model=StepRecord)
    def update_step(step_id: str, payload: UpdateStepRequest, request: Request) -> StepRecord:
        return _lifecycle(request).update_step(
            step_id,
            status=payload.status,
            logs=payload.logs,
            evidence=payload.evidence,
        )

    @app.post("/steps/{step_id}/increment-fix", response_model=StepRecord)
    def increment_fix_attempts(step_id: str, request: Request) -> StepRecord:
        return _lifecycle(request).increment_fix_attempts(step_id)

    # ===== Local executor tasks =====

    @app.get("/local-tasks", response_model=list[LocalTaskRecord])
    def list_local_tasks(
        request: Request,
        status: str = Query("pending"),
    ) -> list[LocalTaskRecord]:
        return _task_queue(request).list_tasks(status)

    @app.post("/local-tasks", response_model=LocalTaskRecord, status_code=201)
    def create_local_task(payload: CreateLocalTaskRequest, request: Request) -> LocalTaskRecord:
        return _task_queue(request).create_task(
            payload.job_id,
            payload.step_id,
            payload.instructions,
        )

    @app.get("/local-tasks/{task_id}", response_model=LocalTaskRecord)
    def get_local_task(task_id: str, request: Request) -> LocalTaskRecord:
        return _task_queue(request).get_task(task_id)

    @app.post("/local-tasks/{task_id}/result", response_model=LocalTaskRecord)
    def submit_local_task_result(
        task_id: str, payload: SubmitResultRequest, request: Request
    ) -> LocalTaskRecord:
        return _task_queue(request).submit_result(
            task_id,
            result=payload.result,
            logs=payload.logs,
            success=payload.success,
        )

    return app


# Module-level app for `uvicorn job_orchestrator.api.main:app`.
app = create_app()
