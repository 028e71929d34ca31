"""Request and response bodies for the HTTP API.

Request models only check shapes (most fields optional, no enum types).
Field-level rules live in ``LifecycleManager`` and ``LocalTaskQueue``. Both
snake_case and the camelCase keys sent by workflow nodes are accepted.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from job_orchestrator.storage.models import JobRecord


class CreateJobRequest(BaseModel):
    goal: str | None = None
    risk_level: str | None = Field(
        default="low",
        validation_alias=AliasChoices("risk_level", "riskLevel"),
    )
    require_approval: bool | None = Field(
        default=True,
        validation_alias=AliasChoices("require_approval", "requireApproval"),
    )


class UpdateJobStatusRequest(BaseModel):
    status: str | None = None


class RequestChangesRequest(BaseModel):
    feedback: str | None = None


class RejectJobRequest(BaseModel):
    reason: str | None = None


class CreateStepsRequest(BaseModel):
    # Validated by LifecycleManager.create_steps_for_job.
    steps: Any = None


class UpdateStepRequest(BaseModel):
    status: str | None = None
    logs: Any = None
    evidence: Any = None


class CreateLocalTaskRequest(BaseModel):
    job_id: str | None = Field(default=None, validation_alias=AliasChoices("job_id", "jobId"))
    step_id: str | None = Field(default=None, validation_alias=AliasChoices("step_id", "stepId"))
    instructions: str | None = None


class SubmitResultRequest(BaseModel):
    result: Any = None
    logs: Any = None
    # Must be a real boolean; checked by the lifecycle manager, not coerced here.
    success: Any = None


class JobMessageResponse(JobRecord):
    """Job plus a human-readable note, returned by request-changes."""

    message: str


class NoPendingStepResponse(BaseModel):
    message: str = "No pending steps"
    step: None = None


class HealthServices(BaseModel):
    backend: bool = True
    database: bool
    workflow_engine: bool


class HealthConfig(BaseModel):
    dev_only_mode: bool
    max_fix_retries: int
    strict_transitions: bool
    exclusive_task_resolution: bool


class HealthResponse(BaseModel):
    status: str
    service: str
    storage: str
    timestamp: str
    services: HealthServices
    config: HealthConfig
