"""Storage models shared by API and persistence backends."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, get_args

from pydantic import AliasChoices, BaseModel, Field

JobStatus = Literal[
    "planning",
    "running",
    "waiting_approval",
    "completed",
    "failed",
    "rejected",
]
RiskLevel = Literal["low", "medium", "high"]
StepRole = Literal["planner", "executor", "reviewer", "local_executor"]
StepStatus = Literal[
    "pending",
    "running",
    "waiting_review",
    "waiting_local_execution",
    "waiting_approval",
    "needs_fix",
    "completed",
    "failed",
]
LocalTaskStatus = Literal["pending", "completed", "failed"]
LogSource = Literal["planner", "executor", "reviewer", "local_executor", "system", "user"]
LogLevel = Literal["debug", "info", "warn", "error"]

JOB_STATUSES: tuple[str, ...] = get_args(JobStatus)
RISK_LEVELS: tuple[str, ...] = get_args(RiskLevel)
STEP_ROLES: tuple[str, ...] = get_args(StepRole)
STEP_STATUSES: tuple[str, ...] = get_args(StepStatus)
LOCAL_TASK_STATUSES: tuple[str, ...] = get_args(LocalTaskStatus)
LOG_SOURCES: tuple[str, ...] = get_args(LogSource)
LOG_LEVELS: tuple[str, ...] = get_args(LogLevel)

# Collection (or table) names used by every backend.
JOBS = "jobs"
STEPS = "steps"
LOCAL_TASKS = "local_tasks"
JOB_LOGS = "job_logs"
COLLECTIONS = (JOBS, STEPS, LOCAL_TASKS, JOB_LOGS)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class JobRecord(BaseModel):
    """Persisted job record."""

    id: str
    goal: str
    status: JobStatus = "planning"
    risk_level: RiskLevel = "low"
    require_approval: bool = True
    created_at: datetime
    updated_at: datetime


class StepDraft(BaseModel):
    """One step as supplied by the planner, before an index is assigned."""

    role: StepRole = "executor"
    description: str | None = None
    name: str | None = None
    instruction: str | None = Field(
        default=None,
        validation_alias=AliasChoices("instruction", "claude_instruction", "claudeInstruction"),
    )
    success_criteria: str | None = Field(
        default=None,
        validation_alias=AliasChoices("success_criteria", "successCriteria"),
    )


class StepRecord(BaseModel):
    """Persisted step record."""

    id: str
    job_id: str
    step_index: int = Field(ge=0)
    role: StepRole = "executor"
    description: str | None = None
    name: str | None = None
    instruction: str | None = None
    success_criteria: str | None = None
    status: StepStatus = "pending"
    # Opaque blobs produced by the executing agent.
    logs: Any = None
    evidence: Any = None
    fix_attempts: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime


class LocalTaskRecord(BaseModel):
    """Work item handed to a locally running executor."""

    id: str
    job_id: str
    step_id: str | None = None
    instructions: str
    status: LocalTaskStatus = "pending"
    result: Any = None
    result_summary: str | None = None
    logs: str | None = None
    created_at: datetime
    updated_at: datetime


class JobLogRecord(BaseModel):
    """Append-only audit entry attached to a job."""

    id: str
    job_id: str
    step_id: str | None = None
    source: LogSource = "system"
    level: LogLevel = "info"
    content: Any = None
    created_at: datetime


class JobDetail(JobRecord):
    """Job plus its ordered steps, as returned by GET /jobs/{id}."""

    steps: list[StepRecord] = Field(default_factory=list)
