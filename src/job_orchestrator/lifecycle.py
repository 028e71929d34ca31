"""Job, step and local task state machines.

``LifecycleManager`` is the only component that changes status fields. It
validates every transition, writes through the storage backend and, once the
write has committed, dispatches best-effort workflow notifications.

Transition validation has two modes:

- permissive (default): a target status only has to be a member of the status
  enum. ``approve``/``request_changes``/``reject`` still check their own
  preconditions.
- strict (``strict_transitions=True``): the per-state tables below are
  enforced and the update is a compare-and-set on the status that was checked.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import pydantic

from job_orchestrator.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from job_orchestrator.notifier import (
    NullNotifier,
    WorkflowNotifier,
    changes_requested,
    job_approved,
    job_started,
    local_task_resolved,
    notify_best_effort,
)
from job_orchestrator.storage.base import OrchestratorStorage
from job_orchestrator.storage.models import (
    JOB_STATUSES,
    RISK_LEVELS,
    STEP_STATUSES,
    JobDetail,
    JobLogRecord,
    JobRecord,
    LocalTaskRecord,
    StepDraft,
    StepRecord,
)

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "rejected"})

JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    "planning": frozenset({"running", "waiting_approval", "failed", "rejected"}),
    "running": frozenset({"waiting_approval", "completed", "failed", "rejected"}),
    "waiting_approval": frozenset({"running", "planning", "rejected"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "rejected": frozenset(),
}

STEP_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "waiting_local_execution", "failed"}),
    "running": frozenset(
        {
            "completed",
            "failed",
            "needs_fix",
            "waiting_review",
            "waiting_local_execution",
            "waiting_approval",
        }
    ),
    "waiting_review": frozenset({"running", "completed", "failed", "needs_fix"}),
    "waiting_local_execution": frozenset({"running", "completed", "failed", "needs_fix"}),
    "waiting_approval": frozenset({"running", "completed", "failed"}),
    "needs_fix": frozenset({"running", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

# Stored alongside the full result so list views stay small.
RESULT_SUMMARY_CHARS = 500


class LifecycleManager:
    """Owns status transitions for jobs, steps and local tasks."""

    def __init__(
        self,
        storage: OrchestratorStorage,
        notifier: WorkflowNotifier | None = None,
        *,
        strict_transitions: bool = False,
        exclusive_task_resolution: bool = False,
    ) -> None:
        self.storage = storage
        self.notifier = notifier or NullNotifier()
        self.strict_transitions = strict_transitions
        self.exclusive_task_resolution = exclusive_task_resolution

    # ===== Jobs =====

    def create_job(
        self,
        goal: str | None,
        risk_level: str | None = "low",
        require_approval: bool | None = True,
    ) -> JobRecord:
        if not isinstance(goal, str) or not goal.strip():
            raise ValidationError("Goal is required")
        level = risk_level or "low"
        if level not in RISK_LEVELS:
            raise ValidationError(
                f"Invalid risk level: {level}",
                allowed=list(RISK_LEVELS),
            )
        job = self.storage.create_job(
            goal=goal.strip(),
            risk_level=level,
            require_approval=require_approval is not False,
        )
        logger.info(
            "job_created job_id=%s risk_level=%s require_approval=%s",
            job.id,
            job.risk_level,
            job.require_approval,
        )
        notify_best_effort(self.notifier, job_started(job))
        return job

    def get_job(self, job_id: str) -> JobRecord:
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found", job_id=job_id)
        return job

    def get_job_detail(self, job_id: str) -> JobDetail:
        job = self.get_job(job_id)
        return JobDetail(**job.model_dump(), steps=self.storage.list_steps(job_id))

    def list_jobs(self) -> list[JobRecord]:
        return self.storage.list_jobs()

    def transition(self, job_id: str, target_status: str) -> JobRecord:
        """Generic status update (PATCH /jobs/{id}/status)."""
        if target_status not in JOB_STATUSES:
            raise InvalidTransitionError(
                f"Invalid status. Must be one of: {', '.join(JOB_STATUSES)}",
                allowed=list(JOB_STATUSES),
            )
        job = self.get_job(job_id)
        expected: tuple[str, ...] | None = None
        if self.strict_transitions:
            self._check_job_transition(job, target_status)
            expected = (job.status,)
        updated = self._write_job_status(job_id, target_status, expected)
        logger.info(
            "job_transition job_id=%s from_status=%s status=%s",
            job_id,
            job.status,
            updated.status,
        )
        return updated

    def approve(self, job_id: str) -> JobRecord:
        updated = self._transition_from_waiting(
            job_id,
            "running",
            detail="Job is not waiting for approval",
        )
        logger.info("job_approved job_id=%s status=%s", job_id, updated.status)
        self._journal(job_id, source="user", content={"action": "approve"})
        notify_best_effort(self.notifier, job_approved(job_id))
        return updated

    def request_changes(self, job_id: str, feedback: str | None = None) -> JobRecord:
        """Send a job back to planning. ``feedback`` is advisory and not validated."""
        updated = self._transition_from_waiting(
            job_id,
            "planning",
            detail="Cannot request changes for a job that is not waiting for approval",
        )
        logger.info(
            "job_changes_requested job_id=%s status=%s feedback=%r",
            job_id,
            updated.status,
            feedback or "No feedback provided",
        )
        self._journal(
            job_id,
            source="user",
            content={"action": "request_changes", "feedback": feedback},
        )
        notify_best_effort(self.notifier, changes_requested(job_id, feedback))
        return updated

    def reject(self, job_id: str, reason: str | None = None) -> JobRecord:
        job = self.get_job(job_id)
        if job.status in TERMINAL_JOB_STATUSES:
            raise InvalidStateError(
                f"Cannot reject a job in terminal status: {job.status}",
                current_status=job.status,
            )
        non_terminal = [status for status in JOB_STATUSES if status not in TERMINAL_JOB_STATUSES]
        updated = self.storage.update_job_status(
            job_id,
            "rejected",
            expected_statuses=non_terminal,
        )
        if updated is None:
            raise self._stale_job_error(job_id, "Job reached a terminal status concurrently")
        logger.info("job_rejected job_id=%s reason=%r", job_id, reason)
        self._journal(
            job_id,
            source="user",
            level="warn",
            content={"action": "reject", "reason": reason},
        )
        return updated

    def list_logs(self, job_id: str, *, limit: int = 100) -> list[JobLogRecord]:
        self.get_job(job_id)
        return self.storage.list_logs(job_id, limit=limit)

    # ===== Steps =====

    def create_steps_for_job(self, job_id: str, steps: Any) -> list[StepRecord]:
        drafts = _parse_step_drafts(steps)
        job = self.get_job(job_id)
        if self.strict_transitions and job.status != "running":
            self._check_job_transition(job, "running")

        created = self.storage.create_steps(job_id, drafts)
        if job.status != "running":
            self._write_job_status(job_id, "running", None)
        logger.info(
            "steps_created job_id=%s count=%s first_index=%s",
            job_id,
            len(created),
            created[0].step_index if created else None,
        )
        return created

    def list_steps(self, job_id: str) -> list[StepRecord]:
        self.get_job(job_id)
        return self.storage.list_steps(job_id)

    def get_next_pending_step(self, job_id: str) -> StepRecord | None:
        """Lowest-index pending step, or ``None``. Only ``pending`` steps are eligible."""
        self.get_job(job_id)
        return self.storage.next_pending_step(job_id)

    def get_step(self, step_id: str) -> StepRecord:
        step = self.storage.get_step(step_id)
        if step is None:
            raise NotFoundError("Step not found", step_id=step_id)
        return step

    def update_step(
        self,
        step_id: str,
        status: str | None = None,
        logs: Any = None,
        evidence: Any = None,
    ) -> StepRecord:
        """Update status and merge logs/evidence; ``None`` leaves a field unchanged."""
        if status is not None and status not in STEP_STATUSES:
            raise InvalidTransitionError(
                f"Invalid step status. Must be one of: {', '.join(STEP_STATUSES)}",
                allowed=list(STEP_STATUSES),
            )
        step = self.get_step(step_id)
        expected: tuple[str, ...] | None = None
        if self.strict_transitions and status is not None:
            allowed = STEP_TRANSITIONS.get(step.status, frozenset())
            if status not in allowed:
                raise InvalidStateError(
                    f"Step cannot move from {step.status} to {status}",
                    current_status=step.status,
                    allowed=sorted(allowed),
                )
            expected = (step.status,)

        updated = self.storage.update_step(
            step_id,
            status=status,
            logs=logs,
            evidence=evidence,
            expected_statuses=expected,
        )
        if updated is None:
            current = self.get_step(step_id)
            raise InvalidStateError(
                "Step status changed concurrently",
                current_status=current.status,
            )
        logger.info(
            "step_updated step_id=%s job_id=%s status=%s",
            step_id,
            updated.job_id,
            updated.status,
        )
        return updated

    def increment_fix_attempts(self, step_id: str) -> StepRecord:
        """Count one more fix attempt. The retry ceiling is enforced by callers."""
        updated = self.storage.increment_fix_attempts(step_id)
        if updated is None:
            raise NotFoundError("Step not found", step_id=step_id)
        logger.info(
            "step_fix_attempt step_id=%s job_id=%s fix_attempts=%s",
            step_id,
            updated.job_id,
            updated.fix_attempts,
        )
        return updated

    # ===== Local tasks =====

    def resolve_local_task(
        self,
        task_id: str,
        *,
        result: Any,
        logs: Any,
        success: Any,
    ) -> LocalTaskRecord:
        if not isinstance(success, bool):
            raise ValidationError("success (boolean) is required")
        task = self.storage.get_local_task(task_id)
        if task is None:
            raise NotFoundError("Task not found", task_id=task_id)

        status = "completed" if success else "failed"
        updated = self.storage.resolve_local_task(
            task_id,
            status=status,
            result=result,
            result_summary=_summarize(result),
            logs=_logs_text(logs),
            expected_statuses=("pending",) if self.exclusive_task_resolution else None,
        )
        if updated is None:
            current = self.storage.get_local_task(task_id)
            if current is None:
                raise NotFoundError("Task not found", task_id=task_id)
            raise InvalidStateError("Task already resolved", current_status=current.status)

        if task.status != "pending":
            logger.warning(
                "local_task_overwritten task_id=%s previous_status=%s status=%s",
                task_id,
                task.status,
                status,
            )
        logger.info("local_task_resolved task_id=%s success=%s", task_id, success)
        self._journal(
            updated.job_id,
            step_id=updated.step_id,
            source="local_executor",
            level="info" if success else "error",
            content={"taskId": task_id, "success": success, "summary": updated.result_summary},
        )
        notify_best_effort(self.notifier, local_task_resolved(updated, success))
        return updated

    # ===== Helpers =====

    def _transition_from_waiting(self, job_id: str, target: str, *, detail: str) -> JobRecord:
        job = self.get_job(job_id)
        if job.status != "waiting_approval":
            raise InvalidStateError(detail, current_status=job.status)
        updated = self.storage.update_job_status(
            job_id,
            target,
            expected_statuses=("waiting_approval",),
        )
        if updated is None:
            raise self._stale_job_error(job_id, detail)
        return updated

    def _write_job_status(
        self,
        job_id: str,
        status: str,
        expected: tuple[str, ...] | None,
    ) -> JobRecord:
        updated = self.storage.update_job_status(job_id, status, expected_statuses=expected)
        if updated is None:
            raise self._stale_job_error(job_id, "Job status changed concurrently")
        return updated

    def _stale_job_error(self, job_id: str, detail: str) -> InvalidStateError:
        current = self.get_job(job_id)
        return InvalidStateError(detail, current_status=current.status)

    def _check_job_transition(self, job: JobRecord, target: str) -> None:
        allowed = JOB_TRANSITIONS.get(job.status, frozenset())
        if target not in allowed:
            raise InvalidStateError(
                f"Job cannot move from {job.status} to {target}",
                current_status=job.status,
                allowed=sorted(allowed),
            )

    def _journal(
        self,
        job_id: str,
        *,
        content: Any,
        source: str = "system",
        level: str = "info",
        step_id: str | None = None,
    ) -> None:
        """Append an audit entry. The state change has already committed, so a
        failed journal write is logged instead of failing the request."""
        try:
            self.storage.append_log(
                job_id=job_id,
                step_id=step_id,
                source=source,
                level=level,
                content=content,
            )
        except StorageError as exc:
            logger.warning("job_journal event=failed job_id=%s error=%s", job_id, exc)


def _parse_step_drafts(steps: Any) -> list[StepDraft]:
    if isinstance(steps, (str, bytes, Mapping)) or not isinstance(steps, Sequence):
        raise ValidationError("Steps array is required")
    if not steps:
        raise ValidationError("Steps array is required")
    drafts: list[StepDraft] = []
    for position, item in enumerate(steps):
        if isinstance(item, StepDraft):
            drafts.append(item)
            continue
        if not isinstance(item, Mapping):
            raise ValidationError(f"Step {position} must be an object")
        try:
            # Planners send explicit nulls for fields they leave to the defaults.
            payload = {key: value for key, value in item.items() if value is not None}
            drafts.append(StepDraft.model_validate(payload))
        except pydantic.ValidationError as exc:
            error = exc.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ()))
            raise ValidationError(
                f"Step {position} is invalid: {field} {error['msg']}".strip(),
            ) from exc
    return drafts


def _summarize(result: Any) -> str | None:
    if result is None:
        return None
    text = result if isinstance(result, str) else json.dumps(result, default=str)
    return text[:RESULT_SUMMARY_CHARS]


def _logs_text(logs: Any) -> str | None:
    if logs is None or isinstance(logs, str):
        return logs
    return json.dumps(logs, default=str)
