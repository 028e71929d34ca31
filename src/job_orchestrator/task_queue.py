"""Local task queue: a FIFO view over pending local tasks.

Reads never change task state, so every poller sees a pending task until
someone submits its result (at-least-once delivery). Resolution goes through
``LifecycleManager.resolve_local_task``; whether a second submission
overwrites the first or is refused depends on ``exclusive_task_resolution``.
"""

from __future__ import annotations

import logging
from typing import Any

from job_orchestrator.errors import NotFoundError, ValidationError
from job_orchestrator.lifecycle import LifecycleManager
from job_orchestrator.storage.base import OrchestratorStorage
from job_orchestrator.storage.models import LOCAL_TASK_STATUSES, LocalTaskRecord

logger = logging.getLogger(__name__)


class LocalTaskQueue:
    def __init__(self, lifecycle: LifecycleManager) -> None:
        self.lifecycle = lifecycle

    @property
    def storage(self) -> OrchestratorStorage:
        return self.lifecycle.storage

    def create_task(
        self,
        job_id: str | None,
        step_id: str | None,
        instructions: str | None,
    ) -> LocalTaskRecord:
        missing = [
            name
            for name, value in (
                ("jobId", job_id),
                ("stepId", step_id),
                ("instructions", instructions),
            )
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise ValidationError(
                "jobId, stepId, and instructions are required",
                missing=missing,
            )

        self.lifecycle.get_job(job_id)
        step = self.storage.get_step(step_id)
        if step is None or step.job_id != job_id:
            raise ValidationError(f"Step {step_id} does not belong to job {job_id}")

        task = self.storage.create_local_task(
            job_id=job_id,
            step_id=step_id,
            instructions=instructions,
        )
        logger.info(
            "local_task_created task_id=%s job_id=%s step_id=%s",
            task.id,
            job_id,
            step_id,
        )
        return task

    def pending_tasks(self) -> list[LocalTaskRecord]:
        """All pending tasks, oldest first. Non-destructive."""
        return self.storage.list_local_tasks("pending")

    def list_tasks(self, status: str = "pending") -> list[LocalTaskRecord]:
        if status not in LOCAL_TASK_STATUSES:
            raise ValidationError(
                f"Invalid status. Must be one of: {', '.join(LOCAL_TASK_STATUSES)}",
                allowed=list(LOCAL_TASK_STATUSES),
            )
        return self.storage.list_local_tasks(status)

    def get_task(self, task_id: str) -> LocalTaskRecord:
        task = self.storage.get_local_task(task_id)
        if task is None:
            raise NotFoundError("Task not found", task_id=task_id)
        return task

    def submit_result(
        self,
        task_id: str,
        result: Any,
        logs: Any,
        success: Any,
    ) -> LocalTaskRecord:
        return self.lifecycle.resolve_local_task(
            task_id,
            result=result,
            logs=logs,
            success=success,
        )
