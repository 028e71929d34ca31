"""Storage interface for job, step, local task and job log persistence.

Every backend satisfies the same contract:

- reads return whole records (or ``None`` when the id is unknown);
- creates return the stored record;
- updates touch only the fields passed (``None`` means "leave unchanged") and
  assign ``updated_at`` server-side, never earlier than the previous value;
- ``expected_statuses`` turns an update into a compare-and-set: when the row's
  current status is not in the collection nothing is written and ``None`` is
  returned;
- lists are ordering-stable: jobs newest first, steps by ``step_index``, local
  tasks oldest first, log entries newest first.
"""

from __future__ import annotations

from collections.abc import Collection
from typing import Any, Protocol

from job_orchestrator.storage.models import (
    JobLogRecord,
    JobRecord,
    LocalTaskRecord,
    StepDraft,
    StepRecord,
)


class OrchestratorStorage(Protocol):
    def migrate(self) -> None: ...

    def close(self) -> None: ...

    def ping(self) -> bool: ...

    def create_job(self, *, goal: str, risk_level: str, require_approval: bool) -> JobRecord: ...

    def get_job(self, job_id: str) -> JobRecord | None: ...

    def list_jobs(self) -> list[JobRecord]: ...

    def update_job_status(
        self,
        job_id: str,
        status: str,
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> JobRecord | None: ...

    def create_steps(self, job_id: str, drafts: list[StepDraft]) -> list[StepRecord]: ...

    def get_step(self, step_id: str) -> StepRecord | None: ...

    def list_steps(self, job_id: str) -> list[StepRecord]: ...

    def next_pending_step(self, job_id: str) -> StepRecord | None: ...

    def update_step(
        self,
        step_id: str,
        *,
        status: str | None = None,
        logs: Any = None,
        evidence: Any = None,
        expected_statuses: Collection[str] | None = None,
    ) -> StepRecord | None: ...

    def increment_fix_attempts(self, step_id: str) -> StepRecord | None: ...

    def create_local_task(
        self,
        *,
        job_id: str,
        step_id: str | None,
        instructions: str,
    ) -> LocalTaskRecord: ...

    def get_local_task(self, task_id: str) -> LocalTaskRecord | None: ...

    def list_local_tasks(self, status: str = "pending") -> list[LocalTaskRecord]: ...

    def resolve_local_task(
        self,
        task_id: str,
        *,
        status: str,
        result: Any,
        result_summary: str | None,
        logs: str | None,
        expected_statuses: Collection[str] | None = None,
    ) -> LocalTaskRecord | None: ...

    def append_log(
        self,
        *,
        job_id: str,
        step_id: str | None,
        source: str,
        level: str,
        content: Any,
    ) -> JobLogRecord: ...

    def list_logs(
        self,
        job_id: str,
        *,
        step_id: str | None = None,
        limit: int = 100,
    ) -> list[JobLogRecord]: ...
