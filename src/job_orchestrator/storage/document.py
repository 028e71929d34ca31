"""Shared implementation for document-style backends (in-memory and JSON file).

A document is a mapping of collection name to a list of JSON-ready row dicts.
Every public call loads the document, works on that copy and saves it back
only when the call changed something and finished without raising, so
multi-row writes such as a step batch are all-or-nothing and misses (unknown
id, stale compare-and-set) never rewrite the store. Rows are validated
through the pydantic record models before they are saved, which keeps enum
fields constrained.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Collection, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel

from job_orchestrator.errors import StorageError
from job_orchestrator.storage.models import (
    COLLECTIONS,
    JOB_LOGS,
    JOBS,
    LOCAL_TASKS,
    STEPS,
    JobLogRecord,
    JobRecord,
    LocalTaskRecord,
    StepDraft,
    StepRecord,
    utc_now,
)

Document = dict[str, list[dict[str, Any]]]
RecordT = TypeVar("RecordT", bound=BaseModel)


def empty_document() -> Document:
    return {name: [] for name in COLLECTIONS}


class _Transaction:
    """Working copy of the document, saved only after ``mark_changed``."""

    def __init__(self, document: Document) -> None:
        self.document = document
        self.changed = False

    def __getitem__(self, name: str) -> list[dict[str, Any]]:
        return self.document[name]

    def mark_changed(self) -> None:
        self.changed = True


class DocumentStorage:
    """Base class; subclasses provide ``_load`` and ``_save``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def _load(self) -> Document:
        raise NotImplementedError

    def _save(self, document: Document) -> None:
        raise NotImplementedError

    @contextmanager
    def _transaction(self) -> Iterator[_Transaction]:
        with self._lock:
            txn = _Transaction(self._load())
            yield txn
            if txn.changed:
                self._save(txn.document)

    def _snapshot(self) -> Document:
        with self._lock:
            return self._load()

    # ===== Jobs =====

    def create_job(self, *, goal: str, risk_level: str, require_approval: bool) -> JobRecord:
        now = utc_now()
        row = _validated_row(
            JobRecord,
            {
                "id": str(uuid.uuid4()),
                "goal": goal,
                "status": "planning",
                "risk_level": risk_level,
                "require_approval": require_approval,
                "created_at": now,
                "updated_at": now,
            },
        )
        with self._transaction() as txn:
            txn[JOBS].append(row)
            txn.mark_changed()
        return JobRecord.model_validate(row)

    def get_job(self, job_id: str) -> JobRecord | None:
        row = _find(self._snapshot()[JOBS], job_id)
        return JobRecord.model_validate(row) if row else None

    def list_jobs(self) -> list[JobRecord]:
        rows = list(reversed(self._snapshot()[JOBS]))
        # sorted() is stable, so jobs created in the same instant stay newest first.
        rows = sorted(rows, key=lambda row: _parse_ts(row["created_at"]), reverse=True)
        return [JobRecord.model_validate(row) for row in rows]

    def update_job_status(
        self,
        job_id: str,
        status: str,
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> JobRecord | None:
        with self._transaction() as txn:
            row = _find(txn[JOBS], job_id)
            if row is None or not _status_matches(row, expected_statuses):
                return None
            updated = _validated_row(JobRecord, {**row, "status": status, **_touched(row)})
            row.update(updated)
            txn.mark_changed()
        return JobRecord.model_validate(row)

    # ===== Steps =====

    def create_steps(self, job_id: str, drafts: list[StepDraft]) -> list[StepRecord]:
        with self._transaction() as txn:
            if _find(txn[JOBS], job_id) is None:
                raise StorageError(f"Job {job_id} does not exist")
            existing = [row["step_index"] for row in txn[STEPS] if row["job_id"] == job_id]
            offset = max(existing) + 1 if existing else 0
            created: list[dict[str, Any]] = []
            for position, draft in enumerate(drafts):
                now = utc_now()
                created.append(
                    _validated_row(
                        StepRecord,
                        {
                            **draft.model_dump(),
                            "id": str(uuid.uuid4()),
                            "job_id": job_id,
                            "step_index": offset + position,
                            "status": "pending",
                            "logs": None,
                            "evidence": None,
                            "fix_attempts": 0,
                            "created_at": now,
                            "updated_at": now,
                        },
                    )
                )
            txn[STEPS].extend(created)
            txn.mark_changed()
        return [StepRecord.model_validate(row) for row in created]

    def get_step(self, step_id: str) -> StepRecord | None:
        row = _find(self._snapshot()[STEPS], step_id)
        return StepRecord.model_validate(row) if row else None

    def list_steps(self, job_id: str) -> list[StepRecord]:
        rows = [row for row in self._snapshot()[STEPS] if row["job_id"] == job_id]
        rows.sort(key=lambda row: row["step_index"])
        return [StepRecord.model_validate(row) for row in rows]

    def next_pending_step(self, job_id: str) -> StepRecord | None:
        pending = [step for step in self.list_steps(job_id) if step.status == "pending"]
        return pending[0] if pending else None

    def update_step(
        self,
        step_id: str,
        *,
        status: str | None = None,
        logs: Any = None,
        evidence: Any = None,
        expected_statuses: Collection[str] | None = None,
    ) -> StepRecord | None:
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if logs is not None:
            changes["logs"] = logs
        if evidence is not None:
            changes["evidence"] = evidence
        with self._transaction() as txn:
            row = _find(txn[STEPS], step_id)
            if row is None or not _status_matches(row, expected_statuses):
                return None
            row.update(_validated_row(StepRecord, {**row, **changes, **_touched(row)}))
            txn.mark_changed()
        return StepRecord.model_validate(row)

    def increment_fix_attempts(self, step_id: str) -> StepRecord | None:
        with self._transaction() as txn:
            row = _find(txn[STEPS], step_id)
            if row is None:
                return None
            row.update({"fix_attempts": int(row["fix_attempts"]) + 1, **_touched(row)})
            txn.mark_changed()
        return StepRecord.model_validate(row)

    # ===== Local tasks =====

    def create_local_task(
        self,
        *,
        job_id: str,
        step_id: str | None,
        instructions: str,
    ) -> LocalTaskRecord:
        now = utc_now()
        row = _validated_row(
            LocalTaskRecord,
            {
                "id": str(uuid.uuid4()),
                "job_id": job_id,
                "step_id": step_id,
                "instructions": instructions,
                "status": "pending",
                "created_at": now,
                "updated_at": now,
            },
        )
        with self._transaction() as txn:
            if _find(txn[JOBS], job_id) is None:
                raise StorageError(f"Job {job_id} does not exist")
            txn[LOCAL_TASKS].append(row)
            txn.mark_changed()
        return LocalTaskRecord.model_validate(row)

    def get_local_task(self, task_id: str) -> LocalTaskRecord | None:
        row = _find(self._snapshot()[LOCAL_TASKS], task_id)
        return LocalTaskRecord.model_validate(row) if row else None

    def list_local_tasks(self, status: str = "pending") -> list[LocalTaskRecord]:
        rows = [row for row in self._snapshot()[LOCAL_TASKS] if row["status"] == status]
        rows.sort(key=lambda row: _parse_ts(row["created_at"]))
        return [LocalTaskRecord.model_validate(row) for row in rows]

    def resolve_local_task(
        self,
        task_id: str,
        *,
        status: str,
        result: Any,
        result_summary: str | None,
        logs: str | None,
        expected_statuses: Collection[str] | None = None,
    ) -> LocalTaskRecord | None:
        with self._transaction() as txn:
            row = _find(txn[LOCAL_TASKS], task_id)
            if row is None or not _status_matches(row, expected_statuses):
                return None
            changes = {
                "status": status,
                "result": result,
                "result_summary": result_summary,
                "logs": logs,
            }
            row.update(_validated_row(LocalTaskRecord, {**row, **changes, **_touched(row)}))
            txn.mark_changed()
        return LocalTaskRecord.model_validate(row)

    # ===== Job logs =====

    def append_log(
        self,
        *,
        job_id: str,
        step_id: str | None,
        source: str,
        level: str,
        content: Any,
    ) -> JobLogRecord:
        row = _validated_row(
            JobLogRecord,
            {
                "id": str(uuid.uuid4()),
                "job_id": job_id,
                "step_id": step_id,
                "source": source,
                "level": level,
                "content": content,
                "created_at": utc_now(),
            },
        )
        with self._transaction() as txn:
            txn[JOB_LOGS].append(row)
            txn.mark_changed()
        return JobLogRecord.model_validate(row)

    def list_logs(
        self,
        job_id: str,
        *,
        step_id: str | None = None,
        limit: int = 100,
    ) -> list[JobLogRecord]:
        rows = [
            row
            for row in reversed(self._snapshot()[JOB_LOGS])
            if row["job_id"] == job_id and (step_id is None or row.get("step_id") == step_id)
        ]
        rows = sorted(rows, key=lambda row: _parse_ts(row["created_at"]), reverse=True)
        return [JobLogRecord.model_validate(row) for row in rows[: max(limit, 0)]]


def _find(rows: list[dict[str, Any]], record_id: str) -> dict[str, Any] | None:
    for row in rows:
        if row.get("id") == record_id:
            return row
    return None


def _status_matches(row: dict[str, Any], expected_statuses: Collection[str] | None) -> bool:
    return expected_statuses is None or row.get("status") in expected_statuses


def _touched(row: dict[str, Any]) -> dict[str, str]:
    """Fresh ``updated_at`` that never moves behind the stored value."""
    stamped = max(utc_now(), _parse_ts(row["updated_at"]))
    return {"updated_at": stamped.isoformat()}


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _validated_row(model: type[RecordT], values: dict[str, Any]) -> dict[str, Any]:
    try:
        record = model.model_validate(values)
    except pydantic.ValidationError as exc:
        reason = exc.errors()[0]["msg"]
        raise StorageError(f"{model.__name__} constraint violation: {reason}") from exc
    return record.model_dump(mode="json")
