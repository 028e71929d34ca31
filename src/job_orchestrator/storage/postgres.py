"""PostgreSQL-backed storage with automatic table migration.

Beginner terms:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for opaque logs, evidence and results.
- CHECK constraint: database-side rule that rejects invalid enum values.
- Conditional update: ``UPDATE ... WHERE status = ANY(...)`` writes only when
  the row is still in an expected status (compare-and-set).
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Collection, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from job_orchestrator.errors import StorageError
from job_orchestrator.storage.models import (
    JOB_STATUSES,
    LOCAL_TASK_STATUSES,
    LOG_LEVELS,
    LOG_SOURCES,
    RISK_LEVELS,
    STEP_ROLES,
    STEP_STATUSES,
    JobLogRecord,
    JobRecord,
    LocalTaskRecord,
    StepDraft,
    StepRecord,
    utc_now,
)

logger = logging.getLogger(__name__)


class PostgresStorage:
    """Persist jobs, steps, local tasks and job logs in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("JOB_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._session() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS jobs (
                    id UUID PRIMARY KEY,
                    goal TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'planning',
                    risk_level TEXT NOT NULL DEFAULT 'low',
                    require_approval BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    CONSTRAINT jobs_status_check CHECK (status IN ({_sql_in(JOB_STATUSES)})),
                    CONSTRAINT jobs_risk_level_check
                        CHECK (risk_level IN ({_sql_in(RISK_LEVELS)})),
                    CONSTRAINT jobs_updated_at_check CHECK (updated_at >= created_at)
                )
                """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS steps (
                    id UUID PRIMARY KEY,
                    job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    step_index INTEGER NOT NULL CHECK (step_index >= 0),
                    name TEXT,
                    role TEXT NOT NULL DEFAULT 'executor',
                    description TEXT,
                    instruction TEXT,
                    success_criteria TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    logs JSONB,
                    evidence JSONB,
                    fix_attempts INTEGER NOT NULL DEFAULT 0 CHECK (fix_attempts >= 0),
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    CONSTRAINT steps_job_index_unique UNIQUE (job_id, step_index),
                    CONSTRAINT steps_role_check CHECK (role IN ({_sql_in(STEP_ROLES)})),
                    CONSTRAINT steps_status_check CHECK (status IN ({_sql_in(STEP_STATUSES)}))
                )
                """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS local_tasks (
                    id UUID PRIMARY KEY,
                    job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    step_id UUID REFERENCES steps(id) ON DELETE SET NULL,
                    instructions TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    result JSONB,
                    result_summary TEXT,
                    logs TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    CONSTRAINT local_tasks_status_check
                        CHECK (status IN ({_sql_in(LOCAL_TASK_STATUSES)}))
                )
                """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS job_logs (
                    id UUID PRIMARY KEY,
                    job_id UUID NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    step_id UUID REFERENCES steps(id) ON DELETE SET NULL,
                    source TEXT NOT NULL,
                    level TEXT NOT NULL DEFAULT 'info',
                    content JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    CONSTRAINT job_logs_source_check CHECK (source IN ({_sql_in(LOG_SOURCES)})),
                    CONSTRAINT job_logs_level_check CHECK (level IN ({_sql_in(LOG_LEVELS)}))
                )
                """)
            for statement in (
                "CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at DESC)",
                "CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)",
                "CREATE INDEX IF NOT EXISTS idx_steps_job_id ON steps(job_id)",
                "CREATE INDEX IF NOT EXISTS idx_steps_status ON steps(status)",
                "CREATE INDEX IF NOT EXISTS idx_local_tasks_status ON local_tasks(status)",
                "CREATE INDEX IF NOT EXISTS idx_local_tasks_job_id ON local_tasks(job_id)",
                "CREATE INDEX IF NOT EXISTS idx_job_logs_job_id ON job_logs(job_id)",
                "CREATE INDEX IF NOT EXISTS idx_job_logs_created_at ON job_logs(created_at DESC)",
            ):
                conn.execute(statement)
            conn.commit()
        logger.info("storage event=migrated backend=postgres")

    def close(self) -> None:
        # Connections are opened per call; nothing is pooled.
        return None

    def ping(self) -> bool:
        try:
            with self._session() as conn:
                row = conn.execute("SELECT 1 AS ok").fetchone()
        except StorageError:
            return False
        return bool(row and row.get("ok") == 1)

    # ===== Jobs =====

    def create_job(self, *, goal: str, risk_level: str, require_approval: bool) -> JobRecord:
        now = utc_now()
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO jobs (
                    id, goal, status, risk_level, require_approval, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid.uuid4(), goal, "planning", risk_level, require_approval, now, now),
            ).fetchone()
            conn.commit()
        return self._row_to_job(self._require_row(row, "job"))

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id::text = %s", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self) -> list[JobRecord]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC, id").fetchall()
        return [self._row_to_job(row) for row in rows]

    def update_job_status(
        self,
        job_id: str,
        status: str,
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> JobRecord | None:
        query = "UPDATE jobs SET status = %s, updated_at = GREATEST(%s, updated_at)"
        query += " WHERE id::text = %s"
        params: list[Any] = [status, utc_now(), job_id]
        if expected_statuses is not None:
            query += " AND status = ANY(%s)"
            params.append(list(expected_statuses))
        query += " RETURNING *"
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        return self._row_to_job(row) if row else None

    # ===== Steps =====

    def create_steps(self, job_id: str, drafts: list[StepDraft]) -> list[StepRecord]:
        """Insert the whole batch in one transaction; any failure rolls it all back."""
        created: list[StepRecord] = []
        with self._session() as conn:
            with conn.transaction():
                job_row = conn.execute(
                    "SELECT id FROM jobs WHERE id::text = %s FOR UPDATE",
                    (job_id,),
                ).fetchone()
                if job_row is None:
                    raise StorageError(f"Job {job_id} does not exist")
                index_row = conn.execute(
                    """
                    SELECT COALESCE(MAX(step_index) + 1, 0) AS next_index
                    FROM steps
                    WHERE job_id = %s
                    """,
                    (job_row["id"],),
                ).fetchone()
                offset = int(index_row["next_index"]) if index_row else 0
                for position, draft in enumerate(drafts):
                    now = utc_now()
                    row = conn.execute(
                        """
                        INSERT INTO steps (
                            id,
                            job_id,
                            step_index,
                            name,
                            role,
                            description,
                            instruction,
                            success_criteria,
                            status,
                            fix_attempts,
                            created_at,
                            updated_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            uuid.uuid4(),
                            job_row["id"],
                            offset + position,
                            draft.name,
                            draft.role,
                            draft.description,
                            draft.instruction,
                            draft.success_criteria,
                            "pending",
                            0,
                            now,
                            now,
                        ),
                    ).fetchone()
                    created.append(self._row_to_step(self._require_row(row, "step")))
        return created

    def get_step(self, step_id: str) -> StepRecord | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM steps WHERE id::text = %s", (step_id,)).fetchone()
        return self._row_to_step(row) if row else None

    def list_steps(self, job_id: str) -> list[StepRecord]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM steps WHERE job_id::text = %s ORDER BY step_index",
                (job_id,),
            ).fetchall()
        return [self._row_to_step(row) for row in rows]

    def next_pending_step(self, job_id: str) -> StepRecord | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM steps
                WHERE job_id::text = %s AND status = 'pending'
                ORDER BY step_index
                LIMIT 1
                """,
                (job_id,),
            ).fetchone()
        return self._row_to_step(row) if row else None

    def update_step(
        self,
        step_id: str,
        *,
        status: str | None = None,
        logs: Any = None,
        evidence: Any = None,
        expected_statuses: Collection[str] | None = None,
    ) -> StepRecord | None:
        assignments = ["updated_at = GREATEST(%s, updated_at)"]
        params: list[Any] = [utc_now()]
        if status is not None:
            assignments.append("status = %s")
            params.append(status)
        if logs is not None:
            assignments.append("logs = %s")
            params.append(self._json_wrapper(logs))
        if evidence is not None:
            assignments.append("evidence = %s")
            params.append(self._json_wrapper(evidence))

        query = f"UPDATE steps SET {', '.join(assignments)} WHERE id::text = %s"
        params.append(step_id)
        if expected_statuses is not None:
            query += " AND status = ANY(%s)"
            params.append(list(expected_statuses))
        query += " RETURNING *"
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        return self._row_to_step(row) if row else None

    def increment_fix_attempts(self, step_id: str) -> StepRecord | None:
        with self._session() as conn:
            row = conn.execute(
                """
                UPDATE steps
                SET fix_attempts = fix_attempts + 1,
                    updated_at = GREATEST(%s, updated_at)
                WHERE id::text = %s
                RETURNING *
                """,
                (utc_now(), step_id),
            ).fetchone()
            conn.commit()
        return self._row_to_step(row) if row else None

    # ===== Local tasks =====

    def create_local_task(
        self,
        *,
        job_id: str,
        step_id: str | None,
        instructions: str,
    ) -> LocalTaskRecord:
        now = utc_now()
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO local_tasks (
                    id, job_id, step_id, instructions, status, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid.uuid4(), job_id, step_id, instructions, "pending", now, now),
            ).fetchone()
            conn.commit()
        return self._row_to_local_task(self._require_row(row, "local task"))

    def get_local_task(self, task_id: str) -> LocalTaskRecord | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM local_tasks WHERE id::text = %s",
                (task_id,),
            ).fetchone()
        return self._row_to_local_task(row) if row else None

    def list_local_tasks(self, status: str = "pending") -> list[LocalTaskRecord]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM local_tasks WHERE status = %s ORDER BY created_at, id",
                (status,),
            ).fetchall()
        return [self._row_to_local_task(row) for row in rows]

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
        query = """
            UPDATE local_tasks
            SET status = %s,
                result = %s,
                result_summary = %s,
                logs = %s,
                updated_at = GREATEST(%s, updated_at)
            WHERE id::text = %s
            """
        params: list[Any] = [
            status,
            self._json_wrapper(result) if result is not None else None,
            result_summary,
            logs,
            utc_now(),
            task_id,
        ]
        if expected_statuses is not None:
            query += " AND status = ANY(%s)"
            params.append(list(expected_statuses))
        query += " RETURNING *"
        with self._session() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        return self._row_to_local_task(row) if row else None

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
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO job_logs (id, job_id, step_id, source, level, content, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    job_id,
                    step_id,
                    source,
                    level,
                    self._json_wrapper(content) if content is not None else None,
                    utc_now(),
                ),
            ).fetchone()
            conn.commit()
        return self._row_to_log(self._require_row(row, "job log"))

    def list_logs(
        self,
        job_id: str,
        *,
        step_id: str | None = None,
        limit: int = 100,
    ) -> list[JobLogRecord]:
        query = "SELECT * FROM job_logs WHERE job_id::text = %s"
        params: list[Any] = [job_id]
        if step_id is not None:
            query += " AND step_id::text = %s"
            params.append(step_id)
        query += " ORDER BY created_at DESC, id LIMIT %s"
        params.append(max(limit, 0))
        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_log(row) for row in rows]

    # ===== Helpers =====

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Open a connection under the instance lock and map driver errors."""
        try:
            with self._lock, self._connect() as conn:
                yield conn
        except self._psycopg.Error as exc:
            raise StorageError(f"PostgreSQL operation failed: {exc}") from exc

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _require_row(row: Any, label: str) -> Any:
        if row is None:
            raise StorageError(f"Failed to persist {label}")
        return row

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @staticmethod
    def _optional_id(raw: Any) -> str | None:
        return str(raw) if raw is not None else None

    @classmethod
    def _row_to_job(cls, row: Any) -> JobRecord:
        return JobRecord(
            id=str(row["id"]),
            goal=row["goal"],
            status=row["status"],
            risk_level=row["risk_level"],
            require_approval=bool(row["require_approval"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_step(cls, row: Any) -> StepRecord:
        return StepRecord(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            step_index=int(row["step_index"]),
            role=row["role"],
            description=row.get("description"),
            name=row.get("name"),
            instruction=row.get("instruction"),
            success_criteria=row.get("success_criteria"),
            status=row["status"],
            logs=row.get("logs"),
            evidence=row.get("evidence"),
            fix_attempts=int(row["fix_attempts"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_local_task(cls, row: Any) -> LocalTaskRecord:
        return LocalTaskRecord(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            step_id=cls._optional_id(row.get("step_id")),
            instructions=row["instructions"],
            status=row["status"],
            result=row.get("result"),
            result_summary=row.get("result_summary"),
            logs=row.get("logs"),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_log(cls, row: Any) -> JobLogRecord:
        return JobLogRecord(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            step_id=cls._optional_id(row.get("step_id")),
            source=row["source"],
            level=row["level"],
            content=row.get("content"),
            created_at=cls._parse_datetime(row["created_at"]),
        )


def _sql_in(values: tuple[str, ...]) -> str:
    """Render a constant enum tuple as a SQL ``IN`` list."""
    return ", ".join(f"'{value}'" for value in values)
