from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from job_orchestrator.api.main import create_app
from job_orchestrator.config.settings import Settings
from job_orchestrator.lifecycle import LifecycleManager
from job_orchestrator.notifier import WorkflowEvent
from job_orchestrator.storage.base import OrchestratorStorage
from job_orchestrator.storage.json_file import JsonFileStorage
from job_orchestrator.storage.memory import InMemoryStorage
from job_orchestrator.task_queue import LocalTaskQueue


class RecordingNotifier:
    """Test double that keeps every event instead of calling a webhook."""

    def __init__(self, *, fail: bool = False, healthy: bool = True) -> None:
        self.events: list[WorkflowEvent] = []
        self.fail = fail
        self.healthy = healthy

    def send(self, event: WorkflowEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("workflow engine down")

    def health_check(self) -> bool:
        return self.healthy

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


def _postgres_storage() -> OrchestratorStorage:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and JOB_ORCHESTRATOR_DATABASE_URL "
            "to run storage tests against PostgreSQL."
        )
    database_url = os.getenv("JOB_ORCHESTRATOR_DATABASE_URL")
    if not database_url:
        pytest.skip("JOB_ORCHESTRATOR_DATABASE_URL is required for PostgreSQL storage tests.")

    import psycopg

    from job_orchestrator.storage.postgres import PostgresStorage

    storage = PostgresStorage(database_url)
    storage.migrate()
    with psycopg.connect(database_url) as conn:
        conn.execute("TRUNCATE job_logs, local_tasks, steps, jobs")
        conn.commit()
    return storage


@pytest.fixture(params=["memory", "json_file", "postgres"])
def storage(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[OrchestratorStorage]:
    if request.param == "memory":
        backend: OrchestratorStorage = InMemoryStorage()
        backend.migrate()
    elif request.param == "json_file":
        backend = JsonFileStorage(tmp_path / "data" / "orchestrator.json")
        backend.migrate()
    else:
        backend = _postgres_storage()
    yield backend
    backend.close()


@pytest.fixture
def memory_storage() -> Iterator[InMemoryStorage]:
    backend = InMemoryStorage()
    backend.migrate()
    yield backend
    backend.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lifecycle(memory_storage: InMemoryStorage, notifier: RecordingNotifier) -> LifecycleManager:
    return LifecycleManager(memory_storage, notifier)


@pytest.fixture
def task_queue(lifecycle: LifecycleManager) -> LocalTaskQueue:
    return LocalTaskQueue(lifecycle)


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="", data_file="", workflow_base_url="")


@pytest.fixture
def client(
    memory_storage: InMemoryStorage,
    notifier: RecordingNotifier,
    settings: Settings,
) -> TestClient:
    app = create_app(storage=memory_storage, notifier=notifier, settings_override=settings)
    return TestClient(app)
