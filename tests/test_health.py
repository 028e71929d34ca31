from __future__ import annotations

from fastapi.testclient import TestClient

from job_orchestrator.api.main import create_app
from job_orchestrator.config.settings import Settings
from job_orchestrator.storage.memory import InMemoryStorage

from conftest import RecordingNotifier


def test_health_reports_services_and_config(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["service"] == "job-orchestrator"
    assert payload["storage"] == "in-memory"
    assert payload["services"] == {"backend": True, "database": True, "workflow_engine": True}
    assert payload["config"]["max_fix_retries"] == 3
    assert payload["config"]["strict_transitions"] is False


def test_health_degraded_when_storage_closed() -> None:
    storage = InMemoryStorage()
    app = create_app(
        storage=storage,
        notifier=RecordingNotifier(healthy=False),
        settings_override=Settings(max_fix_retries=5, dev_only_mode=True),
    )
    storage.close()

    payload = TestClient(app).get("/health").json()

    assert payload["status"] == "degraded"
    assert payload["services"]["database"] is False
    assert payload["services"]["workflow_engine"] is False
    assert payload["config"]["max_fix_retries"] == 5
    assert payload["config"]["dev_only_mode"] is True
