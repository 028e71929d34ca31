"""Select a storage backend from runtime settings."""

from __future__ import annotations

import logging

from job_orchestrator.config.settings import Settings
from job_orchestrator.storage.base import OrchestratorStorage
from job_orchestrator.storage.json_file import JsonFileStorage
from job_orchestrator.storage.memory import InMemoryStorage
from job_orchestrator.storage.postgres import PostgresStorage

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> OrchestratorStorage:
    """PostgreSQL when a database URL is set, else the JSON file, else in-memory."""
    database_url = settings.resolved_database_url()
    if database_url:
        logger.info("storage event=selected backend=postgres")
        return PostgresStorage(database_url)
    if settings.data_file:
        logger.info("storage event=selected backend=json_file path=%s", settings.data_file)
        return JsonFileStorage(settings.data_file)
    logger.warning(
        "storage event=selected backend=memory "
        "reason=no JOB_ORCHESTRATOR_DATABASE_URL or JOB_ORCHESTRATOR_DATA_FILE configured"
    )
    return InMemoryStorage()


def backend_name(storage: OrchestratorStorage) -> str:
    if isinstance(storage, PostgresStorage):
        return "postgresql"
    if isinstance(storage, JsonFileStorage):
        return "json-file"
    if isinstance(storage, InMemoryStorage):
        return "in-memory"
    return type(storage).__name__
