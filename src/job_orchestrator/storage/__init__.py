"""Storage backends and models."""

from job_orchestrator.storage.base import OrchestratorStorage
from job_orchestrator.storage.json_file import JsonFileStorage
from job_orchestrator.storage.memory import InMemoryStorage
from job_orchestrator.storage.models import (
    JobDetail,
    JobLogRecord,
    JobRecord,
    LocalTaskRecord,
    StepDraft,
    StepRecord,
)
from job_orchestrator.storage.postgres import PostgresStorage

__all__ = [
    "InMemoryStorage",
    "JobDetail",
    "JobLogRecord",
    "JobRecord",
    "JsonFileStorage",
    "LocalTaskRecord",
    "OrchestratorStorage",
    "PostgresStorage",
    "StepDraft",
    "StepRecord",
]
