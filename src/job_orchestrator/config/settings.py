"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]
_ENV_FILES = (PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local")


class Settings(BaseSettings):
    """Runtime settings for the API service, loaded from environment variables."""

    app_name: str = "job-orchestrator"
    app_env: str = "dev"
    database_url: str = ""
    data_file: str = ""
    # Enforce per-state transition tables instead of enum membership only.
    strict_transitions: bool = False
    # Resolve a local task only while it is still pending (compare-and-set).
    exclusive_task_resolution: bool = False
    max_fix_retries: int = Field(default=3, ge=0)
    dev_only_mode: bool = False
    workflow_base_url: str = ""
    workflow_auth_user: str = ""
    workflow_auth_password: str = ""
    notifier_timeout_s: float = Field(default=5.0, ge=0.1)
    notifier_max_retries: int = Field(default=0, ge=0)
    notifier_backoff_s: float = Field(default=0.2, ge=0.0)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    model_config = SettingsConfigDict(
        env_prefix="JOB_ORCHESTRATOR_",
        extra="ignore",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")


class ExecutorSettings(BaseSettings):
    """Settings for the local executor polling client."""

    backend_url: str = "http://localhost:3001"
    poll_interval_s: float = Field(default=5.0, ge=0.0)
    dry_run: bool = False
    task_timeout_s: float = Field(default=30 * 60, gt=0)
    request_timeout_s: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="LOCAL_EXECUTOR_",
        extra="ignore",
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
