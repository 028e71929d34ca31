"""Runtime configuration."""

from job_orchestrator.config.settings import ExecutorSettings, Settings, get_settings

__all__ = ["ExecutorSettings", "Settings", "get_settings"]
