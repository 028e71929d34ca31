"""Job/step/local-task orchestration service for agent-driven automation."""

__version__ = "0.1.0"
