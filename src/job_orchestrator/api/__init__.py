"""HTTP API for the job orchestrator."""
