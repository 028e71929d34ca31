"""Error taxonomy shared by storage, lifecycle, queue and API layers.

Each error carries the HTTP status it maps to at the API boundary plus an
``extra`` payload (current status, allowed values) that is returned to the
caller next to the human-readable ``detail``.
"""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.detail, **self.extra}


class ValidationError(OrchestratorError):
    """Malformed or missing input."""

    status_code = 400


class InvalidTransitionError(ValidationError):
    """Target status is not a member of the status enum."""


class NotFoundError(OrchestratorError):
    status_code = 404


class InvalidStateError(OrchestratorError):
    """Operation is not legal for the entity's current status."""

    status_code = 400

    def __init__(self, detail: str, *, current_status: str, **extra: Any) -> None:
        super().__init__(detail, current_status=current_status, **extra)
        self.current_status = current_status


class StorageError(OrchestratorError):
    """Backend I/O failure."""

    status_code = 500


class NotifierError(Exception):
    """Workflow notification failed. Never propagated past the lifecycle layer."""
