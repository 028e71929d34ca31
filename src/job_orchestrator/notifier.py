"""Best-effort webhook notifications to the external workflow engine.

Notifications are side effects dispatched after the durable write commits.
A failed notification is logged and dropped: it never rolls back or fails the
state change that triggered it.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib import error, request

from job_orchestrator.config.settings import Settings
from job_orchestrator.errors import NotifierError
from job_orchestrator.storage.models import JobRecord, LocalTaskRecord, utc_now

logger = logging.getLogger(__name__)

START_PATH = "orchestrator/start"
APPROVAL_PATH = "orchestrator/approve"
LOCAL_RESULT_PATH = "orchestrator/local-result"


@dataclass(frozen=True)
class WorkflowEvent:
    """One outbound message: webhook path plus JSON payload."""

    webhook_path: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def action(self) -> str:
        return str(self.payload.get("action") or self.webhook_path.rsplit("/", 1)[-1])


class WorkflowNotifier(Protocol):
    def send(self, event: WorkflowEvent) -> Any: ...

    def health_check(self) -> bool: ...


def job_started(job: JobRecord) -> WorkflowEvent:
    return WorkflowEvent(
        START_PATH,
        {"jobId": job.id, "goal": job.goal, "timestamp": utc_now().isoformat()},
    )


def job_approved(job_id: str) -> WorkflowEvent:
    return WorkflowEvent(
        APPROVAL_PATH,
        {"jobId": job_id, "action": "approve", "timestamp": utc_now().isoformat()},
    )


def changes_requested(job_id: str, feedback: str | None) -> WorkflowEvent:
    return WorkflowEvent(
        APPROVAL_PATH,
        {
            "jobId": job_id,
            "action": "request_changes",
            "feedback": feedback,
            "timestamp": utc_now().isoformat(),
        },
    )


def local_task_resolved(task: LocalTaskRecord, success: bool) -> WorkflowEvent:
    return WorkflowEvent(
        LOCAL_RESULT_PATH,
        {
            "taskId": task.id,
            "stepId": task.step_id,
            "result": task.result,
            "success": success,
            "timestamp": utc_now().isoformat(),
        },
    )


class WebhookNotifier:
    """POST events to ``{base_url}/webhook/{path}`` with optional basic auth."""

    def __init__(
        self,
        *,
        base_url: str,
        auth_user: str = "",
        auth_password: str = "",
        timeout_s: float = 5.0,
        max_retries: int = 0,
        backoff_s: float = 0.0,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.auth_user = auth_user
        self.auth_password = auth_password
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def send(self, event: WorkflowEvent) -> Any:
        url = f"{self.base_url}/webhook/{event.webhook_path}"
        last_error: NotifierError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request_once(url=url, method="POST", payload=event.payload)
            except NotifierError as exc:
                last_error = exc
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise NotifierError(f"Workflow webhook {event.webhook_path} failed")
        raise last_error

    def health_check(self) -> bool:
        try:
            self._request_once(url=f"{self.base_url}/healthz", method="GET", payload=None)
        except NotifierError:
            return False
        return True

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_user and self.auth_password:
            token = f"{self.auth_user}:{self.auth_password}".encode("utf-8")
            headers["Authorization"] = f"Basic {base64.b64encode(token).decode('ascii')}"
        return headers

    def _request_once(
        self,
        *,
        url: str,
        method: str,
        payload: dict[str, Any] | None,
    ) -> Any:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = request.Request(url=url, data=data, method=method, headers=self._headers())
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise NotifierError(f"Workflow webhook error: {exc.code} - {body[:200]}") from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise NotifierError(f"Workflow engine unreachable: {exc}") from exc
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}


class NullNotifier:
    """Used when no workflow engine is configured."""

    def send(self, event: WorkflowEvent) -> None:
        logger.debug("workflow_notify event=skipped action=%s reason=not_configured", event.action)

    def health_check(self) -> bool:
        return False


def build_notifier(settings: Settings) -> WorkflowNotifier:
    if not settings.workflow_base_url:
        return NullNotifier()
    return WebhookNotifier(
        base_url=settings.workflow_base_url,
        auth_user=settings.workflow_auth_user,
        auth_password=settings.workflow_auth_password,
        timeout_s=settings.notifier_timeout_s,
        max_retries=settings.notifier_max_retries,
        backoff_s=settings.notifier_backoff_s,
    )


def notify_best_effort(notifier: WorkflowNotifier, event: WorkflowEvent) -> bool:
    """Send ``event``; log and swallow any failure. Returns whether it was delivered."""
    try:
        notifier.send(event)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "workflow_notify event=failed action=%s path=%s error=%s",
            event.action,
            event.webhook_path,
            exc,
        )
        return False
    logger.info("workflow_notify event=sent action=%s path=%s", event.action, event.webhook_path)
    return True
