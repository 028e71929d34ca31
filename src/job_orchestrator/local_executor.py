"""Polling client that runs local tasks on a developer machine.

The executor polls ``GET /local-tasks?status=pending``, takes the oldest task,
hands it to a handler and submits the outcome. Only one task is in flight at a
time. Reads are non-destructive on the server, so a task whose submission
fails stays pending and is picked up again on a later poll.

Handlers receive the task and a ``TaskHandle``; they finish the task by
calling ``complete``, ``fail`` or ``skip`` on the handle, possibly from
another thread. A handle nobody finishes times out as a failure.
"""

from __future__ import annotations

import argparse
import json
import logging
import threading
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any
from urllib import error, parse, request

from job_orchestrator.config.settings import ExecutorSettings
from job_orchestrator.storage.models import LocalTaskRecord

logger = logging.getLogger(__name__)


class ExecutorClientError(RuntimeError):
    """The orchestrator API could not be reached or rejected a request."""


@dataclass(frozen=True)
class TaskOutcome:
    success: bool
    result: Any = None
    logs: str | None = None


class TaskHandle:
    """One in-flight task. The first call to complete/fail/skip wins.

    ``cancelled`` is set when the executor stops waiting (timeout). Handlers
    that block should watch it and return once it is set.
    """

    def __init__(self, task: LocalTaskRecord) -> None:
        self.task = task
        self.cancelled = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._outcome: TaskOutcome | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def complete(self, result: Any = None, logs: str | None = None) -> bool:
        return self._finish(TaskOutcome(success=True, result=result, logs=logs))

    def fail(self, reason: str, logs: str | None = None) -> bool:
        return self._finish(
            TaskOutcome(success=False, result={"status": "failed", "error": reason}, logs=logs)
        )

    def skip(self) -> bool:
        return self._finish(
            TaskOutcome(success=False, result={"status": "skipped"}, logs="Skipped by operator")
        )

    def wait(self, timeout_s: float | None = None) -> TaskOutcome:
        """Block until the task is resolved; resolve it as a timeout otherwise."""
        if not self._done.wait(timeout_s):
            self.cancelled.set()
        timeout = TaskOutcome(
            success=False,
            result={"status": "timeout"},
            logs=f"No result within {timeout_s:g}s" if timeout_s is not None else None,
        )
        return self._settle(timeout)

    def _finish(self, outcome: TaskOutcome) -> bool:
        return self._settle(outcome) is outcome

    def _settle(self, outcome: TaskOutcome) -> TaskOutcome:
        """Store ``outcome`` unless one is already stored; return the stored one."""
        with self._lock:
            if self._outcome is None:
                self._outcome = outcome
                self._done.set()
                return outcome
            return self._outcome


TaskHandler = Callable[[LocalTaskRecord, TaskHandle], None]


class OrchestratorClient:
    """Minimal JSON client for the local-task endpoints."""

    def __init__(self, base_url: str, *, timeout_s: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def fetch_pending_tasks(self) -> list[LocalTaskRecord]:
        query = parse.urlencode({"status": "pending"})
        data = self._request_json("GET", f"/local-tasks?{query}")
        if not isinstance(data, list):
            raise ExecutorClientError("Expected a list of tasks from /local-tasks")
        return [LocalTaskRecord.model_validate(item) for item in data]

    def submit_result(
        self,
        task_id: str,
        *,
        result: Any,
        logs: str | None,
        success: bool,
    ) -> LocalTaskRecord:
        data = self._request_json(
            "POST",
            f"/local-tasks/{parse.quote(task_id)}/result",
            payload={"result": result, "logs": logs, "success": success},
        )
        return LocalTaskRecord.model_validate(data)

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        headers = {"Accept": "application/json"}
        data: bytes | None = None
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(
            url=f"{self.base_url}{path}",
            data=data,
            method=method,
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise ExecutorClientError(f"{method} {path} failed: {exc.code} - {body[:200]}") from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise ExecutorClientError(f"Orchestrator unreachable: {exc}") from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ExecutorClientError(f"{method} {path} returned invalid JSON") from exc


class ConsoleInput:
    """Single stdin reader shared by every task.

    One daemon thread owns ``input()`` and buffers lines. Handlers take lines
    with ``next_line``, which stops handing out lines once the handle is
    cancelled or resolved, so a timed-out task never eats the answer meant for
    the next one.
    """

    def __init__(self, read_line: Callable[[str], str] | None = None) -> None:
        self._read_line = read_line
        self._lines: deque[str] = deque()
        self._cond = threading.Condition()
        self._eof = False
        self._reader: threading.Thread | None = None

    def next_line(self, handle: TaskHandle, poll_s: float = 0.2) -> str | None:
        """Next buffered line, or ``None`` once ``handle`` no longer needs input.

        Raises ``EOFError`` when stdin is closed.
        """
        self._ensure_reader()
        with self._cond:
            while not (handle.done or handle.cancelled.is_set()):
                if self._lines:
                    return self._lines.popleft()
                if self._eof:
                    raise EOFError
                self._cond.wait(poll_s)
        return None

    def unread(self, line: str) -> None:
        with self._cond:
            self._lines.appendleft(line)
            self._cond.notify_all()

    def _ensure_reader(self) -> None:
        with self._cond:
            if self._reader is not None:
                return
            self._reader = threading.Thread(
                target=self._read_forever, name="local-executor-stdin", daemon=True
            )
            self._reader.start()

    def _read_forever(self) -> None:
        read_line = self._read_line or input
        while True:
            try:
                line = read_line("> ")
            except EOFError:
                with self._cond:
                    self._eof = True
                    self._cond.notify_all()
                return
            with self._cond:
                self._lines.append(line)
                self._cond.notify_all()


class ConsoleHandler:
    """Show the instructions and wait for the operator to type done/fail/skip."""

    def __init__(self, console: ConsoleInput | None = None) -> None:
        self.console = console or ConsoleInput()

    def __call__(self, task: LocalTaskRecord, handle: TaskHandle) -> None:
        print(f"\n=== Local task {task.id} (job {task.job_id}) ===")
        print(task.instructions)
        print("\nType 'done', 'fail' or 'skip' when finished.")
        while True:
            try:
                line = self.console.next_line(handle)
            except EOFError:
                handle.skip()
                return
            if line is None:
                return
            answer = line.strip().lower()
            if answer in {"d", "done"}:
                accepted = handle.complete({"status": "completed_manually"})
            elif answer in {"f", "fail"}:
                accepted = handle.fail("Marked as failed by operator")
            elif answer in {"s", "skip"}:
                accepted = handle.skip()
            else:
                continue
            if not accepted:
                # Resolved by a timeout in the meantime; the answer belongs to the next task.
                self.console.unread(line)
            return


console_handler = ConsoleHandler()


class LocalExecutor:
    def __init__(
        self,
        client: OrchestratorClient,
        handler: TaskHandler = console_handler,
        *,
        poll_interval_s: float = 5.0,
        task_timeout_s: float = 30 * 60,
        dry_run: bool = False,
    ) -> None:
        self.client = client
        self.handler = handler
        self.poll_interval_s = poll_interval_s
        self.task_timeout_s = task_timeout_s
        self.dry_run = dry_run
        self._current: TaskHandle | None = None

    @property
    def current_task(self) -> LocalTaskRecord | None:
        handle = self._current
        return handle.task if handle is not None else None

    def poll_once(self) -> TaskOutcome | None:
        """Run at most one pending task. Returns its outcome, or ``None`` when idle."""
        tasks = self.client.fetch_pending_tasks()
        if not tasks:
            return None
        task = min(tasks, key=lambda item: item.created_at)
        logger.info("local_executor event=task_started task_id=%s job_id=%s", task.id, task.job_id)

        if self.dry_run:
            outcome = TaskOutcome(
                success=True,
                result={"status": "dry_run", "instructions": task.instructions},
                logs="Dry run: instructions not executed",
            )
        else:
            outcome = self._execute(task)

        try:
            self.client.submit_result(
                task.id,
                result=outcome.result,
                logs=outcome.logs,
                success=outcome.success,
            )
        except ExecutorClientError as exc:
            logger.error(
                "local_executor event=submit_failed task_id=%s error=%s",
                task.id,
                exc,
            )
            return outcome
        logger.info(
            "local_executor event=task_finished task_id=%s success=%s",
            task.id,
            outcome.success,
        )
        return outcome

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        logger.info(
            "local_executor event=started backend=%s poll_interval_s=%s dry_run=%s",
            self.client.base_url,
            self.poll_interval_s,
            self.dry_run,
        )
        while not stop.is_set():
            try:
                self.poll_once()
            except ExecutorClientError as exc:
                logger.warning("local_executor event=poll_failed error=%s", exc)
            stop.wait(self.poll_interval_s)
        logger.info("local_executor event=stopped")

    def _execute(self, task: LocalTaskRecord) -> TaskOutcome:
        handle = TaskHandle(task)
        self._current = handle
        worker = threading.Thread(
            target=self._run_handler,
            args=(task, handle),
            name=f"local-task-{task.id}",
            daemon=True,
        )
        worker.start()
        try:
            return handle.wait(self.task_timeout_s)
        finally:
            self._current = None

    def _run_handler(self, task: LocalTaskRecord, handle: TaskHandle) -> None:
        try:
            self.handler(task, handle)
        except Exception as exc:  # noqa: BLE001
            logger.exception("local_executor event=handler_failed task_id=%s", task.id)
            handle.fail(f"{type(exc).__name__}: {exc}")


def _parse_args(argv: Sequence[str] | None, settings: ExecutorSettings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll the job orchestrator for local tasks and run them on this machine."
    )
    parser.add_argument(
        "--backend-url",
        default=settings.backend_url,
        help=f"Orchestrator API base URL (default: {settings.backend_url}).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=settings.poll_interval_s,
        help="Seconds between polls.",
    )
    parser.add_argument(
        "--task-timeout",
        type=float,
        default=settings.task_timeout_s,
        help="Seconds to wait for a task before reporting a timeout.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=settings.dry_run,
        help="Acknowledge tasks without executing them.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    settings = ExecutorSettings()
    args = _parse_args(argv, settings)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    executor = LocalExecutor(
        OrchestratorClient(args.backend_url, timeout_s=settings.request_timeout_s),
        poll_interval_s=args.poll_interval,
        task_timeout_s=args.task_timeout,
        dry_run=args.dry_run,
    )
    stop = threading.Event()
    try:
        executor.run(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
