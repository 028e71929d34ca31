from __future__ import annotations

import pytest

from job_orchestrator.errors import InvalidStateError, NotFoundError, ValidationError
from job_orchestrator.lifecycle import LifecycleManager
from job_orchestrator.storage.memory import InMemoryStorage
from job_orchestrator.storage.models import StepRecord
from job_orchestrator.task_queue import LocalTaskQueue


def _local_step(lifecycle: LifecycleManager) -> StepRecord:
    job = lifecycle.create_job("Run integration suite locally")
    (step,) = lifecycle.create_steps_for_job(job.id, [{"role": "local_executor"}])
    return step


def test_create_task_requires_all_fields(task_queue: LocalTaskQueue) -> None:
    with pytest.raises(ValidationError, match="jobId, stepId, and instructions are required") as exc:
        task_queue.create_task("job", None, "  ")

    assert exc.value.extra["missing"] == ["stepId", "instructions"]


def test_create_task_unknown_job(task_queue: LocalTaskQueue) -> None:
    with pytest.raises(NotFoundError, match="Job not found"):
        task_queue.create_task("missing", "step", "do it")


def test_create_task_step_must_belong_to_job(
    lifecycle: LifecycleManager, task_queue: LocalTaskQueue
) -> None:
    step = _local_step(lifecycle)
    other_job = lifecycle.create_job("Another job")

    with pytest.raises(ValidationError, match="does not belong"):
        task_queue.create_task(other_job.id, step.id, "do it")


def test_pending_tasks_are_fifo_and_non_destructive(
    lifecycle: LifecycleManager, task_queue: LocalTaskQueue
) -> None:
    step = _local_step(lifecycle)
    first = task_queue.create_task(step.job_id, step.id, "first")
    second = task_queue.create_task(step.job_id, step.id, "second")

    for _ in range(3):
        assert [task.id for task in task_queue.pending_tasks()] == [first.id, second.id]

    task_queue.submit_result(first.id, result="ok", logs=None, success=True)

    assert [task.id for task in task_queue.pending_tasks()] == [second.id]
    assert [task.id for task in task_queue.list_tasks("completed")] == [first.id]


def test_list_tasks_rejects_unknown_status(task_queue: LocalTaskQueue) -> None:
    with pytest.raises(ValidationError) as exc:
        task_queue.list_tasks("running")

    assert exc.value.extra["allowed"] == ["pending", "completed", "failed"]


def test_get_unknown_task(task_queue: LocalTaskQueue) -> None:
    with pytest.raises(NotFoundError, match="Task not found"):
        task_queue.get_task("missing")
    with pytest.raises(NotFoundError, match="Task not found"):
        task_queue.submit_result("missing", result=None, logs=None, success=True)


def test_second_submission_overwrites_by_default(
    lifecycle: LifecycleManager, task_queue: LocalTaskQueue
) -> None:
    step = _local_step(lifecycle)
    task = task_queue.create_task(step.job_id, step.id, "run it")

    task_queue.submit_result(task.id, result="first", logs=None, success=True)
    latest = task_queue.submit_result(task.id, result="second", logs="retry", success=False)

    assert latest.status == "failed"
    assert latest.result == "second"
    assert task_queue.get_task(task.id).logs == "retry"


def test_exclusive_resolution_refuses_second_submission(memory_storage: InMemoryStorage) -> None:
    lifecycle = LifecycleManager(memory_storage, exclusive_task_resolution=True)
    task_queue = LocalTaskQueue(lifecycle)
    step = _local_step(lifecycle)
    task = task_queue.create_task(step.job_id, step.id, "run it")
    task_queue.submit_result(task.id, result="first", logs=None, success=True)

    with pytest.raises(InvalidStateError, match="Task already resolved") as exc:
        task_queue.submit_result(task.id, result="second", logs=None, success=False)

    assert exc.value.current_status == "completed"
    assert task_queue.get_task(task.id).result == "first"
