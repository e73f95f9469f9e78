from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import allure
import pytest

from attention_queue.collaborators import (
    AttentionData,
    AttentionItem,
    EchoLlmProvider,
    StaticAttentionDataProvider,
)
from attention_queue.handlers.builtin import register_builtin_handlers
from attention_queue.queue.models import FailureKind, TaskCreate, TaskStatus, TaskType, TaskView
from attention_queue.queue.repository import TaskQueueRepository
from attention_queue.worker.engine import TaskWorker

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Worker"),
]


def _text_item(item_id: str, *, chars: int = 60) -> AttentionItem:
    return AttentionItem(
        item_id=item_id,
        observed_at=datetime.now(tz=UTC) - timedelta(hours=1),
        url=f"https://example.com/{item_id}",
        text="rust ownership and borrowing " * (chars // 29 + 1),
    )


def _push(repository: TaskQueueRepository, user_id: str, task_type: str, **kwargs: Any) -> TaskView:
    return repository.push_task(TaskCreate(user_id=user_id, task_type=task_type, **kwargs))


class _Gate:
    """Handler that blocks until released and records peak concurrency."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.running_by_user: dict[str, int] = {}
        self.peak_by_user: dict[str, int] = {}
        self.running = 0
        self.peak = 0

    async def __call__(self, task: TaskView) -> dict[str, Any]:
        self.running += 1
        self.peak = max(self.peak, self.running)
        current = self.running_by_user.get(task.user_id, 0) + 1
        self.running_by_user[task.user_id] = current
        self.peak_by_user[task.user_id] = max(self.peak_by_user.get(task.user_id, 0), current)
        self.started.set()
        try:
            await self.release.wait()
        finally:
            self.running -= 1
            self.running_by_user[task.user_id] -= 1
        return {"done": task.task_id}


@pytest.mark.asyncio
async def test_focus_calculation_runs_end_to_end(repository: TaskQueueRepository) -> None:
    attention = StaticAttentionDataProvider(
        {"u1": AttentionData(text_attentions=[_text_item("t1")])},
    )
    llm = EchoLlmProvider()
    worker = TaskWorker(repository=repository)
    register_builtin_handlers(worker, attention=attention, llm=llm)
    task = _push(repository, "u1", TaskType.FOCUS_CALCULATION.value)

    summary = await worker.run_until_idle()
    completed = repository.get_task(task_id=task.task_id)

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    assert completed.status == TaskStatus.COMPLETED
    assert completed.result["skipped_no_new_data"] is False
    assert completed.result["focus"].startswith("echo: Identify the user's current focus")
    assert completed.result["items_considered"] == 1
    assert llm.flushes == 1
    assert worker.processing_count == 0


@pytest.mark.asyncio
async def test_quiz_without_activity_fails_without_retry(repository: TaskQueueRepository) -> None:
    worker = TaskWorker(repository=repository)
    register_builtin_handlers(
        worker,
        attention=StaticAttentionDataProvider(),
        llm=EchoLlmProvider(),
    )
    task = _push(repository, "u1", TaskType.QUIZ_GENERATION.value)

    summary = await worker.run_until_idle()
    failed = repository.get_task(task_id=task.task_id)

    assert summary.failed == 1
    assert failed.status == TaskStatus.FAILED
    assert failed.retry_count == 0
    assert failed.failure_kind == FailureKind.INPUT
    assert failed.error == "Not enough activity data to generate quiz"


@pytest.mark.asyncio
async def test_per_user_cap_limits_parallel_work(repository: TaskQueueRepository) -> None:
    gate = _Gate()
    worker = TaskWorker(repository=repository, max_concurrent_tasks=5, max_tasks_per_user=1)
    worker.register_task_handler("slow", gate)
    _push(repository, "u1", "slow", dedupe_key="u1:slow:a")
    _push(repository, "u1", "slow", dedupe_key="u1:slow:b")
    _push(repository, "u2", "slow")

    tick = await worker.run_once()

    assert tick.claimed == 2
    assert worker.status().processing_by_user == {"u1": 1, "u2": 1}
    assert len(repository.get_user_pending_tasks(user_id="u1")) == 1

    gate.release.set()
    summary = await worker.run_until_idle()

    assert summary.succeeded == 3
    assert gate.peak_by_user == {"u1": 1, "u2": 1}
    assert len(repository.list_tasks(status=TaskStatus.COMPLETED)) == 3


@pytest.mark.asyncio
async def test_global_cap_limits_claims(repository: TaskQueueRepository) -> None:
    gate = _Gate()
    worker = TaskWorker(repository=repository, max_concurrent_tasks=2, max_tasks_per_user=2)
    worker.register_task_handler("slow", gate)
    for user_id in ("u1", "u2", "u3"):
        _push(repository, user_id, "slow")

    tick = await worker.run_once()
    await gate.started.wait()

    assert tick.claimed == 2
    assert worker.processing_count == 2
    assert len(repository.list_tasks(status=TaskStatus.PENDING)) == 1
    assert (await worker.run_once()).claimed == 0

    gate.release.set()
    await worker.run_until_idle()

    assert gate.peak == 2
    assert len(repository.list_tasks(status=TaskStatus.COMPLETED)) == 3


@pytest.mark.asyncio
async def test_unknown_task_type_fails_as_configuration(repository: TaskQueueRepository) -> None:
    worker = TaskWorker(repository=repository)
    task = _push(repository, "u1", "mystery")

    tick = await worker.run_once()
    failed = repository.get_task(task_id=task.task_id)

    assert tick.unknown_type == 1
    assert worker.processing_count == 0
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_kind == FailureKind.CONFIGURATION
    assert failed.error == "Unknown task type: mystery"
    assert failed.retry_count == 0


@pytest.mark.asyncio
async def test_transient_handler_error_schedules_retry(repository: TaskQueueRepository) -> None:
    async def _flaky(task: TaskView) -> dict[str, Any]:
        raise RuntimeError("LLM rate limit exceeded")

    worker = TaskWorker(repository=repository)
    worker.register_task_handler("flaky", _flaky)
    task = _push(repository, "u1", "flaky")

    summary = await worker.run_until_idle()
    requeued = repository.get_task(task_id=task.task_id)
    events = repository.list_task_events(task_id=task.task_id)

    assert summary.retried == 1
    assert requeued.status == TaskStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.failure_kind == FailureKind.TRANSIENT
    assert requeued.error == "LLM rate limit exceeded"
    assert events[-1].event_type == "retry_scheduled"
    assert events[-1].details["matched_rule"] == "rate_limit_transient"


@pytest.mark.asyncio
async def test_handler_raising_before_await_is_recorded(repository: TaskQueueRepository) -> None:
    def _explode(task: TaskView) -> Any:
        raise ValueError("malformed payload")

    worker = TaskWorker(repository=repository)
    worker.register_task_handler("explode", _explode)
    task = _push(repository, "u1", "explode")

    await worker.run_until_idle()
    failed = repository.get_task(task_id=task.task_id)

    assert failed.status == TaskStatus.FAILED
    assert failed.failure_kind == FailureKind.INPUT
    assert worker.processing_count == 0


@pytest.mark.asyncio
async def test_non_dict_result_is_wrapped(repository: TaskQueueRepository) -> None:
    async def _scalar(task: TaskView) -> Any:
        return "ok"

    worker = TaskWorker(repository=repository)
    worker.register_task_handler("scalar", _scalar)
    task = _push(repository, "u1", "scalar")

    await worker.run_until_idle()

    assert repository.get_task(task_id=task.task_id).result == {"value": "ok"}


@pytest.mark.asyncio
async def test_result_is_dropped_when_task_was_recovered_mid_flight(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    gate = _Gate()
    worker = TaskWorker(repository=repository)
    worker.register_task_handler("slow", gate)
    task = _push(repository, "u1", "slow")

    await worker.run_once()
    await gate.started.wait()
    rewrite_task(task.task_id, started_at=datetime.now(tz=UTC) - timedelta(hours=1))
    assert repository.recover_stale_tasks(stale_after=timedelta(minutes=5)).requeued == 1

    gate.release.set()
    await worker.stop()
    current = repository.get_task(task_id=task.task_id)

    assert current.status == TaskStatus.PENDING
    assert current.retry_count == 1
    assert current.result is None


@pytest.mark.asyncio
async def test_counters_track_each_claim_of_a_recovered_task(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    gate = _Gate()
    worker = TaskWorker(repository=repository, max_tasks_per_user=2)
    worker.register_task_handler("slow", gate)
    task = _push(repository, "u1", "slow")

    assert (await worker.run_once()).claimed == 1
    await gate.started.wait()
    rewrite_task(task.task_id, started_at=datetime.now(tz=UTC) - timedelta(hours=1))
    assert worker.run_maintenance().recovered == 1
    rewrite_task(task.task_id, scheduled_for=datetime.now(tz=UTC) - timedelta(seconds=1))

    assert (await worker.run_once()).claimed == 1
    assert worker.status().processing_by_user == {"u1": 2}
    assert worker.processing_count == 2

    gate.release.set()
    await worker.stop()
    current = repository.get_task(task_id=task.task_id)

    assert worker.status().processing_by_user == {}
    assert worker.processing_count == 0
    assert current.status == TaskStatus.COMPLETED
    assert current.retry_count == 1


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop_thread(
    repository: TaskQueueRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    loop_thread = threading.get_ident()
    seen: dict[str, int] = {}

    def _recording(name: str) -> Callable[..., Any]:
        original = getattr(repository, name)

        def _call(*args: Any, **kwargs: Any) -> Any:
            seen[name] = threading.get_ident()
            return original(*args, **kwargs)

        return _call

    for name in ("get_next_task", "complete_task", "fail_task"):
        monkeypatch.setattr(repository, name, _recording(name))

    async def _ok(task: TaskView) -> dict[str, Any]:
        return {}

    async def _broken(task: TaskView) -> dict[str, Any]:
        raise ValueError("bad input")

    worker = TaskWorker(repository=repository)
    worker.register_task_handler("ok", _ok)
    worker.register_task_handler("broken", _broken)
    _push(repository, "u1", "ok")
    _push(repository, "u2", "broken")

    summary = await worker.run_until_idle()

    assert (summary.succeeded, summary.failed) == (1, 1)
    assert set(seen) == {"get_next_task", "complete_task", "fail_task"}
    assert loop_thread not in seen.values()


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_handlers(repository: TaskQueueRepository) -> None:
    finished: list[str] = []
    started = asyncio.Event()

    async def _slow(task: TaskView) -> dict[str, Any]:
        started.set()
        await asyncio.sleep(0.05)
        finished.append(task.task_id)
        return {}

    worker = TaskWorker(
        repository=repository,
        poll_interval_seconds=0.01,
        maintenance_interval_seconds=60,
    )
    worker.register_task_handler("slow", _slow)
    task = _push(repository, "u1", "slow")

    await worker.start()
    assert worker.running is True
    await asyncio.wait_for(started.wait(), timeout=5)
    await worker.stop()

    assert worker.running is False
    assert finished == [task.task_id]
    assert repository.get_task(task_id=task.task_id).status == TaskStatus.COMPLETED
    assert worker.processing_count == 0


@pytest.mark.asyncio
async def test_serve_returns_when_stop_event_is_set(repository: TaskQueueRepository) -> None:
    worker = TaskWorker(repository=repository, poll_interval_seconds=0.01)
    stop_event = asyncio.Event()

    serving = asyncio.create_task(worker.serve(stop_event=stop_event))
    await asyncio.sleep(0.05)
    assert worker.running is True
    stop_event.set()
    await asyncio.wait_for(serving, timeout=5)

    assert worker.running is False


def test_status_lists_registered_handlers(repository: TaskQueueRepository) -> None:
    worker = TaskWorker(repository=repository, worker_id="w-1")
    register_builtin_handlers(
        worker,
        attention=StaticAttentionDataProvider(),
        llm=EchoLlmProvider(),
    )

    status = worker.status()

    assert status.running is False
    assert status.worker_id == "w-1"
    assert status.processing_count == 0
    assert status.registered_handlers == [
        "focus-calculation",
        "image-summarization",
        "quiz-generation",
        "summarization",
    ]
    assert worker.has_task_handler("quiz-generation")
    assert not worker.has_task_handler("mystery")


def test_worker_rejects_invalid_caps(repository: TaskQueueRepository) -> None:
    with pytest.raises(ValueError, match="max_concurrent_tasks"):
        TaskWorker(repository=repository, max_concurrent_tasks=0)
    with pytest.raises(ValueError, match="max_tasks_per_user"):
        TaskWorker(repository=repository, max_tasks_per_user=0)


def test_run_maintenance_recovers_and_archives(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    stale = _push(repository, "u1", "x")
    repository.get_next_task()
    rewrite_task(stale.task_id, started_at=datetime.now(tz=UTC) - timedelta(hours=1))
    done = _push(repository, "u2", "x")
    repository.start_task(task_id=done.task_id)
    repository.complete_task(task_id=done.task_id, result={})
    rewrite_task(done.task_id, completed_at=datetime.now(tz=UTC) - timedelta(hours=2))

    worker = TaskWorker(repository=repository, stale_after_seconds=300, archive_after_seconds=3600)
    summary = worker.run_maintenance()

    assert summary.recovered == 1
    assert summary.stale_failed == 0
    assert summary.archived == 1
    assert summary.history_pruned == 0
    assert repository.get_task(task_id=done.task_id) is None
    assert repository.get_task(task_id=stale.task_id).status == TaskStatus.PENDING
