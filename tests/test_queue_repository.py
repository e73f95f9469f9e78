from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from attention_queue.queue.errors import InvalidTransitionError, TaskNotFoundError
from attention_queue.queue.models import (
    ChangeType,
    FailureKind,
    TaskChangedEvent,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from attention_queue.queue.repository import TaskQueueRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Queue Service"),
]

FOCUS = TaskType.FOCUS_CALCULATION.value
QUIZ = TaskType.QUIZ_GENERATION.value
SUMMARY = TaskType.SUMMARIZATION.value


def _push(repository: TaskQueueRepository, user_id: str = "u1", task_type: str = FOCUS, **kwargs):
    return repository.push_task(TaskCreate(user_id=user_id, task_type=task_type, **kwargs))


def _open_count(repository: TaskQueueRepository, dedupe_key: str) -> int:
    with repository.engine.connect() as connection:
        return int(
            connection.execute(
                text(
                    "SELECT COUNT(*) FROM task_queue "
                    "WHERE dedupe_key = :key AND status IN ('pending', 'processing')",
                ),
                {"key": dedupe_key},
            ).scalar_one(),
        )


def test_alembic_schema_is_initialized_to_head(repository: TaskQueueRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'"),
            )
        }
    assert version == "20261001_0001"
    assert {"task_queue", "task_history", "task_events", "user_settings"} <= tables


def test_push_task_applies_type_defaults(repository: TaskQueueRepository) -> None:
    task = _push(repository, task_type=QUIZ, payload={"activity_days": 2})

    assert task.status == TaskStatus.PENDING
    assert task.priority == TaskPriority.HIGH.value
    assert task.max_retries == 1
    assert task.retry_count == 0
    assert task.dedupe_key == f"u1:{QUIZ}"
    assert task.payload == {"activity_days": 2}
    assert task.started_at is None
    assert task.scheduled_for <= datetime.now(tz=UTC)


def test_push_task_unknown_type_uses_normal_defaults(repository: TaskQueueRepository) -> None:
    task = _push(repository, task_type="custom-report")

    assert task.priority == TaskPriority.NORMAL.value
    assert task.max_retries == 2


def test_push_task_twice_returns_same_open_task(
    repository: TaskQueueRepository,
    emitted: list[TaskChangedEvent],
) -> None:
    first = _push(repository)
    second = _push(repository, payload={"force": True})

    assert second.task_id == first.task_id
    assert _open_count(repository, first.dedupe_key) == 1
    assert [event.change_type for event in emitted] == [ChangeType.CREATED]


def test_push_task_explicit_dedupe_key_scopes_uniqueness(repository: TaskQueueRepository) -> None:
    first = _push(repository, task_type=SUMMARY, dedupe_key="u1:summary:batch-1")
    second = _push(repository, task_type=SUMMARY, dedupe_key="u1:summary:batch-2")
    third = _push(repository, task_type=SUMMARY)

    assert len({first.task_id, second.task_id, third.task_id}) == 3


def test_push_task_allows_new_task_after_previous_is_terminal(
    repository: TaskQueueRepository,
) -> None:
    first = _push(repository)
    claimed = repository.get_next_task()
    assert claimed is not None
    assert repository.complete_task(task_id=first.task_id, result={"ok": True})

    second = _push(repository)

    assert second.task_id != first.task_id
    assert second.status == TaskStatus.PENDING


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"user_id": " "}, "user_id"),
        ({"task_type": ""}, "task_type"),
        ({"max_retries": -1}, "max_retries"),
        ({"delay": timedelta(seconds=-1)}, "delay"),
    ],
)
def test_push_task_validates_input(
    repository: TaskQueueRepository,
    kwargs: dict[str, object],
    message: str,
) -> None:
    payload = {"user_id": "u1", "task_type": FOCUS, **kwargs}
    with pytest.raises(ValueError, match=message):
        repository.push_task(TaskCreate(**payload))


def test_concurrent_push_keeps_single_open_task(db_path: Path) -> None:
    setup = TaskQueueRepository(db_path)
    setup.init_schema()
    setup.close()

    workers = 6
    barrier = threading.Barrier(workers)
    task_ids: list[str] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _enqueue() -> None:
        repository = TaskQueueRepository(db_path)
        try:
            barrier.wait(timeout=5)
            task = repository.push_task(TaskCreate(user_id="u1", task_type=FOCUS))
            with lock:
                task_ids.append(task.task_id)
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [threading.Thread(target=_enqueue) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(set(task_ids)) == 1

    verify = TaskQueueRepository(db_path)
    try:
        assert _open_count(verify, f"u1:{FOCUS}") == 1
    finally:
        verify.close()


def test_get_next_task_orders_by_priority_then_schedule(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    now = datetime.now(tz=UTC)
    low = _push(repository, user_id="u1", task_type="image-summarization")
    normal_late = _push(repository, user_id="u2", task_type=FOCUS)
    normal_early = _push(repository, user_id="u3", task_type=FOCUS)
    high = _push(repository, user_id="u4", task_type=QUIZ)
    rewrite_task(normal_late.task_id, scheduled_for=now - timedelta(seconds=5))
    rewrite_task(normal_early.task_id, scheduled_for=now - timedelta(seconds=30))

    order = []
    while (task := repository.get_next_task()) is not None:
        order.append(task.task_id)

    assert order == [high.task_id, normal_early.task_id, normal_late.task_id, low.task_id]


def test_get_next_task_skips_delayed_and_excluded_users(repository: TaskQueueRepository) -> None:
    _push(repository, user_id="u1", delay=timedelta(minutes=5))
    busy = _push(repository, user_id="u2")
    ready = _push(repository, user_id="u3")

    claimed = repository.get_next_task(exclude_user_ids=["u2"])

    assert claimed is not None
    assert claimed.task_id == ready.task_id
    assert claimed.status == TaskStatus.PROCESSING
    assert claimed.started_at is not None
    assert repository.get_next_task(exclude_user_ids=["u2"]) is None
    assert repository.get_task(task_id=busy.task_id).status == TaskStatus.PENDING


def test_get_next_task_filters_task_types(repository: TaskQueueRepository) -> None:
    _push(repository, task_type=FOCUS)
    quiz = _push(repository, task_type=QUIZ)

    claimed = repository.get_next_task(task_types=[QUIZ])

    assert claimed is not None
    assert claimed.task_id == quiz.task_id
    assert repository.get_next_task(task_types=[QUIZ]) is None


def test_start_task_claims_only_once(repository: TaskQueueRepository) -> None:
    task = _push(repository)

    assert repository.start_task(task_id=task.task_id) is not None
    assert repository.start_task(task_id=task.task_id) is None
    assert repository.get_next_task() is None


def test_complete_task_attaches_result(
    repository: TaskQueueRepository,
    emitted: list[TaskChangedEvent],
) -> None:
    task = _push(repository)
    claimed = repository.get_next_task()
    assert claimed is not None

    assert repository.complete_task(task_id=task.task_id, result={"focus": "rust"})
    completed = repository.get_task(task_id=task.task_id)

    assert completed.status == TaskStatus.COMPLETED
    assert completed.result == {"focus": "rust"}
    assert completed.error is None
    assert completed.completed_at is not None
    assert completed.started_at <= completed.completed_at
    assert [event.change_type for event in emitted] == [
        ChangeType.CREATED,
        ChangeType.STARTED,
        ChangeType.COMPLETED,
    ]
    assert emitted[-1].to_payload() == {
        "taskId": task.task_id,
        "userId": "u1",
        "type": FOCUS,
        "status": "completed",
        "changeType": "completed",
        "result": {"focus": "rust"},
    }
    assert [event.event_type for event in repository.list_task_events(task_id=task.task_id)] == [
        "created",
        "started",
        "completed",
    ]


def test_complete_task_rejects_non_processing_task(repository: TaskQueueRepository) -> None:
    task = _push(repository)

    assert repository.complete_task(task_id=task.task_id, result={}) is False
    assert repository.get_task(task_id=task.task_id).status == TaskStatus.PENDING


def test_complete_task_with_outdated_claim_is_rejected(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    task = _push(repository)
    claimed = repository.get_next_task()
    assert claimed is not None
    rewrite_task(task.task_id, started_at=datetime.now(tz=UTC) + timedelta(seconds=1))

    assert repository.complete_task(
        task_id=task.task_id,
        result={},
        claimed_at=claimed.started_at,
    ) is False
    assert repository.get_task(task_id=task.task_id).status == TaskStatus.PROCESSING


def test_fail_task_retryable_requeues_with_backoff(
    repository: TaskQueueRepository,
    emitted: list[TaskChangedEvent],
) -> None:
    task = _push(repository)
    repository.get_next_task()
    before = datetime.now(tz=UTC)

    outcome = repository.fail_task(task_id=task.task_id, error="rate limit", retryable=True)
    requeued = repository.get_task(task_id=task.task_id)

    assert outcome is not None
    assert outcome.retried is True
    assert outcome.retry_count == 1
    assert requeued.status == TaskStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.started_at is None
    assert requeued.error == "rate limit"
    assert requeued.failure_kind == FailureKind.TRANSIENT
    assert requeued.scheduled_for >= before + timedelta(seconds=2)
    assert repository.get_next_task() is None
    assert emitted[-1].change_type == ChangeType.RETRY_SCHEDULED
    assert emitted[-1].status == TaskStatus.PENDING


def test_retry_exhaustion_ends_in_terminal_failure(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    task = _push(repository, max_retries=2)
    outcomes = []
    for _ in range(3):
        rewrite_task(task.task_id, scheduled_for=datetime.now(tz=UTC) - timedelta(seconds=1))
        claimed = repository.get_next_task()
        assert claimed is not None
        assert claimed.retry_count <= claimed.max_retries
        outcomes.append(
            repository.fail_task(task_id=task.task_id, error="timeout", retryable=True),
        )

    final = repository.get_task(task_id=task.task_id)

    assert [outcome.retried for outcome in outcomes] == [True, True, False]
    assert final.status == TaskStatus.FAILED
    assert final.retry_count == 2
    assert final.completed_at is not None
    assert repository.get_next_task() is None


def test_non_retryable_failure_is_terminal_immediately(repository: TaskQueueRepository) -> None:
    task = _push(repository, task_type=QUIZ)
    repository.get_next_task()

    outcome = repository.fail_task(
        task_id=task.task_id,
        error="Not enough activity data to generate quiz",
        retryable=False,
    )
    failed = repository.get_task(task_id=task.task_id)

    assert outcome is not None
    assert outcome.failed is True
    assert failed.status == TaskStatus.FAILED
    assert failed.retry_count == 0
    assert failed.failure_kind == FailureKind.INPUT
    assert "Not enough activity data" in failed.error
    assert repository.get_next_task() is None


def test_fail_task_ignores_tasks_that_are_not_processing(repository: TaskQueueRepository) -> None:
    task = _push(repository)

    assert repository.fail_task(task_id=task.task_id, error="x", retryable=True) is None
    assert repository.fail_task(task_id="missing", error="x", retryable=True) is None


def test_compute_backoff_is_exponential_and_capped(tmp_path: Path) -> None:
    repository = TaskQueueRepository(
        tmp_path / "backoff.db",
        retry_base_seconds=2,
        retry_max_seconds=10,
    )
    try:
        delays = [repository.compute_backoff(retry_number=n).total_seconds() for n in (1, 2, 3, 4)]
    finally:
        repository.close()

    assert delays == [2, 4, 8, 10]


def test_cancel_pending_task_prevents_claim(
    repository: TaskQueueRepository,
    emitted: list[TaskChangedEvent],
) -> None:
    task = _push(repository)

    cancelled = repository.cancel_task(task_id=task.task_id)

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert repository.get_next_task() is None
    assert repository.get_task(task_id=task.task_id).status == TaskStatus.CANCELLED
    assert emitted[-1].change_type == ChangeType.CANCELLED


def test_cancel_rejects_processing_and_terminal_tasks(repository: TaskQueueRepository) -> None:
    running = _push(repository, user_id="u1")
    repository.get_next_task()
    done = _push(repository, user_id="u2")
    repository.get_next_task()
    repository.complete_task(task_id=done.task_id, result={})

    with pytest.raises(InvalidTransitionError) as running_error:
        repository.cancel_task(task_id=running.task_id)
    with pytest.raises(InvalidTransitionError):
        repository.cancel_task(task_id=done.task_id)
    with pytest.raises(TaskNotFoundError):
        repository.cancel_task(task_id="missing")

    assert running_error.value.status == TaskStatus.PROCESSING
    assert repository.get_task(task_id=running.task_id).status == TaskStatus.PROCESSING


def test_recover_stale_task_with_budget_requeues(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    task = _push(repository)
    repository.get_next_task()
    rewrite_task(task.task_id, started_at=datetime.now(tz=UTC) - timedelta(hours=2))

    summary = repository.recover_stale_tasks(stale_after=timedelta(minutes=5))
    recovered = repository.get_task(task_id=task.task_id)

    assert summary.requeued == 1
    assert summary.failed == 0
    assert recovered.status == TaskStatus.PENDING
    assert recovered.retry_count == 1
    assert recovered.started_at is None
    assert recovered.failure_kind == FailureKind.STALE
    assert repository.get_next_task() is not None
    events = repository.list_task_events(task_id=task.task_id)
    assert events[-2].event_type == "recovered"
    assert events[-2].details["reason"] == "stale"


def test_recover_stale_task_without_budget_fails(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    task = _push(repository, max_retries=0)
    repository.get_next_task()
    rewrite_task(task.task_id, started_at=datetime.now(tz=UTC) - timedelta(hours=2))

    summary = repository.recover_stale_tasks(stale_after=timedelta(seconds=300))
    failed = repository.get_task(task_id=task.task_id)

    assert summary.failed == 1
    assert failed.status == TaskStatus.FAILED
    assert failed.retry_count == 0
    assert failed.failure_kind == FailureKind.STALE
    assert failed.error == "stale: task exceeded processing timeout of 300 seconds"


def test_recover_stale_tasks_leaves_fresh_work_alone(repository: TaskQueueRepository) -> None:
    task = _push(repository)
    repository.get_next_task()

    summary = repository.recover_stale_tasks(stale_after=timedelta(minutes=5))

    assert summary.total == 0
    assert repository.get_task(task_id=task.task_id).status == TaskStatus.PROCESSING


def test_archive_sweep_moves_old_terminal_tasks_to_history(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    old = _push(repository, user_id="u1")
    repository.get_next_task()
    repository.complete_task(task_id=old.task_id, result={"focus": "go"})
    two_hours_ago = datetime.now(tz=UTC) - timedelta(hours=2)
    rewrite_task(
        old.task_id,
        started_at=two_hours_ago - timedelta(seconds=3),
        completed_at=two_hours_ago,
    )
    fresh = _push(repository, user_id="u2")
    repository.get_next_task()
    repository.complete_task(task_id=fresh.task_id, result={})
    pending = _push(repository, user_id="u3")

    archived = repository.archive_old_tasks(max_age=timedelta(hours=1))

    assert archived == 1
    assert repository.get_task(task_id=old.task_id) is None
    assert repository.list_task_events(task_id=old.task_id) == []
    history = repository.get_task_history(task_id=old.task_id)
    assert history is not None
    assert history.status == TaskStatus.COMPLETED
    assert history.result == {"focus": "go"}
    assert history.duration_ms == 3000
    assert history.archived_at is not None
    assert repository.get_task(task_id=fresh.task_id) is not None
    assert repository.get_task(task_id=pending.task_id) is not None


def test_archive_task_refuses_open_tasks(repository: TaskQueueRepository) -> None:
    task = _push(repository)

    assert repository.archive_task(task_id=task.task_id) is False
    assert repository.archive_task(task_id="missing") is False
    assert repository.get_task(task_id=task.task_id) is not None


def test_cleanup_old_history_prunes_by_archive_time(repository: TaskQueueRepository) -> None:
    task = _push(repository)
    repository.cancel_task(task_id=task.task_id)
    assert repository.archive_task(task_id=task.task_id)

    assert repository.cleanup_old_history(max_age=timedelta(days=7)) == 0
    assert repository.cleanup_old_history(max_age=timedelta(seconds=-1)) == 1
    assert repository.get_task_history(task_id=task.task_id) is None


def test_last_completed_at_reads_live_and_archived_runs(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    assert repository.last_completed_at(user_id="u1", task_type=FOCUS) is None

    first = _push(repository)
    repository.get_next_task()
    repository.complete_task(task_id=first.task_id, result={})
    archived_at = datetime.now(tz=UTC) - timedelta(hours=3)
    rewrite_task(first.task_id, completed_at=archived_at)
    repository.archive_task(task_id=first.task_id)

    last = repository.last_completed_at(user_id="u1", task_type=FOCUS)
    assert last is not None
    assert abs((last - archived_at).total_seconds()) < 1

    second = _push(repository)
    repository.get_next_task()
    repository.complete_task(task_id=second.task_id, result={})

    assert repository.last_completed_at(user_id="u1", task_type=FOCUS) > archived_at


def test_schedule_recurring_task_respects_open_task_and_interval(
    repository: TaskQueueRepository,
) -> None:
    first = repository.schedule_recurring_task(
        user_id="u1",
        task_type=FOCUS,
        interval=timedelta(seconds=30),
    )
    assert first is not None
    assert first.payload == {"is_scheduled": True}
    assert repository.schedule_recurring_task(
        user_id="u1",
        task_type=FOCUS,
        interval=timedelta(seconds=30),
    ) is None

    repository.get_next_task()
    repository.complete_task(task_id=first.task_id, result={})
    completed_at = repository.get_task(task_id=first.task_id).completed_at

    second = repository.schedule_recurring_task(
        user_id="u1",
        task_type=FOCUS,
        interval=timedelta(seconds=30),
    )

    assert second is not None
    assert second.task_id != first.task_id
    assert abs((second.scheduled_for - (completed_at + timedelta(seconds=30))).total_seconds()) < 1
    assert repository.get_next_task() is None


def test_schedule_recurring_task_defaults_to_type_interval(
    repository: TaskQueueRepository,
    rewrite_task: Callable[..., None],
) -> None:
    first = repository.schedule_recurring_task(user_id="u1", task_type=SUMMARY)
    assert first is not None
    repository.get_next_task()
    repository.complete_task(task_id=first.task_id, result={})
    completed_at = datetime.now(tz=UTC) - timedelta(seconds=10)
    rewrite_task(first.task_id, completed_at=completed_at)

    second = repository.schedule_recurring_task(user_id="u1", task_type=SUMMARY)

    assert second is not None
    assert abs((second.scheduled_for - (completed_at + timedelta(seconds=60))).total_seconds()) < 1
    with pytest.raises(ValueError, match="no recurring interval"):
        repository.schedule_recurring_task(user_id="u1", task_type=QUIZ)


def test_queue_stats_and_user_status_projections(repository: TaskQueueRepository) -> None:
    done = _push(repository, user_id="u1", task_type=FOCUS)
    repository.get_next_task()
    repository.complete_task(task_id=done.task_id, result={"focus": "x"})
    failed = _push(repository, user_id="u1", task_type=QUIZ)
    repository.get_next_task()
    repository.fail_task(task_id=failed.task_id, error="bad input", retryable=False)
    active = _push(repository, user_id="u1", task_type=SUMMARY)
    repository.get_next_task()
    pending = _push(repository, user_id="u1", task_type="image-summarization")
    _push(repository, user_id="u2", task_type=FOCUS)
    assert repository.archive_task(task_id=done.task_id)

    stats = repository.get_queue_stats()
    status = repository.get_user_queue_status(user_id="u1")

    assert (stats.pending_count, stats.active_count) == (2, 1)
    assert (stats.completed_today, stats.failed_today) == (1, 1)
    assert stats.by_type[FOCUS].pending_count == 1
    assert stats.by_type[FOCUS].completed_today == 1
    assert [task.task_id for task in status.pending] == [pending.task_id]
    assert [task.task_id for task in status.active] == [active.task_id]
    assert {item.original_task_id for item in status.recent} == {done.task_id, failed.task_id}
    assert status.stats.pending_count == 1
    assert status.stats.completed_today == 1
    assert status.stats.failed_today == 1


def test_list_tasks_filters_by_status_and_user(repository: TaskQueueRepository) -> None:
    _push(repository, user_id="u1", task_type=FOCUS)
    _push(repository, user_id="u2", task_type=FOCUS)
    repository.get_next_task()

    assert len(repository.list_tasks()) == 2
    assert len(repository.list_tasks(status=TaskStatus.PENDING)) == 1
    assert len(repository.list_tasks(user_id="u2")) == 1


def test_failing_event_listener_does_not_break_transitions(
    repository: TaskQueueRepository,
) -> None:
    def _boom(_: TaskChangedEvent) -> None:
        raise RuntimeError("listener down")

    repository.events.subscribe(_boom)

    task = _push(repository)

    assert repository.get_task(task_id=task.task_id).status == TaskStatus.PENDING
