"""CLI controllers: each command returns printable lines."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from attention_queue.collaborators import EchoLlmProvider, StaticAttentionDataProvider
from attention_queue.config import Settings
from attention_queue.handlers.builtin import register_builtin_handlers
from attention_queue.handlers.hash_cache import ContentHashCache
from attention_queue.queue.models import TaskCounters, TaskCreate, TaskStatus
from attention_queue.queue.repository import TaskQueueRepository
from attention_queue.scheduler import RecurringTaskScheduler, default_jobs
from attention_queue.settings_store import SqlUserSettingsStore
from attention_queue.worker.engine import TaskWorker


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for a raw task enqueue."""

    db_path: Path | None
    user_id: str
    task_type: str
    payload_json: str | None = None
    priority: int | None = None
    max_retries: int | None = None
    dedupe_key: str | None = None
    delay_seconds: float = 0.0


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class UserStatusCommand:
    db_path: Path | None
    user_id: str
    recent_limit: int = 20


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    with_scheduler: bool = True


@dataclass(slots=True)
class DbCommand:
    db_path: Path | None


@dataclass(slots=True)
class SettingsSetCommand:
    db_path: Path | None
    user_id: str
    focus_enabled: bool | None = None
    focus_interval_ms: int | None = None
    summarization_enabled: bool | None = None
    summarization_interval_ms: int | None = None


class QueueCliController:
    """Coordinates queue, worker, scheduler and inspection CLI operations."""

    def enqueue(self, command: TaskEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = _parse_payload(command.payload_json)
        with _repository(settings) as repository:
            task = repository.push_task(
                TaskCreate(
                    user_id=command.user_id,
                    task_type=command.task_type,
                    payload=payload,
                    priority=command.priority,
                    max_retries=command.max_retries,
                    dedupe_key=command.dedupe_key,
                    delay=timedelta(seconds=command.delay_seconds),
                ),
            )
        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type} status={task.status.value} "
            f"priority={task.priority} dedupe_key={task.dedupe_key}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                user_id=command.user_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} user={task.user_id} type={task.task_type} "
                f"status={task.status.value} priority={task.priority} "
                f"retries={task.retry_count}/{task.max_retries} "
                f"scheduled_for={task.scheduled_for.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(task_id=command.task_id)
            events = repository.list_task_events(task_id=command.task_id)
            history = repository.get_task_history(task_id=command.task_id) if task is None else None

        if task is None:
            if history is None:
                return [f"Task not found: {command.task_id}"]
            return [
                f"Task: {history.original_task_id} (archived {_iso(history.archived_at)})",
                f"User: {history.user_id}",
                f"Type: {history.task_type}",
                f"Status: {history.status.value}",
                f"Retries: {history.retry_count}/{history.max_retries}",
                f"Duration ms: {history.duration_ms if history.duration_ms is not None else '-'}",
                f"Error: {history.error or '-'}",
                f"Result: {_dump(history.result)}",
            ]

        lines = [
            f"Task: {task.task_id}",
            f"User: {task.user_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Dedupe key: {task.dedupe_key}",
            f"Scheduled for: {task.scheduled_for.isoformat()}",
            f"Started at: {_iso(task.started_at)}",
            f"Completed at: {_iso(task.completed_at)}",
            f"Failure kind: {task.failure_kind.value if task.failure_kind else '-'}",
            f"Error: {task.error or '-'}",
            f"Result: {_dump(task.result)}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            repository.cancel_task(task_id=command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def stats(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            stats = repository.get_queue_stats()

        lines = [
            "Queue: "
            f"pending={stats.pending_count} active={stats.active_count} "
            f"completed_today={stats.completed_today} failed_today={stats.failed_today}",
        ]
        for task_type in sorted(stats.by_type):
            lines.append(f"  {task_type}: {_counters(stats.by_type[task_type])}")
        return lines

    def user_status(self, command: UserStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            status = repository.get_user_queue_status(
                user_id=command.user_id,
                recent_limit=command.recent_limit,
            )

        lines = [f"User {command.user_id}: {_counters(status.stats)}"]
        for label, tasks in (("pending", status.pending), ("active", status.active)):
            lines.append(f"{label.capitalize()}: {len(tasks)}")
            lines.extend(
                f"  {task.task_id} type={task.task_type} priority={task.priority}"
                for task in tasks
            )
        lines.append(f"Recent: {len(status.recent)}")
        lines.extend(
            f"  {item.original_task_id} type={item.task_type} status={item.status.value} "
            f"completed_at={item.completed_at.isoformat()}"
            for item in status.recent
        )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            worker = _build_worker(settings=settings, repository=repository)
            if command.once:
                summary = asyncio.run(
                    worker.run_until_idle(
                        max_tasks=command.max_tasks,
                        max_idle_polls=command.max_idle_polls,
                    ),
                )
                return [
                    "Worker summary: "
                    f"processed={summary.processed} succeeded={summary.succeeded} "
                    f"failed={summary.failed} retried={summary.retried} "
                    f"idle_polls={summary.idle_polls}",
                ]

            store = SqlUserSettingsStore(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
            )
            try:
                scheduler = (
                    _build_scheduler(settings=settings, repository=repository, store=store)
                    if command.with_scheduler and settings.scheduler.enabled
                    else None
                )
                asyncio.run(_serve(worker=worker, scheduler=scheduler))
            finally:
                store.close()
            status = worker.status()
        return [f"Worker {status.worker_id} stopped: processing={status.processing_count}"]

    def run_maintenance(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            summary = _build_worker(settings=settings, repository=repository).run_maintenance()
        return [
            "Maintenance: "
            f"recovered={summary.recovered} stale_failed={summary.stale_failed} "
            f"archived={summary.archived} history_pruned={summary.history_pruned}",
        ]

    def scheduler_tick(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            store = SqlUserSettingsStore(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
            )
            try:
                scheduled = _build_scheduler(
                    settings=settings,
                    repository=repository,
                    store=store,
                ).tick()
            finally:
                store.close()
        return [f"Scheduled {task_type}: {count}" for task_type, count in scheduled.items()]

    def set_user_settings(self, command: SettingsSetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings):
            store = SqlUserSettingsStore(
                settings.db_path,
                sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
            )
            try:
                store.upsert_preferences(
                    user_id=command.user_id,
                    focus_calculation_enabled=command.focus_enabled,
                    focus_calculation_interval_ms=command.focus_interval_ms,
                    attention_summarization_enabled=command.summarization_enabled,
                    attention_summarization_interval_ms=command.summarization_interval_ms,
                )
            finally:
                store.close()
        return [f"Settings updated for user {command.user_id}"]


async def _serve(*, worker: TaskWorker, scheduler: RecurringTaskScheduler | None) -> None:
    if scheduler is not None:
        await scheduler.start()
    try:
        await worker.serve()
    finally:
        if scheduler is not None:
            await scheduler.stop()


def _build_worker(*, settings: Settings, repository: TaskQueueRepository) -> TaskWorker:
    worker = TaskWorker(
        repository=repository,
        worker_id=settings.worker.worker_id,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        maintenance_interval_seconds=settings.worker.maintenance_interval_seconds,
        max_concurrent_tasks=settings.worker.max_concurrent_tasks,
        max_tasks_per_user=settings.worker.max_tasks_per_user,
        stale_after_seconds=settings.worker.stale_after_seconds,
        archive_after_seconds=settings.worker.archive_after_seconds,
        history_retention_seconds=settings.worker.history_retention_seconds,
    )
    # The CLI runs with the bundled local collaborators.
    register_builtin_handlers(
        worker,
        attention=StaticAttentionDataProvider(),
        llm=EchoLlmProvider(),
        cache=ContentHashCache(ttl_seconds=settings.handlers.hash_cache_ttl_seconds),
        default_window=timedelta(hours=settings.handlers.default_attention_window_hours),
    )
    return worker


def _build_scheduler(
    *,
    settings: Settings,
    repository: TaskQueueRepository,
    store: SqlUserSettingsStore,
) -> RecurringTaskScheduler:
    return RecurringTaskScheduler(
        repository=repository,
        settings_store=store,
        jobs=default_jobs(
            focus_tick_seconds=settings.scheduler.focus_tick_seconds,
            summarization_tick_seconds=settings.scheduler.summarization_tick_seconds,
        ),
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_payload(value: str | None) -> dict[str, object]:
    if value is None or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --payload JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--payload must be a JSON object.")
    return parsed


def _counters(counters: TaskCounters) -> str:
    return (
        f"pending={counters.pending_count} active={counters.active_count} "
        f"completed_today={counters.completed_today} failed_today={counters.failed_today}"
    )


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _dump(value: dict[str, object] | None) -> str:
    if value is None:
        return "-"
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskQueueRepository]:
    repository = TaskQueueRepository(
        db_path=settings.db_path,
        retry_base_seconds=settings.worker.retry_base_seconds,
        retry_max_seconds=settings.worker.retry_max_seconds,
        sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
