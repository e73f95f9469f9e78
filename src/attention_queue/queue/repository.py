"""Persistent queue repository: the only writer of task status."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from attention_queue.queue.errors import InvalidTransitionError, TaskNotFoundError
from attention_queue.queue.events import TaskEventBus
from attention_queue.queue.models import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    ChangeType,
    FailOutcome,
    FailureKind,
    QueueStats,
    StaleRecoverySummary,
    TaskChangedEvent,
    TaskCounters,
    TaskCreate,
    TaskEventView,
    TaskHistoryView,
    TaskStatus,
    TaskView,
    UserQueueStatus,
    task_type_config,
)
from attention_queue.storage.alembic_runner import upgrade_head
from attention_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from attention_queue.storage.sqlmodel_models import TaskEventRow, TaskHistoryRow, TaskQueueRow

logger = logging.getLogger(__name__)

_OPEN_STATUS_VALUES = tuple(status.value for status in OPEN_STATUSES)
_TERMINAL_STATUS_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


class TaskQueueRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every status change is a compare-and-swap `UPDATE ... WHERE status = ?`
    so that the scheduler, the HTTP layer and any number of worker loops can
    call in concurrently without double claims or lost transitions.
    """

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        event_bus: TaskEventBus | None = None,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 300.0,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.events = event_bus or TaskEventBus()
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- enqueue ---------------------------------------------------------------

    def push_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task, or return the open task holding the same dedupe key."""

        view, _ = self._push(payload)
        return view

    def _push(self, payload: TaskCreate) -> tuple[TaskView, bool]:
        _validate_create(payload)
        config = task_type_config(payload.task_type)
        dedupe_key = payload.effective_dedupe_key()
        now = utc_now()
        with Session(self.engine) as session:
            existing = self._find_open_by_dedupe_key(session=session, dedupe_key=dedupe_key)
            if existing is not None:
                return _to_task_view(existing), False

            row = TaskQueueRow(
                task_id=str(uuid4()),
                user_id=payload.user_id,
                task_type=payload.task_type,
                payload_json=_dump_json(payload.payload),
                priority=payload.priority if payload.priority is not None else config.default_priority,
                status=TaskStatus.PENDING.value,
                retry_count=0,
                max_retries=(
                    payload.max_retries if payload.max_retries is not None else config.max_retries
                ),
                dedupe_key=dedupe_key,
                scheduled_for=to_db_datetime(now + payload.delay),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                existing = self._find_open_by_dedupe_key(session=session, dedupe_key=dedupe_key)
                if existing is None:
                    raise
                return _to_task_view(existing), False

            self._add_event(
                session=session,
                row=row,
                event_type=ChangeType.CREATED.value,
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "priority": row.priority,
                    "max_retries": row.max_retries,
                    "dedupe_key": dedupe_key,
                    "delay_seconds": payload.delay.total_seconds(),
                },
            )
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)

        logger.info(
            "Task enqueued: type=%s user=%s id=%s priority=%d",
            view.task_type,
            view.user_id,
            view.task_id,
            view.priority,
        )
        self._emit(view, ChangeType.CREATED)
        return view, True

    def schedule_recurring_task(
        self,
        *,
        user_id: str,
        task_type: str,
        interval: timedelta | None = None,
        payload: dict[str, Any] | None = None,
    ) -> TaskView | None:
        """Enqueue the next run of a recurring task unless one is already open.

        The run becomes eligible at `last completed run + interval`, or right
        away when the user is overdue or has never run this type. `interval`
        defaults to the type's recurring interval.
        """

        if interval is None:
            interval = task_type_config(task_type).recurring_interval
        if interval is None:
            raise ValueError(f"Task type {task_type} has no recurring interval.")
        dedupe_key = TaskCreate(user_id=user_id, task_type=task_type).effective_dedupe_key()
        with Session(self.engine) as session:
            if self._find_open_by_dedupe_key(session=session, dedupe_key=dedupe_key) is not None:
                return None

        now = utc_now()
        last_completed = self.last_completed_at(user_id=user_id, task_type=task_type)
        delay = timedelta(0)
        if last_completed is not None:
            delay = max(timedelta(0), last_completed + interval - now)

        task, created = self._push(
            TaskCreate(
                user_id=user_id,
                task_type=task_type,
                payload={**(payload or {}), "is_scheduled": True},
                delay=delay,
            ),
        )
        return task if created else None

    # -- claim -----------------------------------------------------------------

    def get_next_task(
        self,
        *,
        exclude_user_ids: Iterable[str] = (),
        task_types: Iterable[str] | None = None,
    ) -> TaskView | None:
        """Atomically claim the best eligible pending task."""

        excluded = sorted(set(exclude_user_ids))
        allowed_types = sorted(set(task_types)) if task_types is not None else None
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = select(TaskQueueRow).where(
                    TaskQueueRow.status == TaskStatus.PENDING.value,
                    col(TaskQueueRow.scheduled_for) <= to_db_datetime(now),
                )
                if excluded:
                    statement = statement.where(col(TaskQueueRow.user_id).not_in(excluded))
                if allowed_types is not None:
                    statement = statement.where(col(TaskQueueRow.task_type).in_(allowed_types))
                candidate = session.exec(
                    statement.order_by(
                        col(TaskQueueRow.priority).desc(),
                        col(TaskQueueRow.scheduled_for).asc(),
                        col(TaskQueueRow.created_at).asc(),
                    ).limit(1),
                ).first()
                if candidate is None:
                    return None

                claimed = self._claim_row(session=session, task_id=candidate.task_id, now=now)
                if claimed is None:
                    session.rollback()
                    continue
                session.commit()
                view = _to_task_view(claimed)

            self._emit(view, ChangeType.STARTED)
            return view

    def start_task(self, *, task_id: str) -> TaskView | None:
        """Claim one specific pending task."""

        now = utc_now()
        with Session(self.engine) as session:
            claimed = self._claim_row(session=session, task_id=task_id, now=now)
            if claimed is None:
                session.rollback()
                return None
            session.commit()
            view = _to_task_view(claimed)
        self._emit(view, ChangeType.STARTED)
        return view

    # -- outcomes --------------------------------------------------------------

    def complete_task(
        self,
        *,
        task_id: str,
        result: dict[str, Any] | None = None,
        claimed_at: datetime | None = None,
    ) -> bool:
        """Mark a processing task as completed with the handler result.

        `claimed_at` pins the update to one claim, so a handler that outlived
        a stale sweep cannot complete the task's next attempt.
        """

        now = utc_now()
        conditions = [
            col(TaskQueueRow.task_id) == task_id,
            col(TaskQueueRow.status) == TaskStatus.PROCESSING.value,
        ]
        if claimed_at is not None:
            conditions.append(col(TaskQueueRow.started_at) == to_db_datetime(claimed_at))
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(TaskQueueRow)
                .where(*conditions)
                .values(
                    status=TaskStatus.COMPLETED.value,
                    result_json=_dump_json(result or {}),
                    error=None,
                    failure_kind=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            row = self._reload(session=session, task_id=task_id)
            self._add_event(
                session=session,
                row=row,
                event_type=ChangeType.COMPLETED.value,
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details={},
            )
            session.commit()
            view = _to_task_view(row)
        self._emit(view, ChangeType.COMPLETED)
        return True

    def fail_task(
        self,
        *,
        task_id: str,
        error: str,
        retryable: bool,
        failure_kind: FailureKind | None = None,
        details: dict[str, object] | None = None,
        claimed_at: datetime | None = None,
    ) -> FailOutcome | None:
        """Requeue a processing task with backoff, or fail it terminally.

        Returns None when the task is no longer processing (for example it
        was already recovered by the stale sweep).
        """

        kind = failure_kind or (FailureKind.TRANSIENT if retryable else FailureKind.INPUT)
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskQueueRow, task_id)
            if row is None or row.status != TaskStatus.PROCESSING.value:
                return None
            if claimed_at is not None and row.started_at != to_db_datetime(claimed_at):
                return None

            if retryable and row.retry_count < row.max_retries:
                retry_number = row.retry_count + 1
                scheduled_for = now + self.compute_backoff(retry_number=retry_number)
                changed = self._requeue_row(
                    session=session,
                    row=row,
                    retry_number=retry_number,
                    scheduled_for=scheduled_for,
                    error=error,
                    failure_kind=kind,
                    now=now,
                )
                if changed is None:
                    session.rollback()
                    return None
                self._add_event(
                    session=session,
                    row=changed,
                    event_type=ChangeType.RETRY_SCHEDULED.value,
                    status_from=TaskStatus.PROCESSING,
                    status_to=TaskStatus.PENDING,
                    details={
                        **(details or {}),
                        "retry_count": retry_number,
                        "scheduled_for": scheduled_for.isoformat(),
                        "failure_kind": kind.value,
                        "error": error,
                    },
                )
                session.commit()
                view = _to_task_view(changed)
                self._emit(view, ChangeType.RETRY_SCHEDULED)
                return FailOutcome(
                    retried=True,
                    failed=False,
                    retry_count=retry_number,
                    scheduled_for=scheduled_for,
                )

            changed = self._fail_row(
                session=session,
                row=row,
                error=error,
                failure_kind=kind,
                now=now,
            )
            if changed is None:
                session.rollback()
                return None
            self._add_event(
                session=session,
                row=changed,
                event_type=ChangeType.FAILED.value,
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.FAILED,
                details={
                    **(details or {}),
                    "retryable": retryable,
                    "failure_kind": kind.value,
                    "error": error,
                },
            )
            session.commit()
            view = _to_task_view(changed)
        self._emit(view, ChangeType.FAILED)
        return FailOutcome(retried=False, failed=True, retry_count=view.retry_count)

    def cancel_task(self, *, task_id: str) -> TaskView:
        """Cancel a pending task. Running and terminal tasks are rejected."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskQueueRow, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            previous = TaskStatus(row.status)
            if previous != TaskStatus.PENDING:
                raise InvalidTransitionError(task_id=task_id, status=previous, action="cancelled")

            outcome = session.exec(
                sa_update(TaskQueueRow)
                .where(
                    col(TaskQueueRow.task_id) == task_id,
                    col(TaskQueueRow.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                current = self.get_task(task_id=task_id)
                raise InvalidTransitionError(
                    task_id=task_id,
                    status=current.status if current is not None else previous,
                    action="cancelled",
                )
            row = self._reload(session=session, task_id=task_id)
            self._add_event(
                session=session,
                row=row,
                event_type=ChangeType.CANCELLED.value,
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.CANCELLED,
                details={},
            )
            session.commit()
            view = _to_task_view(row)
        self._emit(view, ChangeType.CANCELLED)
        return view

    # -- maintenance -----------------------------------------------------------

    def recover_stale_tasks(self, *, stale_after: timedelta) -> StaleRecoverySummary:
        """Requeue or fail processing tasks whose heartbeat is older than `stale_after`."""

        summary = StaleRecoverySummary()
        now = utc_now()
        threshold = to_db_datetime(now - stale_after)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(TaskQueueRow.task_id).where(
                    TaskQueueRow.status == TaskStatus.PROCESSING.value,
                    col(TaskQueueRow.started_at) < threshold,
                ),
            ).all()

        for task_id in stale_ids:
            view, change = self._recover_one(
                task_id=task_id,
                threshold=threshold,
                stale_after=stale_after,
                now=now,
            )
            if view is None:
                continue
            if change == ChangeType.RECOVERED:
                summary.requeued += 1
                logger.warning(
                    "Recovered stale task %s (%s) for retry %d/%d",
                    view.task_id,
                    view.task_type,
                    view.retry_count,
                    view.max_retries,
                )
            else:
                summary.failed += 1
                logger.warning(
                    "Stale task %s (%s) failed after %d retries",
                    view.task_id,
                    view.task_type,
                    view.retry_count,
                )
            self._emit(view, change)
        return summary

    def archive_task(self, *, task_id: str) -> bool:
        """Move a terminal task into history and delete it from the live table."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(TaskQueueRow, task_id)
            if row is None or row.status not in _TERMINAL_STATUS_VALUES:
                return False
            history = _history_row_from_task(row, archived_at=now)
            outcome = session.exec(
                sa_delete(TaskQueueRow).where(
                    col(TaskQueueRow.task_id) == task_id,
                    col(TaskQueueRow.status) == row.status,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.add(history)
            session.commit()
        return True

    def archive_old_tasks(self, *, max_age: timedelta) -> int:
        """Archive terminal tasks that finished more than `max_age` ago."""

        threshold = to_db_datetime(utc_now() - max_age)
        with Session(self.engine) as session:
            task_ids = session.exec(
                select(TaskQueueRow.task_id).where(
                    col(TaskQueueRow.status).in_(_TERMINAL_STATUS_VALUES),
                    col(TaskQueueRow.completed_at) < threshold,
                ),
            ).all()
        archived = 0
        for task_id in task_ids:
            if self.archive_task(task_id=task_id):
                archived += 1
        return archived

    def cleanup_old_history(self, *, max_age: timedelta) -> int:
        """Delete history entries archived more than `max_age` ago."""

        threshold = to_db_datetime(utc_now() - max_age)
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_delete(TaskHistoryRow).where(col(TaskHistoryRow.archived_at) < threshold),
            )
            session.commit()
            return int(outcome.rowcount or 0)

    def compute_backoff(self, *, retry_number: int) -> timedelta:
        """Exponential, capped delay before the n-th retry becomes claimable."""

        seconds = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return timedelta(seconds=max(0.0, seconds))

    # -- reads -----------------------------------------------------------------

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskQueueRow, task_id)
            return _to_task_view(row) if row is not None else None

    def get_user_pending_tasks(self, *, user_id: str, limit: int | None = None) -> list[TaskView]:
        """Pending tasks for one user in claim order."""

        with Session(self.engine) as session:
            statement = (
                select(TaskQueueRow)
                .where(
                    TaskQueueRow.user_id == user_id,
                    TaskQueueRow.status == TaskStatus.PENDING.value,
                )
                .order_by(
                    col(TaskQueueRow.priority).desc(),
                    col(TaskQueueRow.scheduled_for).asc(),
                    col(TaskQueueRow.created_at).asc(),
                )
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent live tasks, optionally filtered by status and user."""

        with Session(self.engine) as session:
            statement = select(TaskQueueRow)
            if status is not None:
                statement = statement.where(TaskQueueRow.status == status.value)
            if user_id is not None:
                statement = statement.where(TaskQueueRow.user_id == user_id)
            rows = session.exec(
                statement.order_by(col(TaskQueueRow.created_at).desc()).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_task_history(self, *, task_id: str) -> TaskHistoryView | None:
        """Archived snapshot for a task id that left the live table."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TaskHistoryRow)
                .where(TaskHistoryRow.original_task_id == task_id)
                .order_by(col(TaskHistoryRow.archived_at).desc())
                .limit(1),
            ).first()
            return _history_view_from_history_row(row) if row is not None else None

    def list_task_events(self, *, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in rows:
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware(row.created_at),
                    details=_load_json(row.details_json) or {},
                ),
            )
        return events

    def last_completed_at(self, *, user_id: str, task_type: str) -> datetime | None:
        """Most recent successful run of a task type for a user, live or archived."""

        with Session(self.engine) as session:
            live = session.exec(
                select(func.max(TaskQueueRow.completed_at)).where(
                    TaskQueueRow.user_id == user_id,
                    TaskQueueRow.task_type == task_type,
                    TaskQueueRow.status == TaskStatus.COMPLETED.value,
                ),
            ).one()
            archived = session.exec(
                select(func.max(TaskHistoryRow.completed_at)).where(
                    TaskHistoryRow.user_id == user_id,
                    TaskHistoryRow.task_type == task_type,
                    TaskHistoryRow.status == TaskStatus.COMPLETED.value,
                ),
            ).one()
        candidates = [to_utc_aware(value) for value in (live, archived) if value is not None]
        return max(candidates) if candidates else None

    def get_user_queue_status(
        self,
        *,
        user_id: str,
        pending_limit: int = 20,
        recent_limit: int = 50,
    ) -> UserQueueStatus:
        """Pending, active and recently finished work for one user."""

        pending = self.get_user_pending_tasks(user_id=user_id, limit=pending_limit)
        day_start = _utc_day_start()
        with Session(self.engine) as session:
            active_rows = session.exec(
                select(TaskQueueRow)
                .where(
                    TaskQueueRow.user_id == user_id,
                    TaskQueueRow.status == TaskStatus.PROCESSING.value,
                )
                .order_by(col(TaskQueueRow.started_at).desc()),
            ).all()
            live_terminal = session.exec(
                select(TaskQueueRow)
                .where(
                    TaskQueueRow.user_id == user_id,
                    col(TaskQueueRow.status).in_(_TERMINAL_STATUS_VALUES),
                )
                .order_by(col(TaskQueueRow.completed_at).desc())
                .limit(recent_limit),
            ).all()
            archived = session.exec(
                select(TaskHistoryRow)
                .where(TaskHistoryRow.user_id == user_id)
                .order_by(col(TaskHistoryRow.completed_at).desc())
                .limit(recent_limit),
            ).all()
            counts = self._count_tasks(session=session, day_start=day_start, user_id=user_id)

        recent = [_history_view_from_task_row(row) for row in live_terminal]
        recent.extend(_history_view_from_history_row(row) for row in archived)
        recent.sort(key=lambda item: item.completed_at, reverse=True)

        totals = _sum_counters(counts.values())
        return UserQueueStatus(
            pending=pending,
            active=[_to_task_view(row) for row in active_rows],
            recent=recent[:recent_limit],
            stats=totals,
        )

    def get_queue_stats(self) -> QueueStats:
        """Global counts by status, plus today's completions and failures."""

        with Session(self.engine) as session:
            counts = self._count_tasks(session=session, day_start=_utc_day_start())
        totals = _sum_counters(counts.values())
        return QueueStats(
            pending_count=totals.pending_count,
            active_count=totals.active_count,
            completed_today=totals.completed_today,
            failed_today=totals.failed_today,
            by_type=counts,
        )

    # -- internals -------------------------------------------------------------

    def _find_open_by_dedupe_key(self, *, session: Session, dedupe_key: str) -> TaskQueueRow | None:
        return session.exec(
            select(TaskQueueRow).where(
                TaskQueueRow.dedupe_key == dedupe_key,
                col(TaskQueueRow.status).in_(_OPEN_STATUS_VALUES),
            ),
        ).first()

    def _reload(self, *, session: Session, task_id: str) -> TaskQueueRow:
        row = session.get(TaskQueueRow, task_id, populate_existing=True)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _claim_row(self, *, session: Session, task_id: str, now: datetime) -> TaskQueueRow | None:
        outcome = session.exec(
            sa_update(TaskQueueRow)
            .where(
                col(TaskQueueRow.task_id) == task_id,
                col(TaskQueueRow.status) == TaskStatus.PENDING.value,
            )
            .values(
                status=TaskStatus.PROCESSING.value,
                started_at=to_db_datetime(now),
                completed_at=None,
                updated_at=to_db_datetime(now),
            ),
        )
        if outcome.rowcount != 1:
            return None
        row = self._reload(session=session, task_id=task_id)
        self._add_event(
            session=session,
            row=row,
            event_type=ChangeType.STARTED.value,
            status_from=TaskStatus.PENDING,
            status_to=TaskStatus.PROCESSING,
            details={"retry_count": row.retry_count},
        )
        return row

    def _requeue_row(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: TaskQueueRow,
        retry_number: int,
        scheduled_for: datetime,
        error: str,
        failure_kind: FailureKind,
        now: datetime,
    ) -> TaskQueueRow | None:
        outcome = session.exec(
            sa_update(TaskQueueRow)
            .where(
                col(TaskQueueRow.task_id) == row.task_id,
                col(TaskQueueRow.status) == TaskStatus.PROCESSING.value,
                col(TaskQueueRow.retry_count) == row.retry_count,
            )
            .values(
                status=TaskStatus.PENDING.value,
                retry_count=retry_number,
                scheduled_for=to_db_datetime(scheduled_for),
                started_at=None,
                completed_at=None,
                result_json=None,
                error=error,
                failure_kind=failure_kind.value,
                updated_at=to_db_datetime(now),
            ),
        )
        if outcome.rowcount != 1:
            return None
        return self._reload(session=session, task_id=row.task_id)

    def _fail_row(
        self,
        *,
        session: Session,
        row: TaskQueueRow,
        error: str,
        failure_kind: FailureKind,
        now: datetime,
    ) -> TaskQueueRow | None:
        outcome = session.exec(
            sa_update(TaskQueueRow)
            .where(
                col(TaskQueueRow.task_id) == row.task_id,
                col(TaskQueueRow.status) == TaskStatus.PROCESSING.value,
                col(TaskQueueRow.retry_count) == row.retry_count,
            )
            .values(
                status=TaskStatus.FAILED.value,
                result_json=None,
                error=error,
                failure_kind=failure_kind.value,
                completed_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )
        if outcome.rowcount != 1:
            return None
        return self._reload(session=session, task_id=row.task_id)

    def _recover_one(
        self,
        *,
        task_id: str,
        threshold: datetime,
        stale_after: timedelta,
        now: datetime,
    ) -> tuple[TaskView | None, ChangeType]:
        with Session(self.engine) as session:
            row = session.get(TaskQueueRow, task_id)
            if (
                row is None
                or row.status != TaskStatus.PROCESSING.value
                or row.started_at is None
                or row.started_at >= threshold
            ):
                return None, ChangeType.RECOVERED

            if row.retry_count < row.max_retries:
                retry_number = row.retry_count + 1
                changed = self._requeue_row(
                    session=session,
                    row=row,
                    retry_number=retry_number,
                    scheduled_for=now,
                    error=_stale_error(stale_after),
                    failure_kind=FailureKind.STALE,
                    now=now,
                )
                change = ChangeType.RECOVERED
                status_to = TaskStatus.PENDING
            else:
                changed = self._fail_row(
                    session=session,
                    row=row,
                    error=_stale_error(stale_after),
                    failure_kind=FailureKind.STALE,
                    now=now,
                )
                change = ChangeType.FAILED
                status_to = TaskStatus.FAILED
            if changed is None:
                session.rollback()
                return None, change

            self._add_event(
                session=session,
                row=changed,
                event_type=change.value,
                status_from=TaskStatus.PROCESSING,
                status_to=status_to,
                details={
                    "reason": "stale",
                    "stale_after_seconds": stale_after.total_seconds(),
                    "retry_count": changed.retry_count,
                },
            )
            session.commit()
            return _to_task_view(changed), change

    def _count_tasks(
        self,
        *,
        session: Session,
        day_start: datetime,
        user_id: str | None = None,
    ) -> dict[str, TaskCounters]:
        counters: dict[str, TaskCounters] = {}

        def _bucket(task_type: str) -> TaskCounters:
            return counters.setdefault(task_type, TaskCounters())

        open_statement = select(
            TaskQueueRow.task_type,
            TaskQueueRow.status,
            func.count(),
        ).where(col(TaskQueueRow.status).in_(_OPEN_STATUS_VALUES))
        if user_id is not None:
            open_statement = open_statement.where(TaskQueueRow.user_id == user_id)
        for task_type, status, count in session.exec(
            open_statement.group_by(TaskQueueRow.task_type, TaskQueueRow.status),
        ).all():
            if status == TaskStatus.PENDING.value:
                _bucket(task_type).pending_count += count
            else:
                _bucket(task_type).active_count += count

        finished_values = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value)
        for model in (TaskQueueRow, TaskHistoryRow):
            statement = select(model.task_type, model.status, func.count()).where(
                col(model.status).in_(finished_values),
                col(model.completed_at) >= to_db_datetime(day_start),
            )
            if user_id is not None:
                statement = statement.where(model.user_id == user_id)
            for task_type, status, count in session.exec(
                statement.group_by(model.task_type, model.status),
            ).all():
                if status == TaskStatus.COMPLETED.value:
                    _bucket(task_type).completed_today += count
                else:
                    _bucket(task_type).failed_today += count
        return counters

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: TaskQueueRow,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=row.task_id,
                user_id=row.user_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )

    def _emit(self, view: TaskView, change_type: ChangeType) -> None:
        self.events.emit(
            TaskChangedEvent(
                task_id=view.task_id,
                user_id=view.user_id,
                task_type=view.task_type,
                status=view.status,
                change_type=change_type,
                result=view.result if view.status == TaskStatus.COMPLETED else None,
                error=view.error if view.status != TaskStatus.COMPLETED else None,
            ),
        )


def _validate_create(payload: TaskCreate) -> None:
    if not payload.user_id.strip():
        raise ValueError("user_id must be a non-empty string.")
    if not payload.task_type.strip():
        raise ValueError("task_type must be a non-empty string.")
    if payload.max_retries is not None and payload.max_retries < 0:
        raise ValueError("max_retries must be >= 0.")
    if payload.delay < timedelta(0):
        raise ValueError("delay must be >= 0.")
    if payload.dedupe_key is not None and not payload.dedupe_key.strip():
        raise ValueError("dedupe_key must be non-empty when provided.")


def _stale_error(stale_after: timedelta) -> str:
    return (
        "stale: task exceeded processing timeout of "
        f"{int(stale_after.total_seconds())} seconds"
    )


def _utc_day_start() -> datetime:
    return utc_now().replace(hour=0, minute=0, second=0, microsecond=0)


def _sum_counters(items: Iterable[TaskCounters]) -> TaskCounters:
    total = TaskCounters()
    for item in items:
        total.pending_count += item.pending_count
        total.active_count += item.active_count
        total.completed_today += item.completed_today
        total.failed_today += item.failed_today
    return total


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _failure_kind(value: str | None) -> FailureKind | None:
    return FailureKind(value) if value is not None else None


def _to_task_view(row: TaskQueueRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        payload=_load_json(row.payload_json) or {},
        priority=row.priority,
        status=TaskStatus(row.status),
        result=_load_json(row.result_json),
        error=row.error,
        failure_kind=_failure_kind(row.failure_kind),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        dedupe_key=row.dedupe_key,
        scheduled_for=to_utc_aware(row.scheduled_for),
        started_at=to_utc_aware_optional(row.started_at),
        completed_at=to_utc_aware_optional(row.completed_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _duration_ms(started_at: datetime | None, completed_at: datetime | None) -> int | None:
    if started_at is None or completed_at is None:
        return None
    return int((completed_at - started_at).total_seconds() * 1000)


def _history_row_from_task(row: TaskQueueRow, *, archived_at: datetime) -> TaskHistoryRow:
    completed_at = row.completed_at or row.updated_at
    return TaskHistoryRow(
        original_task_id=row.task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        priority=row.priority,
        payload_json=row.payload_json,
        status=row.status,
        result_json=row.result_json,
        error=row.error,
        failure_kind=row.failure_kind,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        dedupe_key=row.dedupe_key,
        scheduled_for=row.scheduled_for,
        started_at=row.started_at,
        completed_at=completed_at,
        created_at=row.created_at,
        duration_ms=_duration_ms(row.started_at, completed_at),
        archived_at=to_db_datetime(archived_at),
    )


def _history_view_from_history_row(row: TaskHistoryRow) -> TaskHistoryView:
    return TaskHistoryView(
        original_task_id=row.original_task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        priority=row.priority,
        payload=_load_json(row.payload_json) or {},
        status=TaskStatus(row.status),
        result=_load_json(row.result_json),
        error=row.error,
        failure_kind=_failure_kind(row.failure_kind),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        dedupe_key=row.dedupe_key,
        scheduled_for=to_utc_aware(row.scheduled_for),
        started_at=to_utc_aware_optional(row.started_at),
        completed_at=to_utc_aware(row.completed_at),
        created_at=to_utc_aware(row.created_at),
        duration_ms=row.duration_ms,
        archived_at=to_utc_aware(row.archived_at),
    )


def _history_view_from_task_row(row: TaskQueueRow) -> TaskHistoryView:
    completed_at = row.completed_at or row.updated_at
    return TaskHistoryView(
        original_task_id=row.task_id,
        user_id=row.user_id,
        task_type=row.task_type,
        priority=row.priority,
        payload=_load_json(row.payload_json) or {},
        status=TaskStatus(row.status),
        result=_load_json(row.result_json),
        error=row.error,
        failure_kind=_failure_kind(row.failure_kind),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        dedupe_key=row.dedupe_key,
        scheduled_for=to_utc_aware(row.scheduled_for),
        started_at=to_utc_aware_optional(row.started_at),
        completed_at=to_utc_aware(completed_at),
        created_at=to_utc_aware(row.created_at),
        duration_ms=_duration_ms(row.started_at, completed_at),
        archived_at=None,
    )
