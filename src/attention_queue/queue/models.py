"""Domain models for the per-user task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


OPEN_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.PENDING, TaskStatus.PROCESSING})
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class TaskType(str, Enum):
    """Built-in task types. The queue itself accepts any type string."""

    FOCUS_CALCULATION = "focus-calculation"
    QUIZ_GENERATION = "quiz-generation"
    SUMMARIZATION = "summarization"
    IMAGE_SUMMARIZATION = "image-summarization"


class TaskPriority(int, Enum):
    LOW = -10
    NORMAL = 0
    HIGH = 10
    URGENT = 20


class FailureKind(str, Enum):
    """Normalized failure classes used by retry policy and the UI."""

    TRANSIENT = "transient"
    INPUT = "input"
    CONFIGURATION = "configuration"
    STALE = "stale"


class ChangeType(str, Enum):
    CREATED = "created"
    STARTED = "started"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RECOVERED = "recovered"


@dataclass(slots=True, frozen=True)
class TaskTypeConfig:
    """Per-type enqueue defaults."""

    default_priority: int
    max_retries: int
    recurring_interval: timedelta | None


TASK_CONFIG: dict[str, TaskTypeConfig] = {
    TaskType.FOCUS_CALCULATION.value: TaskTypeConfig(
        default_priority=TaskPriority.NORMAL.value,
        max_retries=2,
        recurring_interval=timedelta(seconds=30),
    ),
    TaskType.QUIZ_GENERATION.value: TaskTypeConfig(
        default_priority=TaskPriority.HIGH.value,
        max_retries=1,
        recurring_interval=None,
    ),
    TaskType.SUMMARIZATION.value: TaskTypeConfig(
        default_priority=TaskPriority.NORMAL.value,
        max_retries=2,
        recurring_interval=timedelta(seconds=60),
    ),
    TaskType.IMAGE_SUMMARIZATION.value: TaskTypeConfig(
        default_priority=TaskPriority.LOW.value,
        max_retries=1,
        recurring_interval=timedelta(seconds=60),
    ),
}

DEFAULT_TASK_CONFIG = TaskTypeConfig(
    default_priority=TaskPriority.NORMAL.value,
    max_retries=2,
    recurring_interval=None,
)


def task_type_config(task_type: str) -> TaskTypeConfig:
    return TASK_CONFIG.get(task_type, DEFAULT_TASK_CONFIG)


def default_dedupe_key(user_id: str, task_type: str) -> str:
    """Dedupe scope used when the caller does not pass an explicit key."""

    return f"{user_id}:{task_type}"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    user_id: str
    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int | None = None
    max_retries: int | None = None
    dedupe_key: str | None = None
    delay: timedelta = timedelta(0)

    def effective_dedupe_key(self) -> str:
        return self.dedupe_key or default_dedupe_key(self.user_id, self.task_type)


@dataclass(slots=True)
class TaskView:
    """Readable task view for the worker and the HTTP layer."""

    task_id: str
    user_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int
    status: TaskStatus
    result: dict[str, Any] | None
    error: str | None
    failure_kind: FailureKind | None
    retry_count: int
    max_retries: int
    dedupe_key: str
    scheduled_for: datetime
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskHistoryView:
    """Archived snapshot of a terminal task."""

    original_task_id: str
    user_id: str
    task_type: str
    priority: int
    payload: dict[str, Any]
    status: TaskStatus
    result: dict[str, Any] | None
    error: str | None
    failure_kind: FailureKind | None
    retry_count: int
    max_retries: int
    dedupe_key: str
    scheduled_for: datetime
    started_at: datetime | None
    completed_at: datetime
    created_at: datetime
    duration_ms: int | None
    archived_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FailOutcome:
    """What `fail_task` did with a processing task."""

    retried: bool
    failed: bool
    retry_count: int
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class StaleRecoverySummary:
    requeued: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.requeued + self.failed


@dataclass(slots=True)
class TaskCounters:
    pending_count: int = 0
    active_count: int = 0
    completed_today: int = 0
    failed_today: int = 0


@dataclass(slots=True)
class QueueStats:
    """Global queue projection, always computed from the store."""

    pending_count: int
    active_count: int
    completed_today: int
    failed_today: int
    by_type: dict[str, TaskCounters] = field(default_factory=dict)


@dataclass(slots=True)
class UserQueueStatus:
    """Per-user queue projection for status endpoints."""

    pending: list[TaskView]
    active: list[TaskView]
    recent: list[TaskHistoryView]
    stats: TaskCounters


@dataclass(slots=True, frozen=True)
class TaskChangedEvent:
    """Status-transition notification pushed to SSE subscribers."""

    task_id: str
    user_id: str
    task_type: str
    status: TaskStatus
    change_type: ChangeType
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "taskId": self.task_id,
            "userId": self.user_id,
            "type": self.task_type,
            "status": self.status.value,
            "changeType": self.change_type.value,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload
