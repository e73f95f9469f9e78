"""Enqueue use cases exposed to the HTTP/SSE layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from attention_queue.queue.errors import InvalidTransitionError, TaskNotFoundError
from attention_queue.queue.models import (
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskView,
)
from attention_queue.queue.repository import TaskQueueRepository

logger = logging.getLogger(__name__)

MIN_ANSWER_OPTIONS = 2
MAX_ANSWER_OPTIONS = 4
MIN_ACTIVITY_DAYS = 1
MAX_ACTIVITY_DAYS = 7


@dataclass(slots=True)
class QuizOptions:
    """User-chosen quiz parameters."""

    answer_options_count: int = 4
    activity_days: int = 1

    def validate(self) -> None:
        if not MIN_ANSWER_OPTIONS <= self.answer_options_count <= MAX_ANSWER_OPTIONS:
            raise ValueError(
                f"answer_options_count must be between {MIN_ANSWER_OPTIONS} "
                f"and {MAX_ANSWER_OPTIONS}.",
            )
        if not MIN_ACTIVITY_DAYS <= self.activity_days <= MAX_ACTIVITY_DAYS:
            raise ValueError(
                f"activity_days must be between {MIN_ACTIVITY_DAYS} and {MAX_ACTIVITY_DAYS}.",
            )


@dataclass(slots=True)
class EnqueueResult:
    task_id: str
    status: TaskStatus

    @classmethod
    def from_task(cls, task: TaskView) -> EnqueueResult:
        return cls(task_id=task.task_id, status=task.status)


class TaskQueueService:
    """Typed enqueue shortcuts over the queue repository."""

    def __init__(self, *, repository: TaskQueueRepository) -> None:
        self.repository = repository

    def push_focus_calculation(self, *, user_id: str, force: bool = False) -> EnqueueResult:
        """Request a focus recalculation; `force` bypasses the content hash cache."""

        return self._push(
            TaskCreate(
                user_id=user_id,
                task_type=TaskType.FOCUS_CALCULATION.value,
                payload={"force": force},
            ),
        )

    def push_quiz_generation(
        self,
        *,
        user_id: str,
        options: QuizOptions | None = None,
    ) -> EnqueueResult:
        options = options or QuizOptions()
        options.validate()
        return self._push(
            TaskCreate(
                user_id=user_id,
                task_type=TaskType.QUIZ_GENERATION.value,
                payload={
                    "answer_options_count": options.answer_options_count,
                    "activity_days": options.activity_days,
                },
                priority=TaskPriority.HIGH.value,
            ),
        )

    def push_summarization(
        self,
        *,
        user_id: str,
        visit_ids: list[str] | None = None,
    ) -> EnqueueResult:
        payload: dict[str, object] = {}
        if visit_ids:
            payload["visit_ids"] = list(visit_ids)
        return self._push(
            TaskCreate(
                user_id=user_id,
                task_type=TaskType.SUMMARIZATION.value,
                payload=payload,
            ),
        )

    def push_image_summarization(
        self,
        *,
        user_id: str,
        image_attention_ids: list[str] | None = None,
    ) -> EnqueueResult:
        payload: dict[str, object] = {}
        if image_attention_ids:
            payload["image_attention_ids"] = list(image_attention_ids)
        return self._push(
            TaskCreate(
                user_id=user_id,
                task_type=TaskType.IMAGE_SUMMARIZATION.value,
                payload=payload,
            ),
        )

    def cancel_task(self, *, task_id: str) -> bool:
        """Cancel a pending task; False when it is unknown or already running or finished."""

        try:
            self.repository.cancel_task(task_id=task_id)
        except (TaskNotFoundError, InvalidTransitionError) as error:
            logger.info("Cancel rejected: %s", error)
            return False
        return True

    def _push(self, command: TaskCreate) -> EnqueueResult:
        return EnqueueResult.from_task(self.repository.push_task(command))
