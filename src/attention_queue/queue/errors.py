"""Exception taxonomy for queue operations and handler outcomes."""

from __future__ import annotations

from attention_queue.queue.models import FailureKind, TaskStatus


class TaskQueueError(RuntimeError):
    """Base class for queue service errors."""


class TaskNotFoundError(TaskQueueError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(TaskQueueError):
    """Requested state transition is not allowed from the current status."""

    def __init__(self, *, task_id: str, status: TaskStatus, action: str) -> None:
        super().__init__(f"Task {task_id} cannot be {action} from status={status.value}")
        self.task_id = task_id
        self.status = status
        self.action = action


class TaskHandlerError(Exception):
    """Typed handler outcome the worker interprets uniformly."""

    retryable: bool = True
    failure_kind: FailureKind = FailureKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        failure_kind: FailureKind | None = None,
    ) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        if failure_kind is not None:
            self.failure_kind = failure_kind


class RetryableTaskError(TaskHandlerError):
    """Transient collaborator failure: network, rate limit, provider timeout."""


class NonRetryableTaskError(TaskHandlerError):
    """Input or business failure surfaced verbatim to the user."""

    retryable = False
    failure_kind = FailureKind.INPUT


class InsufficientDataError(NonRetryableTaskError):
    pass


class InvalidPayloadError(NonRetryableTaskError):
    pass
