"""Task type to handler lookup table."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from attention_queue.queue.models import TaskView

TaskHandler = Callable[[TaskView], Awaitable[dict[str, Any]]]


class HandlerRegistry:
    """Handlers are registered once at startup, before the worker starts."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_type: str, handler: TaskHandler) -> None:
        if not task_type.strip():
            raise ValueError("task_type must be a non-empty string.")
        self._handlers[task_type] = handler

    def has(self, task_type: str) -> bool:
        return task_type in self._handlers

    def get(self, task_type: str) -> TaskHandler | None:
        return self._handlers.get(task_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)
