"""In-process change notification for task status transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable

from attention_queue.queue.models import TaskChangedEvent

logger = logging.getLogger(__name__)

TaskEventListener = Callable[[TaskChangedEvent], None]


class TaskEventBus:
    """Fan-out of task change events to subscribers such as SSE channels.

    Listeners run synchronously after the store commit, on the thread that
    made the store call. For the async worker that is a `to_thread` worker
    thread, so a listener feeding an event loop should hand off with
    `loop.call_soon_threadsafe`. A failing listener is logged and skipped;
    it never affects the queue transition.
    """

    def __init__(self) -> None:
        self._listeners: list[TaskEventListener] = []

    def subscribe(self, listener: TaskEventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: TaskChangedEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Task event listener failed for task %s (%s)",
                    event.task_id,
                    event.change_type.value,
                )

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
