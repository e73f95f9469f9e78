"""Built-in handlers for the four attention task types."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from attention_queue.collaborators import (
    AttentionData,
    AttentionDataProvider,
    AttentionItem,
    AttentionWindow,
    LlmProvider,
)
from attention_queue.handlers.hash_cache import ContentHashCache, hash_attention_data
from attention_queue.queue.errors import InsufficientDataError, InvalidPayloadError
from attention_queue.queue.models import TaskType, TaskView
from attention_queue.queue.repository import TaskQueueRepository
from attention_queue.storage.common import utc_now
from attention_queue.worker.engine import TaskWorker

logger = logging.getLogger(__name__)

DEFAULT_ATTENTION_WINDOW = timedelta(hours=24)
MAX_PROMPT_ITEMS = 40

FOCUS_PROMPT = """Identify the user's current focus area from their recent attention.
Answer with a short topic name and one sentence of context.

{items}
"""

QUIZ_PROMPT = """Write a quiz about the material below.
Each question must have exactly {options} answer options with one correct answer.

{items}
"""

VISIT_SUMMARY_PROMPT = """Summarize what the user read on this page in two sentences.
URL: {url}

{text}
"""

IMAGE_SUMMARY_PROMPT = """Describe this image the user looked at in one sentence.
URL: {url}

{text}
"""


class BuiltinHandlers:
    """Handler bodies sharing collaborators injected at startup."""

    def __init__(
        self,
        *,
        repository: TaskQueueRepository,
        attention: AttentionDataProvider,
        llm: LlmProvider,
        cache: ContentHashCache,
        default_window: timedelta = DEFAULT_ATTENTION_WINDOW,
    ) -> None:
        self.repository = repository
        self.attention = attention
        self.llm = llm
        self.cache = cache
        self.default_window = default_window

    async def focus_calculation(self, task: TaskView) -> dict[str, Any]:
        self.cache.purge_expired()
        force = bool(task.payload.get("force", False))
        window = await self._window_since_last_run(task)
        data = await self.attention.fetch_raw_attention_data(task.user_id, window)

        result: dict[str, Any] = {
            "skipped_no_new_data": False,
            "window_start": window.start.isoformat(),
            "window_end": window.end.isoformat(),
        }
        if not data.has_minimal_content():
            result["skipped_no_new_data"] = True
            return result

        cache_key = _cache_key(task, data)
        if not force and self.cache.seen(cache_key):
            logger.debug("Focus window unchanged for user %s; skipping", task.user_id)
            result["skipped_no_new_data"] = True
            return result

        focus = await self.llm.generate(FOCUS_PROMPT.format(items=_render_items(data)))
        await self.llm.flush()
        self.cache.remember(cache_key)
        result["focus"] = focus.strip()
        result["items_considered"] = data.item_count
        return result

    async def quiz_generation(self, task: TaskView) -> dict[str, Any]:
        options = _int_payload(task, "answer_options_count", default=4, low=2, high=4)
        days = _int_payload(task, "activity_days", default=1, low=1, high=7)
        now = utc_now()
        window = AttentionWindow(start=now - timedelta(days=days), end=now)
        data = await self.attention.fetch_raw_attention_data(task.user_id, window)
        if not data.has_minimal_content():
            raise InsufficientDataError("Not enough activity data to generate quiz")

        quiz = await self.llm.generate(
            QUIZ_PROMPT.format(options=options, items=_render_items(data)),
        )
        await self.llm.flush()
        return {
            "quiz": quiz.strip(),
            "answer_options_count": options,
            "activity_days": days,
            "generated_at": now.isoformat(),
        }

    async def summarization(self, task: TaskView) -> dict[str, Any]:
        visit_ids = _id_list(task, "visit_ids")
        window = await self._window_since_last_run(task)
        data = await self.attention.fetch_raw_attention_data(task.user_id, window)
        visits = _select(data.visits, visit_ids)
        summaries = await self._summarize_items(
            task,
            items=visits,
            data=AttentionData(visits=visits),
            prompt=VISIT_SUMMARY_PROMPT,
        )
        if summaries is None:
            return {"visits_summarized": 0, "skipped_no_content": True}
        return {"visits_summarized": len(summaries), "summaries": summaries}

    async def image_summarization(self, task: TaskView) -> dict[str, Any]:
        image_ids = _id_list(task, "image_attention_ids")
        window = await self._window_since_last_run(task)
        data = await self.attention.fetch_raw_attention_data(task.user_id, window)
        images = _select(data.image_attentions, image_ids)
        summaries = await self._summarize_items(
            task,
            items=images,
            data=AttentionData(image_attentions=images),
            prompt=IMAGE_SUMMARY_PROMPT,
        )
        if summaries is None:
            return {"images_summarized": 0, "skipped_no_content": True}
        return {"images_summarized": len(summaries), "summaries": summaries}

    async def _summarize_items(
        self,
        task: TaskView,
        *,
        items: list[AttentionItem],
        data: AttentionData,
        prompt: str,
    ) -> dict[str, str] | None:
        """Summarize each item; None when there is nothing new to do."""

        self.cache.purge_expired()
        if not items:
            return None
        scheduled = bool(task.payload.get("is_scheduled", False))
        cache_key = _cache_key(task, data)
        if scheduled and self.cache.seen(cache_key):
            return None

        summaries: dict[str, str] = {}
        for item in items:
            text = await self.llm.generate(prompt.format(url=item.url, text=item.text))
            summaries[item.item_id] = text.strip()
        await self.llm.flush()
        self.cache.remember(cache_key)
        return summaries

    async def _window_since_last_run(self, task: TaskView) -> AttentionWindow:
        last = await asyncio.to_thread(
            self.repository.last_completed_at,
            user_id=task.user_id,
            task_type=task.task_type,
        )
        now = utc_now()
        start = last if last is not None else now - self.default_window
        return AttentionWindow(start=start, end=now)


def register_builtin_handlers(
    worker: TaskWorker,
    *,
    attention: AttentionDataProvider,
    llm: LlmProvider,
    cache: ContentHashCache | None = None,
    default_window: timedelta = DEFAULT_ATTENTION_WINDOW,
) -> BuiltinHandlers:
    handlers = BuiltinHandlers(
        repository=worker.repository,
        attention=attention,
        llm=llm,
        cache=cache or ContentHashCache(),
        default_window=default_window,
    )
    worker.register_task_handler(TaskType.FOCUS_CALCULATION.value, handlers.focus_calculation)
    worker.register_task_handler(TaskType.QUIZ_GENERATION.value, handlers.quiz_generation)
    worker.register_task_handler(TaskType.SUMMARIZATION.value, handlers.summarization)
    worker.register_task_handler(
        TaskType.IMAGE_SUMMARIZATION.value,
        handlers.image_summarization,
    )
    return handlers


def _cache_key(task: TaskView, data: AttentionData) -> str:
    # Namespaced per user and type so one handler never skips another's work.
    return f"{task.user_id}:{task.task_type}:{hash_attention_data(data)}"


def _render_items(data: AttentionData) -> str:
    lines: list[str] = []
    for kind, items in data.by_kind().items():
        for item in items:
            snippet = " ".join(item.text.split())[:280]
            lines.append(f"- [{kind}] {item.url} {snippet}".rstrip())
    return "\n".join(lines[:MAX_PROMPT_ITEMS])


def _select(items: list[AttentionItem], wanted: list[str] | None) -> list[AttentionItem]:
    if wanted is None:
        return list(items)
    allowed = set(wanted)
    return [item for item in items if item.item_id in allowed]


def _id_list(task: TaskView, key: str) -> list[str] | None:
    value = task.payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise InvalidPayloadError(f"Invalid payload: {key} must be a list of strings")
    return value


def _int_payload(task: TaskView, key: str, *, default: int, low: int, high: int) -> int:
    value = task.payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise InvalidPayloadError(
            f"Invalid payload: {key} must be an integer between {low} and {high}",
        )
    return value
