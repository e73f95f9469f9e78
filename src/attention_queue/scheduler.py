"""Polling scheduler that turns per-user recurring preferences into queue entries."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from attention_queue.queue.models import TaskType
from attention_queue.queue.repository import TaskQueueRepository
from attention_queue.settings_store import RecurringPreference, UserSettingsStore
from attention_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RecurringJob:
    task_type: str
    preference: RecurringPreference
    tick_seconds: float


def default_jobs(
    *,
    focus_tick_seconds: float = 10.0,
    summarization_tick_seconds: float = 30.0,
) -> tuple[RecurringJob, ...]:
    return (
        RecurringJob(
            task_type=TaskType.FOCUS_CALCULATION.value,
            preference=RecurringPreference.FOCUS_CALCULATION,
            tick_seconds=focus_tick_seconds,
        ),
        RecurringJob(
            task_type=TaskType.SUMMARIZATION.value,
            preference=RecurringPreference.SUMMARIZATION,
            tick_seconds=summarization_tick_seconds,
        ),
        RecurringJob(
            task_type=TaskType.IMAGE_SUMMARIZATION.value,
            preference=RecurringPreference.SUMMARIZATION,
            tick_seconds=summarization_tick_seconds,
        ),
    )


class RecurringTaskScheduler:
    """Enqueues due recurring tasks on a fixed tick per job.

    Ticks are finer than any user's interval so a due user is picked up
    promptly. Double enqueue is prevented by the queue's dedupe key, not
    by this class.
    """

    def __init__(
        self,
        *,
        repository: TaskQueueRepository,
        settings_store: UserSettingsStore,
        jobs: tuple[RecurringJob, ...] | None = None,
    ) -> None:
        self.repository = repository
        self.settings_store = settings_store
        self.jobs = jobs if jobs is not None else default_jobs()
        self._loop_tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._loop_tasks)

    def run_job(self, job: RecurringJob) -> int:
        """One tick of one job; returns the number of tasks enqueued."""

        try:
            settings = self.settings_store.list_recurring_preferences(job.preference)
        except Exception:
            logger.exception("Failed to list %s preferences", job.preference.value)
            return 0

        now = utc_now()
        scheduled = 0
        for setting in settings:
            if not setting.enabled:
                continue
            try:
                last = self.repository.last_completed_at(
                    user_id=setting.user_id,
                    task_type=job.task_type,
                )
                if last is not None and now - last < setting.interval:
                    continue
                task = self.repository.schedule_recurring_task(
                    user_id=setting.user_id,
                    task_type=job.task_type,
                    interval=setting.interval,
                )
            except Exception:
                logger.exception(
                    "Failed to schedule %s for user %s",
                    job.task_type,
                    setting.user_id,
                )
                continue
            if task is not None:
                scheduled += 1
                logger.debug("Scheduled %s for user %s", job.task_type, setting.user_id)
        return scheduled

    def tick(self) -> dict[str, int]:
        """Run every job once, regardless of its tick interval."""

        return {job.task_type: self.run_job(job) for job in self.jobs}

    async def start(self) -> None:
        if self._loop_tasks:
            return
        self._loop_tasks = [
            asyncio.create_task(self._job_loop(job), name=f"scheduler-{job.task_type}")
            for job in self.jobs
        ]
        logger.info("Scheduler started with %d jobs", len(self.jobs))

    async def stop(self) -> None:
        tasks, self._loop_tasks = self._loop_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("Scheduler stopped")

    async def _job_loop(self, job: RecurringJob) -> None:
        while True:
            await asyncio.to_thread(self.run_job, job)
            await asyncio.sleep(job.tick_seconds)
