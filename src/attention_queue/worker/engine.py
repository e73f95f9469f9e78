"""Async queue worker: claims tasks under concurrency caps and runs handlers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from attention_queue.queue.failure_classifier import classify_handler_failure
from attention_queue.queue.models import FailureKind, TaskView
from attention_queue.queue.repository import TaskQueueRepository
from attention_queue.worker.registry import HandlerRegistry, TaskHandler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def minus(self, other: WorkerRunSummary) -> WorkerRunSummary:
        return WorkerRunSummary(
            processed=self.processed - other.processed,
            succeeded=self.succeeded - other.succeeded,
            failed=self.failed - other.failed,
            retried=self.retried - other.retried,
            idle_polls=self.idle_polls - other.idle_polls,
        )

    def copy(self) -> WorkerRunSummary:
        return self.minus(WorkerRunSummary())


@dataclass(slots=True)
class WorkerTickSummary:
    claimed: int = 0
    unknown_type: int = 0


@dataclass(slots=True)
class MaintenanceSummary:
    recovered: int = 0
    stale_failed: int = 0
    archived: int = 0
    history_pruned: int = 0


@dataclass(slots=True)
class WorkerStatus:
    """Snapshot of the worker lifecycle and in-process counters."""

    running: bool
    worker_id: str
    processing_count: int
    processing_by_user: dict[str, int] = field(default_factory=dict)
    registered_handlers: list[str] = field(default_factory=list)


@dataclass(slots=True, eq=False)
class _Claim:
    """One claim of a task. A task recovered and claimed again gets a new one."""

    task: TaskView


class TaskWorker:
    """Owns the handler registry and the processing counters of one process.

    Counters are mutated only from the event loop thread, at claim time in
    `run_once` and at release time in the dispatch `finally` block. Store
    calls run in a thread via `asyncio.to_thread`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskQueueRepository,
        registry: HandlerRegistry | None = None,
        worker_id: str = "worker",
        poll_interval_seconds: float = 1.0,
        maintenance_interval_seconds: float = 60.0,
        max_concurrent_tasks: int = 5,
        max_tasks_per_user: int = 2,
        stale_after_seconds: int = 300,
        archive_after_seconds: int = 3600,
        history_retention_seconds: int = 7 * 24 * 3600,
    ) -> None:
        if max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be >= 1.")
        if max_tasks_per_user < 1:
            raise ValueError("max_tasks_per_user must be >= 1.")
        self.repository = repository
        self.registry = registry or HandlerRegistry()
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.max_concurrent_tasks = max_concurrent_tasks
        self.max_tasks_per_user = max_tasks_per_user
        self.stale_after_seconds = stale_after_seconds
        self.archive_after_seconds = archive_after_seconds
        self.history_retention_seconds = history_retention_seconds
        self._claims: set[_Claim] = set()
        self._processing_by_user: dict[str, int] = {}
        self._in_flight: dict[_Claim, asyncio.Task[None]] = {}
        self._totals = WorkerRunSummary()
        self._poll_task: asyncio.Task[None] | None = None
        self._maintenance_task: asyncio.Task[None] | None = None
        self._stop_requested = False
        self._wakeup = asyncio.Event()
        self._running = False

    # -- registry --------------------------------------------------------------

    def register_task_handler(self, task_type: str, handler: TaskHandler) -> None:
        self.registry.register(task_type, handler)
        logger.info("Registered handler for task type %s", task_type)

    def has_task_handler(self, task_type: str) -> bool:
        return self.registry.has(task_type)

    # -- counters --------------------------------------------------------------

    @property
    def processing_count(self) -> int:
        return len(self._claims)

    def status(self) -> WorkerStatus:
        return WorkerStatus(
            running=self._running,
            worker_id=self.worker_id,
            processing_count=self.processing_count,
            processing_by_user=dict(self._processing_by_user),
            registered_handlers=self.registry.types(),
        )

    def _saturated_users(self) -> list[str]:
        return [
            user_id
            for user_id, count in self._processing_by_user.items()
            if count >= self.max_tasks_per_user
        ]

    def _track(self, task: TaskView) -> _Claim:
        claim = _Claim(task)
        self._claims.add(claim)
        self._processing_by_user[task.user_id] = self._processing_by_user.get(task.user_id, 0) + 1
        return claim

    def _release(self, claim: _Claim) -> None:
        if claim not in self._claims:
            return
        self._claims.discard(claim)
        user_id = claim.task.user_id
        remaining = self._processing_by_user.get(user_id, 0) - 1
        if remaining > 0:
            self._processing_by_user[user_id] = remaining
        else:
            self._processing_by_user.pop(user_id, None)

    # -- poll tick -------------------------------------------------------------

    async def run_once(self, *, max_claims: int | None = None) -> WorkerTickSummary:
        """Claim tasks while both concurrency caps have headroom."""

        summary = WorkerTickSummary()
        while not self._stop_requested and self.processing_count < self.max_concurrent_tasks:
            if max_claims is not None and summary.claimed >= max_claims:
                break
            task = await asyncio.to_thread(
                self.repository.get_next_task,
                exclude_user_ids=self._saturated_users(),
            )
            if task is None:
                break
            summary.claimed += 1
            claim = self._track(task)

            handler = self.registry.get(task.task_type)
            if handler is None:
                summary.unknown_type += 1
                await self._fail_unknown_type(claim)
                continue

            self._in_flight[claim] = asyncio.create_task(
                self._dispatch(claim, handler),
                name=f"task-{task.task_id}",
            )
        return summary

    async def _fail_unknown_type(self, claim: _Claim) -> None:
        task = claim.task
        try:
            logger.error(
                "No handler registered for task type %s (task %s)",
                task.task_type,
                task.task_id,
            )
            await self._record_failure(
                task,
                error=f"Unknown task type: {task.task_type}",
                retryable=False,
                failure_kind=FailureKind.CONFIGURATION,
                details={"reason_code": "unknown_task_type"},
            )
        finally:
            self._release(claim)

    async def _dispatch(self, claim: _Claim, handler: TaskHandler) -> None:
        task = claim.task
        try:
            try:
                result = await handler(task)
            except Exception as error:  # noqa: BLE001
                await self._handle_handler_error(task, error)
            else:
                await self._handle_success(task, result)
        except Exception:
            logger.exception("Failed to record outcome for task %s", task.task_id)
        finally:
            self._release(claim)
            self._in_flight.pop(claim, None)

    async def _handle_success(self, task: TaskView, result: Any) -> None:
        payload = _normalize_result(result)
        completed = await asyncio.to_thread(
            self.repository.complete_task,
            task_id=task.task_id,
            result=payload,
            claimed_at=task.started_at,
        )
        self._totals.processed += 1
        if not completed:
            logger.warning(
                "Task %s finished but was no longer processing; result dropped",
                task.task_id,
            )
            return
        self._totals.succeeded += 1
        logger.info("Task %s (%s) completed", task.task_id, task.task_type)

    async def _handle_handler_error(self, task: TaskView, error: Exception) -> None:
        classification = classify_handler_failure(error, task_type=task.task_type)
        message = str(error) or type(error).__name__
        if classification.failure_kind == FailureKind.CONFIGURATION:
            logger.error("Task %s (%s) misconfigured: %s", task.task_id, task.task_type, message)
        elif classification.retryable:
            logger.warning("Task %s (%s) failed: %s", task.task_id, task.task_type, message)
        else:
            logger.info("Task %s (%s) rejected: %s", task.task_id, task.task_type, message)
        await self._record_failure(
            task,
            error=message,
            retryable=classification.retryable,
            failure_kind=classification.failure_kind,
            details=classification.to_event_details(task_type=task.task_type),
        )

    async def _record_failure(
        self,
        task: TaskView,
        *,
        error: str,
        retryable: bool,
        failure_kind: FailureKind,
        details: dict[str, object],
    ) -> None:
        outcome = await asyncio.to_thread(
            self.repository.fail_task,
            task_id=task.task_id,
            error=error,
            retryable=retryable,
            failure_kind=failure_kind,
            details=details,
            claimed_at=task.started_at,
        )
        self._totals.processed += 1
        if outcome is None:
            logger.warning("Task %s was no longer processing; failure dropped", task.task_id)
            return
        if outcome.retried:
            self._totals.retried += 1
        else:
            self._totals.failed += 1

    # -- maintenance -----------------------------------------------------------

    def run_maintenance(self) -> MaintenanceSummary:
        """Stale recovery, archive and history pruning in one pass."""

        recovery = self.repository.recover_stale_tasks(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        archived = self.repository.archive_old_tasks(
            max_age=timedelta(seconds=self.archive_after_seconds),
        )
        pruned = self.repository.cleanup_old_history(
            max_age=timedelta(seconds=self.history_retention_seconds),
        )
        summary = MaintenanceSummary(
            recovered=recovery.requeued,
            stale_failed=recovery.failed,
            archived=archived,
            history_pruned=pruned,
        )
        if recovery.total or archived or pruned:
            logger.info(
                "Maintenance: recovered=%d stale_failed=%d archived=%d history_pruned=%d",
                summary.recovered,
                summary.stale_failed,
                summary.archived,
                summary.history_pruned,
            )
        return summary

    # -- lifecycle -------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Launch the poll and maintenance loops on the running event loop."""

        if self._running:
            return
        self._stop_requested = False
        self._wakeup.clear()
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop(), name="worker-poll")
        self._maintenance_task = asyncio.create_task(
            self._maintenance_loop(),
            name="worker-maintenance",
        )
        logger.info(
            "Worker %s started: max_concurrent=%d per_user=%d handlers=%s",
            self.worker_id,
            self.max_concurrent_tasks,
            self.max_tasks_per_user,
            ",".join(self.registry.types()) or "-",
        )

    async def stop(self) -> None:
        """Stop claiming, then wait for every in-flight handler to finish.

        The loops are woken rather than cancelled, so a claim already running
        in a thread is tracked and dispatched before the drain.
        """

        self._stop_requested = True
        self._wakeup.set()
        for loop_task in (self._poll_task, self._maintenance_task):
            if loop_task is not None:
                await loop_task
        self._poll_task = None
        self._maintenance_task = None
        await self._drain()
        if self._running:
            logger.info("Worker %s stopped", self.worker_id)
        self._running = False

    async def serve(self, *, stop_event: asyncio.Event | None = None) -> None:
        """Run until SIGINT/SIGTERM (or `stop_event`), then stop gracefully."""

        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, stop_event.set)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(signum)

        await self.start()
        try:
            await stop_event.wait()
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
            await self.stop()

    async def run_until_idle(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Drain claimable work and return what happened.

        Args:
            max_tasks: Stop claiming after this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        before = self._totals.copy()
        claimed_total = 0
        idle_polls = 0
        consecutive_idle = 0
        self._stop_requested = False
        while True:
            remaining = None if max_tasks is None else max_tasks - claimed_total
            if remaining is not None and remaining <= 0:
                break
            tick = await self.run_once(max_claims=remaining)
            claimed_total += tick.claimed
            if tick.claimed:
                consecutive_idle = 0
                await asyncio.sleep(0)
                continue
            if self._in_flight:
                await asyncio.wait(
                    list(self._in_flight.values()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                continue
            consecutive_idle += 1
            idle_polls += 1
            if consecutive_idle >= max_idle_polls:
                break
            await asyncio.sleep(self.poll_interval_seconds)

        await self._drain()
        summary = self._totals.minus(before)
        summary.idle_polls = idle_polls
        return summary

    async def _drain(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _pause(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)

    async def _poll_loop(self) -> None:
        while not self._stop_requested:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Worker poll tick failed")
            await self._pause(self.poll_interval_seconds)

    async def _maintenance_loop(self) -> None:
        while not self._stop_requested:
            try:
                await asyncio.to_thread(self.run_maintenance)
            except Exception:
                logger.exception("Worker maintenance tick failed")
            await self._pause(self.maintenance_interval_seconds)


def _normalize_result(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if isinstance(result, dict):
        return result
    return {"value": result}
