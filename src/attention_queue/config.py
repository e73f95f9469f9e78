"""Runtime configuration for the queue worker, scheduler and handlers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class WorkerSettings:
    """Poll cadence, concurrency caps and retention for the worker."""

    worker_id: str = "worker"
    poll_interval_seconds: float = 1.0
    maintenance_interval_seconds: float = 60.0
    max_concurrent_tasks: int = 5
    max_tasks_per_user: int = 2
    stale_after_seconds: int = 300
    archive_after_seconds: int = 3_600
    history_retention_seconds: int = 7 * 24 * 3_600
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 300.0
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SchedulerSettings:
    enabled: bool = True
    focus_tick_seconds: float = 10.0
    summarization_tick_seconds: float = 30.0


@dataclass(slots=True)
class HandlerSettings:
    hash_cache_ttl_seconds: float = 300.0
    default_attention_window_hours: int = 24


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".attention_queue.db")
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    handlers: HandlerSettings = field(default_factory=HandlerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("ATTENTION_QUEUE_DB_PATH", ".attention_queue.db")),
            worker=WorkerSettings(
                worker_id=os.getenv(
                    "ATTENTION_QUEUE_WORKER_ID",
                    f"{socket.gethostname()}:{os.getpid()}",
                ),
                poll_interval_seconds=float(
                    os.getenv("ATTENTION_QUEUE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                maintenance_interval_seconds=float(
                    os.getenv("ATTENTION_QUEUE_MAINTENANCE_INTERVAL_SECONDS", "60"),
                ),
                max_concurrent_tasks=int(os.getenv("ATTENTION_QUEUE_MAX_CONCURRENT_TASKS", "5")),
                max_tasks_per_user=int(os.getenv("ATTENTION_QUEUE_MAX_TASKS_PER_USER", "2")),
                stale_after_seconds=int(os.getenv("ATTENTION_QUEUE_STALE_AFTER_SECONDS", "300")),
                archive_after_seconds=int(
                    os.getenv("ATTENTION_QUEUE_ARCHIVE_AFTER_SECONDS", "3600"),
                ),
                history_retention_seconds=int(
                    os.getenv("ATTENTION_QUEUE_HISTORY_RETENTION_SECONDS", str(7 * 24 * 3_600)),
                ),
                retry_base_seconds=float(os.getenv("ATTENTION_QUEUE_RETRY_BASE_SECONDS", "2")),
                retry_max_seconds=float(os.getenv("ATTENTION_QUEUE_RETRY_MAX_SECONDS", "300")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("ATTENTION_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            scheduler=SchedulerSettings(
                enabled=_env_bool("ATTENTION_QUEUE_SCHEDULER_ENABLED", default=True),
                focus_tick_seconds=float(
                    os.getenv("ATTENTION_QUEUE_SCHEDULER_FOCUS_TICK_SECONDS", "10"),
                ),
                summarization_tick_seconds=float(
                    os.getenv("ATTENTION_QUEUE_SCHEDULER_SUMMARIZATION_TICK_SECONDS", "30"),
                ),
            ),
            handlers=HandlerSettings(
                hash_cache_ttl_seconds=float(
                    os.getenv("ATTENTION_QUEUE_HASH_CACHE_TTL_SECONDS", "300"),
                ),
                default_attention_window_hours=int(
                    os.getenv("ATTENTION_QUEUE_DEFAULT_ATTENTION_WINDOW_HOURS", "24"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for limits that would stall the queue."""

        positive = {
            "ATTENTION_QUEUE_POLL_INTERVAL_SECONDS": self.worker.poll_interval_seconds,
            "ATTENTION_QUEUE_MAINTENANCE_INTERVAL_SECONDS": (
                self.worker.maintenance_interval_seconds
            ),
            "ATTENTION_QUEUE_MAX_CONCURRENT_TASKS": self.worker.max_concurrent_tasks,
            "ATTENTION_QUEUE_MAX_TASKS_PER_USER": self.worker.max_tasks_per_user,
            "ATTENTION_QUEUE_STALE_AFTER_SECONDS": self.worker.stale_after_seconds,
            "ATTENTION_QUEUE_ARCHIVE_AFTER_SECONDS": self.worker.archive_after_seconds,
            "ATTENTION_QUEUE_HISTORY_RETENTION_SECONDS": self.worker.history_retention_seconds,
            "ATTENTION_QUEUE_RETRY_BASE_SECONDS": self.worker.retry_base_seconds,
            "ATTENTION_QUEUE_RETRY_MAX_SECONDS": self.worker.retry_max_seconds,
            "ATTENTION_QUEUE_SCHEDULER_FOCUS_TICK_SECONDS": self.scheduler.focus_tick_seconds,
            "ATTENTION_QUEUE_SCHEDULER_SUMMARIZATION_TICK_SECONDS": (
                self.scheduler.summarization_tick_seconds
            ),
            "ATTENTION_QUEUE_HASH_CACHE_TTL_SECONDS": self.handlers.hash_cache_ttl_seconds,
            "ATTENTION_QUEUE_DEFAULT_ATTENTION_WINDOW_HOURS": (
                self.handlers.default_attention_window_hours
            ),
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.worker.max_tasks_per_user > self.worker.max_concurrent_tasks:
            raise ValueError(
                "ATTENTION_QUEUE_MAX_TASKS_PER_USER must not exceed "
                "ATTENTION_QUEUE_MAX_CONCURRENT_TASKS.",
            )
        if self.worker.retry_max_seconds < self.worker.retry_base_seconds:
            raise ValueError(
                "ATTENTION_QUEUE_RETRY_MAX_SECONDS must be >= ATTENTION_QUEUE_RETRY_BASE_SECONDS.",
            )
        if self.worker.history_retention_seconds < self.worker.archive_after_seconds:
            raise ValueError(
                "ATTENTION_QUEUE_HISTORY_RETENTION_SECONDS must be >= "
                "ATTENTION_QUEUE_ARCHIVE_AFTER_SECONDS.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
