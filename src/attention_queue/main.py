"""CLI entrypoint for attention-queue."""

from pathlib import Path

import rich_click as click

from attention_queue import __version__
from attention_queue.controllers import (
    DbCommand,
    QueueCliController,
    SettingsSetCommand,
    TaskEnqueueCommand,
    TaskListCommand,
    TaskRefCommand,
    UserStatusCommand,
    WorkerCommand,
)
from attention_queue.logging_setup import configure_logging
from attention_queue.queue.errors import TaskQueueError
from attention_queue.queue.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

_DB_PATH_HELP = "SQLite DB path (defaults to ATTENTION_QUEUE_DB_PATH)."


@click.group()
@click.version_option(version=__version__, prog_name="attention-queue")
@click.option(
    "--log-level",
    default=None,
    help="Logging level, for example DEBUG or INFO (defaults to ATTENTION_QUEUE_LOG_LEVEL).",
)
def attention_queue(log_level: str | None) -> None:
    """Per-user attention task queue CLI."""

    configure_logging(log_level)


@attention_queue.group()
def tasks() -> None:
    """Task enqueue and inspection commands."""


@tasks.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--user-id", required=True, help="Owner of the task.")
@click.option("--task-type", required=True, help="Task type, for example focus-calculation.")
@click.option("--payload", "payload_json", default=None, help="JSON object passed to the handler.")
@click.option("--priority", type=int, default=None, help="Override the per-type priority.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Override the per-type retry budget.",
)
@click.option("--dedupe-key", default=None, help="Explicit dedupe key (default user:type).")
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Delay before the task becomes claimable.",
)
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    task_type: str,
    payload_json: str | None,
    priority: int | None,
    max_retries: int | None,
    dedupe_key: str | None,
    delay_seconds: float,
) -> None:
    """Enqueue a task, or show the open task that already holds its dedupe key."""

    try:
        lines = QUEUE_CONTROLLER.enqueue(
            TaskEnqueueCommand(
                db_path=db_path,
                user_id=user_id,
                task_type=task_type,
                payload_json=payload_json,
                priority=priority,
                max_retries=max_retries,
                dedupe_key=dedupe_key,
                delay_seconds=delay_seconds,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--user-id", default=None, help="Optional user filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum tasks to show.",
)
def tasks_list(db_path: Path | None, status: str | None, user_id: str | None, limit: int) -> None:
    """List live tasks, newest first."""

    _emit_lines(
        QUEUE_CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, user_id=user_id, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event trail, or its archived snapshot."""

    _emit_lines(QUEUE_CONTROLLER.inspect_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending task."""

    try:
        lines = QUEUE_CONTROLLER.cancel_task(TaskRefCommand(db_path=db_path, task_id=task_id))
    except TaskQueueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@attention_queue.group()
def queue() -> None:
    """Queue projections."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def queue_stats(db_path: Path | None) -> None:
    """Show global counts by status and today's outcomes."""

    _emit_lines(QUEUE_CONTROLLER.stats(DbCommand(db_path=db_path)))


@queue.command("user-status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--user-id", required=True, help="User to inspect.")
@click.option(
    "--recent",
    "recent_limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
    help="How many finished tasks to list.",
)
def queue_user_status(db_path: Path | None, user_id: str, recent_limit: int) -> None:
    """Show pending, active and recent work for one user."""

    _emit_lines(
        QUEUE_CONTROLLER.user_status(
            UserStatusCommand(db_path=db_path, user_id=user_id, recent_limit=recent_limit),
        ),
    )


@attention_queue.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--once/--serve",
    default=False,
    show_default=True,
    help="Drain claimable work and exit, or serve until SIGINT/SIGTERM.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for claimed tasks in --once mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before --once mode exits.",
)
@click.option(
    "--with-scheduler/--without-scheduler",
    default=True,
    show_default=True,
    help="Run the recurring-task scheduler alongside the worker in --serve mode.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    with_scheduler: bool,
) -> None:
    """Run the task worker."""

    _emit_lines(
        QUEUE_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                with_scheduler=with_scheduler,
            ),
        ),
    )


@attention_queue.group()
def maintenance() -> None:
    """Housekeeping commands."""


@maintenance.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def maintenance_run(db_path: Path | None) -> None:
    """Recover stale tasks, archive finished ones and prune history."""

    _emit_lines(QUEUE_CONTROLLER.run_maintenance(DbCommand(db_path=db_path)))


@attention_queue.group()
def scheduler() -> None:
    """Recurring task scheduler commands."""


@scheduler.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def scheduler_tick(db_path: Path | None) -> None:
    """Run every recurring job once."""

    _emit_lines(QUEUE_CONTROLLER.scheduler_tick(DbCommand(db_path=db_path)))


@attention_queue.group()
def settings() -> None:
    """Per-user recurring task preferences."""


@settings.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--user-id", required=True, help="User whose preferences change.")
@click.option("--focus/--no-focus", "focus_enabled", default=None, help="Recurring focus runs.")
@click.option(
    "--focus-interval-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Interval between focus runs.",
)
@click.option(
    "--summarization/--no-summarization",
    "summarization_enabled",
    default=None,
    help="Recurring summarization runs.",
)
@click.option(
    "--summarization-interval-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Interval between summarization runs.",
)
def settings_set(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    focus_enabled: bool | None,
    focus_interval_ms: int | None,
    summarization_enabled: bool | None,
    summarization_interval_ms: int | None,
) -> None:
    """Create or update one user's recurring task preferences."""

    _emit_lines(
        QUEUE_CONTROLLER.set_user_settings(
            SettingsSetCommand(
                db_path=db_path,
                user_id=user_id,
                focus_enabled=focus_enabled,
                focus_interval_ms=focus_interval_ms,
                summarization_enabled=summarization_enabled,
                summarization_interval_ms=summarization_interval_ms,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    attention_queue()
