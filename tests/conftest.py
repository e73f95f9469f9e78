"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from attention_queue.queue.events import TaskEventBus
from attention_queue.queue.models import TaskChangedEvent
from attention_queue.queue.repository import TaskQueueRepository
from attention_queue.storage.common import to_db_datetime
from attention_queue.storage.sqlmodel_models import TaskQueueRow


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def event_bus() -> TaskEventBus:
    return TaskEventBus()


@pytest.fixture()
def emitted(event_bus: TaskEventBus) -> list[TaskChangedEvent]:
    """Every change event the repository publishes during the test."""

    events: list[TaskChangedEvent] = []
    event_bus.subscribe(events.append)
    return events


@pytest.fixture()
def repository(db_path: Path, event_bus: TaskEventBus) -> Iterator[TaskQueueRepository]:
    repository = TaskQueueRepository(db_path, event_bus=event_bus)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def rewrite_task(repository: TaskQueueRepository) -> Callable[..., None]:
    """Overwrite raw task columns, e.g. to move timestamps into the past."""

    def _rewrite(task_id: str, **values: object) -> None:
        normalized = {
            key: to_db_datetime(value) if isinstance(value, datetime) else value
            for key, value in values.items()
        }
        with Session(repository.engine) as session:
            session.exec(
                sa_update(TaskQueueRow)
                .where(col(TaskQueueRow.task_id) == task_id)
                .values(**normalized),
            )
            session.commit()

    return _rewrite
