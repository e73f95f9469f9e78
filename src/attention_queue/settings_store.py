"""Per-user recurring-task preferences consumed by the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol

from sqlmodel import Session, col, select

from attention_queue.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from attention_queue.storage.sqlmodel_models import UserSettingsRow


class RecurringPreference(str, Enum):
    """User-settings toggle that gates a recurring job."""

    FOCUS_CALCULATION = "focus_calculation"
    SUMMARIZATION = "summarization"


@dataclass(slots=True, frozen=True)
class UserRecurringSetting:
    user_id: str
    enabled: bool
    interval: timedelta


class UserSettingsStore(Protocol):
    def list_recurring_preferences(
        self,
        preference: RecurringPreference,
    ) -> list[UserRecurringSetting]: ...


class SqlUserSettingsStore:
    """`user_settings` table reader/writer sharing the queue database."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def list_recurring_preferences(
        self,
        preference: RecurringPreference,
    ) -> list[UserRecurringSetting]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(UserSettingsRow).order_by(col(UserSettingsRow.user_id).asc()),
            ).all()
        return [_to_setting(row, preference) for row in rows]

    def upsert_preferences(  # noqa: PLR0913
        self,
        *,
        user_id: str,
        focus_calculation_enabled: bool | None = None,
        focus_calculation_interval_ms: int | None = None,
        attention_summarization_enabled: bool | None = None,
        attention_summarization_interval_ms: int | None = None,
    ) -> UserRecurringSetting:
        """Create or patch one user's settings row; returns the focus setting."""

        for value in (focus_calculation_interval_ms, attention_summarization_interval_ms):
            if value is not None and value <= 0:
                raise ValueError("Interval must be > 0 milliseconds.")
        with Session(self.engine) as session:
            row = session.get(UserSettingsRow, user_id)
            if row is None:
                row = UserSettingsRow(user_id=user_id, updated_at=to_db_datetime(utc_now()))
            if focus_calculation_enabled is not None:
                row.focus_calculation_enabled = focus_calculation_enabled
            if focus_calculation_interval_ms is not None:
                row.focus_calculation_interval_ms = focus_calculation_interval_ms
            if attention_summarization_enabled is not None:
                row.attention_summarization_enabled = attention_summarization_enabled
            if attention_summarization_interval_ms is not None:
                row.attention_summarization_interval_ms = attention_summarization_interval_ms
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_setting(row, RecurringPreference.FOCUS_CALCULATION)


def _to_setting(row: UserSettingsRow, preference: RecurringPreference) -> UserRecurringSetting:
    if preference == RecurringPreference.FOCUS_CALCULATION:
        return UserRecurringSetting(
            user_id=row.user_id,
            enabled=row.focus_calculation_enabled,
            interval=timedelta(milliseconds=row.focus_calculation_interval_ms),
        )
    return UserRecurringSetting(
        user_id=row.user_id,
        enabled=row.attention_summarization_enabled,
        interval=timedelta(milliseconds=row.attention_summarization_interval_ms),
    )
