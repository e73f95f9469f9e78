"""Process-wide logging configuration for CLI entrypoints."""

from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int | None = None) -> None:
    """Configure root logging once; `ATTENTION_QUEUE_LOG_LEVEL` is the fallback level."""

    resolved = level if level is not None else os.getenv("ATTENTION_QUEUE_LOG_LEVEL", "INFO")
    if isinstance(resolved, str):
        numeric = logging.getLevelName(resolved.strip().upper())
        if not isinstance(numeric, int):
            raise ValueError(f"Unknown log level: {resolved!r}")
        resolved = numeric
    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=True)
    # SQLAlchemy engine echo is noisy at INFO.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)
