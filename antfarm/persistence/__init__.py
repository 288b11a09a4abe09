"""Persistence layer for antfarm runs and steps."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AntfarmConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import ClaimedStep, RunRecord, StepRecord
from .postgres import PostgresRunRepository
from .repository import InputResolver, RunRepository
from .sqlite import SQLiteRunRepository

_repository_instance: RunRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[AntfarmConfig] = None
) -> RunRepository:
    """Factory function to obtain a run repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``ANTFARM_DATABASE_URL``, or
    from loaded configuration. ``memory://`` (or no URL at all) selects the
    in-memory repository.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("ANTFARM_DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url or database_url.startswith("memory://"):
        _repository_instance = InMemoryRunRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteRunRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresRunRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ClaimedStep",
    "InputResolver",
    "RunRecord",
    "StepRecord",
    "RunRepository",
    "SQLiteRunRepository",
    "PostgresRunRepository",
    "InMemoryRunRepository",
    "get_repository",
]
