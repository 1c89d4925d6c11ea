"""Persistence layer for stepwatch engine state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepwatchConfig, load_config
from .inmemory import InMemoryEngineRepository
from .models import (
    AuditEvent,
    InterruptCase,
    Notification,
    SlaTracking,
    StepExecutionRecord,
    WorkflowInstance,
)
from .repository import EngineRepository
from .sqlite import SQLiteEngineRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresEngineRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresEngineRepository = None  # type: ignore

_repository_instance: EngineRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepwatchConfig] = None
) -> EngineRepository:
    """Factory function to obtain an engine repository.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via ``STEPWATCH_DATABASE_URL`` / ``DATABASE_URL``, or from the
    loaded configuration. Without a database an in-memory repository is used.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPWATCH_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryEngineRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteEngineRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresEngineRepository is None:
            raise RuntimeError("Postgres support not available; install asyncpg")
        _repository_instance = PostgresEngineRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "AuditEvent",
    "EngineRepository",
    "InMemoryEngineRepository",
    "InterruptCase",
    "Notification",
    "PostgresEngineRepository",
    "SQLiteEngineRepository",
    "SlaTracking",
    "StepExecutionRecord",
    "WorkflowInstance",
    "get_repository",
]
