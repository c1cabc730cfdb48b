"""Persistence layer for stepflow executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepflowConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .models import ExecutionRow
from .postgres import PostgresExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

_repository_instance: ExecutionRepository | None = None


def repository_for_url(database_url: Optional[str]) -> ExecutionRepository:
    """Build the backend named by ``database_url``.

    ``None``, ``""`` and ``memory://`` select the in-memory store,
    ``sqlite://<path>`` a SQLite file and ``postgres://`` or
    ``postgresql://`` a Postgres database.
    """
    if not database_url or database_url == "memory://":
        return InMemoryExecutionRepository()
    if database_url.startswith("sqlite://"):
        return SQLiteExecutionRepository(database_url[len("sqlite://"):])
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresExecutionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[StepflowConfig] = None
) -> ExecutionRepository:
    """Return the process-wide execution repository.

    With no arguments the cached repository is reused. Otherwise the URL is
    taken from ``database_url``, then ``STEPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, then the loaded configuration, and the new repository
    replaces the cached one.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    _repository_instance = repository_for_url(
        database_url
        or os.getenv("STEPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository instance."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "ExecutionRow",
    "ExecutionRepository",
    "SQLiteExecutionRepository",
    "PostgresExecutionRepository",
    "InMemoryExecutionRepository",
    "get_repository",
    "repository_for_url",
    "reset_repository",
]
