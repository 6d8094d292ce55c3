"""Persistence layer for playbook executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import EngineConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .repository import ExecutionRepository
from .sql import SQLExecutionRepository

_repository_instance: ExecutionRepository | None = None

_SQL_PREFIXES = ("sqlite", "postgres://", "postgresql")


def get_repository(
    database_url: Optional[str] = None, config: Optional[EngineConfig] = None
) -> ExecutionRepository:
    """Factory function to obtain an execution repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``PLAYBOOK_ENGINE_DATABASE_URL``
    or ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PLAYBOOK_ENGINE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryExecutionRepository()
        return _repository_instance

    if database_url.startswith(_SQL_PREFIXES):
        _repository_instance = SQLExecutionRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLExecutionRepository",
    "get_repository",
]
