"""Persistence layer for flowgate workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowgateConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import StepExecution, WorkflowApproval, WorkflowRun
from .repository import WorkflowRepository
from .sql import SQLWorkflowRepository

_repository_instance: WorkflowRepository | None = None

_URL_ALIASES = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
}


def _async_url(database_url: str) -> str:
    for prefix, replacement in _URL_ALIASES.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``FLOWGATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWGATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    database_url = _async_url(database_url)
    if database_url.startswith("sqlite+aiosqlite://") or database_url.startswith(
        "postgresql+asyncpg://"
    ):
        _repository_instance = SQLWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository (used by tests and the CLI)."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "StepExecution",
    "WorkflowApproval",
    "WorkflowRun",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLWorkflowRepository",
    "get_repository",
    "reset_repository",
]
