"""Persistence layer for opsflow."""

from __future__ import annotations

import os
from typing import Optional

from ..config import OpsflowConfig, load_config
from .inmemory import InMemoryRepository
from .repository import Repository
from .sql import SQLRepository

_repository_instance: Repository | None = None

_URL_ALIASES = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgres://": "postgresql+asyncpg://",
    "postgresql://": "postgresql+asyncpg://",
}


def _normalize_url(database_url: str) -> str:
    for prefix, replacement in _URL_ALIASES.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url


def get_repository(
    database_url: Optional[str] = None, config: Optional[OpsflowConfig] = None
) -> Repository:
    """Factory function to obtain a repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``OPSFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("OPSFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRepository()
        return _repository_instance

    url = _normalize_url(database_url)
    if url.startswith("sqlite+aiosqlite://") or url.startswith("postgresql+asyncpg://"):
        _repository_instance = SQLRepository(url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "InMemoryRepository",
    "Repository",
    "SQLRepository",
    "get_repository",
]
