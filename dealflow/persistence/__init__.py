"""Storage for flows, runs, delivery attempts, engagement and audit rows."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import DealflowConfig, load_config
from .inmemory import InMemoryEngineRepository
from .postgres import PostgresEngineRepository
from .repository import EngineRepository
from .sqlite import SQLiteEngineRepository

logger = logging.getLogger(__name__)

_repository_instance: EngineRepository | None = None


def _from_url(database_url: str) -> EngineRepository:
    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteEngineRepository(location)
    if scheme in ("postgres", "postgresql"):
        return PostgresEngineRepository(database_url)
    raise ValueError(f"Unsupported database backend: {scheme or database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[DealflowConfig] = None
) -> EngineRepository:
    """Return the process-wide repository, creating it on first use.

    ``database_url`` comes from the argument, ``DEALFLOW_DATABASE_URL``,
    ``DATABASE_URL`` or the config, in that order: ``sqlite://<path>``,
    ``postgresql://...`` or nothing for in-memory storage. Passing a URL or a
    config always builds a fresh repository and makes it the shared one.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("DEALFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    repository = _from_url(database_url) if database_url else InMemoryEngineRepository()
    logger.debug(f"Using {type(repository).__name__}")
    _repository_instance = repository
    return repository


__all__ = [
    "EngineRepository",
    "InMemoryEngineRepository",
    "PostgresEngineRepository",
    "SQLiteEngineRepository",
    "get_repository",
]
