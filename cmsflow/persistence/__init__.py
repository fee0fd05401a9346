"""Persistence layer for cmsflow workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CmsFlowConfig, load_config
from .inmemory import InMemoryDocumentStore
from .repository import DocumentStore
from .sqlite import SQLiteDocumentStore
from .store import WorkflowStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresDocumentStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresDocumentStore = None  # type: ignore

_repository_instance: DocumentStore | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[CmsFlowConfig] = None
) -> DocumentStore:
    """Factory function to obtain a document store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CMSFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CMSFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryDocumentStore()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteDocumentStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresDocumentStore is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresDocumentStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    "PostgresDocumentStore",
    "WorkflowStore",
    "get_repository",
]
