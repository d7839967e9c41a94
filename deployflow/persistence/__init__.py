"""Persistence layer for deployflow workflow records."""

from __future__ import annotations

import os
from typing import Optional

from ..catalog import DEFAULT_STEP_CATALOG, StepCatalog
from ..config import DeployflowConfig, load_config
from .backends import InMemoryBackend, KeyValueBackend, SQLiteBackend
from .store import WorkflowStore

_store_instance: WorkflowStore | None = None


def create_backend(url: Optional[str]) -> KeyValueBackend:
    """Build the key-value backend described by ``url``."""
    if not url or url.startswith("memory://"):
        return InMemoryBackend()
    if url.startswith("sqlite://"):
        path = url.replace("sqlite://", "", 1)
        return SQLiteBackend(path)
    if url.startswith("redis://") or url.startswith("rediss://"):
        from .backends.redis import RedisBackend

        return RedisBackend(url=url)
    raise ValueError(f"Unsupported store backend: {url}")


def get_store(
    url: Optional[str] = None,
    config: Optional[DeployflowConfig] = None,
    catalog: StepCatalog = DEFAULT_STEP_CATALOG,
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected from ``url`` which can be provided explicitly,
    via the ``DEPLOYFLOW_STORE_URL`` environment variable, or from loaded
    configuration. When nothing is configured an in-memory store is returned.
    The default instance is cached for the life of the process.
    """

    global _store_instance
    if _store_instance is not None and url is None and config is None:
        return _store_instance

    config = config or load_config()
    url = url or os.getenv("DEPLOYFLOW_STORE_URL") or config.store.url

    _store_instance = WorkflowStore(
        create_backend(url),
        catalog=catalog,
        ttl_seconds=config.store.ttl_seconds,
        key_prefix=config.store.key_prefix,
        max_attempts=config.store.max_attempts,
    )
    return _store_instance


__all__ = [
    "InMemoryBackend",
    "KeyValueBackend",
    "SQLiteBackend",
    "WorkflowStore",
    "create_backend",
    "get_store",
]
