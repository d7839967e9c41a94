from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_WRITE_ATTEMPTS,
    RESULTS_TOPIC,
    WORKFLOW_KEY_PREFIX,
    WORKFLOW_TTL_SECONDS,
)


class RedisConfig(BaseModel):
    """Redis connection used when the transport backend is ``redis``."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None


class TransportConfig(BaseModel):
    """Broker that carries tasks and step events."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class StoreConfig(BaseModel):
    """Workflow store settings.

    ``url`` selects the backend: empty or ``memory://`` for in-process
    storage, ``sqlite:///abs/path.db`` (``sqlite://rel.db`` for a relative
    path) or ``redis://host:port/db``.
    """

    url: Optional[str] = None
    ttl_seconds: int = Field(default=WORKFLOW_TTL_SECONDS, gt=0)
    key_prefix: str = WORKFLOW_KEY_PREFIX
    max_attempts: int = Field(default=DEFAULT_MAX_WRITE_ATTEMPTS, ge=1)


class DeployflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    store: StoreConfig = StoreConfig()
    results_topic: str = RESULTS_TOPIC


def load_config(path: Optional[str] = None) -> DeployflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DEPLOYFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DEPLOYFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DeployflowConfig(**data)
    else:
        config = DeployflowConfig()

    env_store_url = os.getenv("DEPLOYFLOW_STORE_URL")
    if env_store_url:
        config.store.url = env_store_url
    env_transport = os.getenv("DEPLOYFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
