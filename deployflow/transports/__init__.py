"""Transport selection.

Workers, the orchestrator and the result consumer of one deployment must
share a broker: ``inmemory`` only works inside a single process, ``redis``
across processes and hosts.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import DeployflowConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(config: DeployflowConfig) -> BaseTransport:
    from .redis import RedisTransport

    return RedisTransport.from_config(config.transport.redis)


_FACTORIES: Dict[str, Callable[[DeployflowConfig], BaseTransport]] = {
    "inmemory": lambda config: InMemoryTransport(),
    "redis": _redis_transport,
}


def get_transport(
    backend: Optional[str] = None, config: Optional[DeployflowConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, else by configuration.

    ``DEPLOYFLOW_TRANSPORT`` is already folded into the loaded configuration.
    """
    config = config or load_config()
    name = (backend or config.transport.backend).lower()
    try:
        factory = _FACTORIES[name]
    except KeyError:
        raise ValueError(f"Unsupported transport backend: {name}") from None
    return factory(config)


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
