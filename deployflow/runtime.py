"""Process wiring: build an orchestrator from configuration."""

from __future__ import annotations

from typing import Optional

from .catalog import DEFAULT_STEP_CATALOG
from .config import DeployflowConfig, load_config
from .dispatch import TaskDispatcher
from .orchestrator import WorkflowOrchestrator
from .persistence import get_store
from .transports import BaseTransport, get_transport

_orchestrator_instance: WorkflowOrchestrator | None = None
_transport_instance: BaseTransport | None = None


def get_runtime_transport(config: Optional[DeployflowConfig] = None) -> BaseTransport:
    """Transport shared by the orchestrator, workers and result consumer."""
    global _transport_instance
    if _transport_instance is None or config is not None:
        _transport_instance = get_transport(config=config or load_config())
    return _transport_instance


def get_orchestrator(config: Optional[DeployflowConfig] = None) -> WorkflowOrchestrator:
    """Return the process-wide orchestrator, building it on first use."""
    global _orchestrator_instance
    if _orchestrator_instance is not None and config is None:
        return _orchestrator_instance

    config = config or load_config()
    transport = get_runtime_transport(config)
    store = get_store(config=config, catalog=DEFAULT_STEP_CATALOG)
    dispatcher = TaskDispatcher(transport, known_tasks=DEFAULT_STEP_CATALOG.task_names)
    _orchestrator_instance = WorkflowOrchestrator(store, dispatcher, DEFAULT_STEP_CATALOG)
    return _orchestrator_instance


def reset() -> None:
    """Forget cached instances (tests, reconfiguration)."""
    global _orchestrator_instance, _transport_instance
    _orchestrator_instance = None
    _transport_instance = None
