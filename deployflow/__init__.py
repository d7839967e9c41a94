"""deployflow: durable, resumable provisioning pipelines."""

from .catalog import DEFAULT_STEP_CATALOG, StepCatalog, StepDefinition
from .contracts import (
    CallbackOutcome,
    StepEvent,
    StepResult,
    StepStatus,
    TaskMessage,
    WorkflowRecord,
    WorkflowStatus,
)
from .dispatch import TaskDispatcher
from .execute import ResultChannel, ResultConsumer, StepWorker
from .orchestrator import WorkflowOrchestrator
from .persistence import WorkflowStore, get_store
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "CallbackOutcome",
    "DEFAULT_STEP_CATALOG",
    "ResultChannel",
    "ResultConsumer",
    "StepCatalog",
    "StepDefinition",
    "StepEvent",
    "StepResult",
    "StepStatus",
    "StepWorker",
    "TaskDispatcher",
    "TaskMessage",
    "WorkflowOrchestrator",
    "WorkflowRecord",
    "WorkflowStatus",
    "WorkflowStore",
    "get_store",
    "get_transport",
]
