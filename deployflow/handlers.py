"""Step handler registry.

Handlers are plain callables (sync or async) taking
``(workflow_id, target_resource_id, config, step_index)`` and returning a
short result string; raising marks the attempt as failed. The handlers bound
here only simulate the provisioning work and log what they would do, so a
pipeline can be exercised end to end without touching real servers.
Deployments register their own implementations with
:func:`register_handler`, which replaces the simulated one.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict

from .execute import StepHandler

logger = logging.getLogger(__name__)

HANDLERS: Dict[str, StepHandler] = {}


def register_handler(task_name: str) -> Callable[[StepHandler], StepHandler]:
    """Decorator binding ``task_name`` to the decorated handler."""

    def decorator(fn: StepHandler) -> StepHandler:
        HANDLERS[task_name] = fn
        return fn

    return decorator


def get_handler(task_name: str) -> StepHandler:
    try:
        return HANDLERS[task_name]
    except KeyError:
        raise KeyError(f"No handler registered for task {task_name}") from None


@register_handler("reinstall_os")
def reinstall_os(workflow_id: str, target: str, config: str, step_index: int) -> str:
    logger.info(f"[{workflow_id}] reinstalling {config} on {target}")
    return f"{config} reinstalled on {target}"


@register_handler("install_base_env")
def install_base_env(workflow_id: str, target: str, config: str, step_index: int) -> str:
    logger.info(f"[{workflow_id}] installing base environment on {target}")
    return f"base environment installed on {target}"


@register_handler("install_docker_env")
def install_docker_env(workflow_id: str, target: str, config: str, step_index: int) -> str:
    logger.info(f"[{workflow_id}] installing docker on {target}")
    return f"docker installed on {target}"


@register_handler("configure_network")
def configure_network(workflow_id: str, target: str, config: str, step_index: int) -> str:
    logger.info(f"[{workflow_id}] configuring network on {target}")
    return f"network configured on {target}"


@register_handler("register_to_inventory")
def register_to_inventory(
    workflow_id: str, target: str, config: str, step_index: int
) -> str:
    logger.info(f"[{workflow_id}] registering {target} to inventory")
    return f"{target} registered to inventory"
