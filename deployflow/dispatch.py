"""Task dispatcher for deployflow."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable, List, Optional

from .contracts import TaskMessage
from .errors import DispatchError
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """Hands named units of work to out-of-process workers.

    Each task name is a topic on ``transport``; execution happens wherever a
    :class:`~deployflow.execute.StepWorker` listens on it. Submission is
    fire-and-forget and returns the correlation id of the attempt.
    """

    def __init__(
        self, transport: BaseTransport, known_tasks: Optional[Iterable[str]] = None
    ) -> None:
        self._transport = transport
        self._known_tasks = set(known_tasks) if known_tasks is not None else None

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    async def submit(
        self,
        task_name: str,
        args: List[Any],
        retry_budget: int = 0,
        task_id: Optional[str] = None,
    ) -> str:
        """Publish ``task_name`` with ``args`` for execution.

        Args:
            task_name: Registered task to run; also the topic it is published on.
            args: Positional arguments for the step handler.
            retry_budget: Extra attempts the worker may make before reporting failure.
            task_id: Optional correlation id to use instead of a generated one.

        Returns:
            Correlation identifier of this dispatch attempt.

        Raises:
            DispatchError: If the task is unknown or could not be published.
        """
        if self._known_tasks is not None and task_name not in self._known_tasks:
            raise DispatchError(f"Unknown task: {task_name}")

        message = TaskMessage(
            task_id=task_id or str(uuid.uuid4()),
            task_name=task_name,
            args=list(args),
            retry_budget=retry_budget,
        )
        try:
            await self._transport.publish(task_name, message)
        except Exception as e:
            logger.error(f"Failed to submit {task_name} (task_id={message.task_id}): {e}")
            raise DispatchError(f"Failed to submit {task_name}: {e}") from e

        logger.info(f"Submitted {task_name} task_id={message.task_id} args={message.args}")
        return message.task_id
