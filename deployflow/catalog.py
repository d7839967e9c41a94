"""Static, ordered catalog of deployment steps."""

from __future__ import annotations

from typing import Iterator, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidIndexError


class StepDefinition(BaseModel):
    """One entry of the pipeline: what runs, under which task name, how often."""

    model_config = ConfigDict(frozen=True)

    name: str
    task_name: str
    retry_budget: int = Field(default=0, ge=0)
    description: str = ""


class StepCatalog:
    """Immutable ordered sequence of :class:`StepDefinition` objects.

    The catalog length is the ``total_steps`` of every workflow built from it.
    """

    def __init__(self, steps: Sequence[StepDefinition]) -> None:
        if not steps:
            raise ValueError("A step catalog needs at least one step")
        task_names = [step.task_name for step in steps]
        if len(set(task_names)) != len(task_names):
            raise ValueError(f"Duplicate task names in catalog: {task_names}")
        self._steps: tuple[StepDefinition, ...] = tuple(steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[StepDefinition]:
        return iter(self._steps)

    def __getitem__(self, index: int) -> StepDefinition:
        if not 0 <= index < len(self._steps):
            raise InvalidIndexError(index, len(self._steps))
        return self._steps[index]

    @property
    def task_names(self) -> list[str]:
        return [step.task_name for step in self._steps]

    def index_of(self, task_name: str) -> int:
        try:
            return self.task_names.index(task_name)
        except ValueError:
            raise KeyError(task_name) from None

    def by_task_name(self, task_name: str) -> StepDefinition:
        return self._steps[self.index_of(task_name)]

    def as_list(self) -> list[StepDefinition]:
        return list(self._steps)


DEFAULT_STEP_CATALOG = StepCatalog(
    [
        StepDefinition(
            name="Reinstall OS",
            task_name="reinstall_os",
            retry_budget=3,
            description="Reinstall the operating system on the target server",
        ),
        StepDefinition(
            name="Install base environment",
            task_name="install_base_env",
            retry_budget=3,
            description="Install base packages and system tooling",
        ),
        StepDefinition(
            name="Install Docker environment",
            task_name="install_docker_env",
            retry_budget=3,
            description="Install and start the Docker engine",
        ),
        StepDefinition(
            name="Configure network",
            task_name="configure_network",
            retry_budget=5,
            description="Apply interface, route and DNS configuration",
        ),
        StepDefinition(
            name="Register to inventory",
            task_name="register_to_inventory",
            retry_budget=5,
            description="Register the provisioned server in the inventory system",
        ),
    ]
)
