"""Durable workflow record store on top of a key-value backend."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from pydantic import ValidationError

from ..catalog import DEFAULT_STEP_CATALOG, StepCatalog
from ..constants import (
    DEFAULT_MAX_WRITE_ATTEMPTS,
    WORKFLOW_KEY_PREFIX,
    WORKFLOW_TTL_SECONDS,
)
from ..contracts import StepStatus, WorkflowRecord
from ..errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    PersistenceError,
    SerializationError,
    WorkflowNotFoundError,
)
from .backends import KeyValueBackend

logger = logging.getLogger(__name__)

Mutator = Callable[[WorkflowRecord], None]


class WorkflowStore:
    """CRUD over :class:`WorkflowRecord` objects keyed by workflow id.

    Every mutating call is a read-modify-write closed by a compare-and-swap
    on the stored JSON. When another writer got there first the record is
    re-read and the mutation re-applied, so concurrent callbacks for the same
    workflow never drop each other's updates.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        catalog: StepCatalog = DEFAULT_STEP_CATALOG,
        ttl_seconds: int = WORKFLOW_TTL_SECONDS,
        key_prefix: str = WORKFLOW_KEY_PREFIX,
        max_attempts: int = DEFAULT_MAX_WRITE_ATTEMPTS,
    ) -> None:
        self._backend = backend
        self._catalog = catalog
        self._ttl = ttl_seconds
        self._prefix = key_prefix
        self._max_attempts = max(1, max_attempts)

    @property
    def backend(self) -> KeyValueBackend:
        return self._backend

    @property
    def catalog(self) -> StepCatalog:
        return self._catalog

    # ------------------------------------------------------------------
    # Encoding
    def _key(self, workflow_id: str) -> str:
        return f"{self._prefix}{workflow_id}"

    @staticmethod
    def _encode(record: WorkflowRecord) -> str:
        try:
            return record.model_dump_json()
        except (ValueError, TypeError) as exc:
            raise SerializationError(
                f"Cannot serialize workflow {record.workflow_id}: {exc}"
            ) from exc

    @staticmethod
    def _decode(raw: str) -> WorkflowRecord:
        try:
            return WorkflowRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise SerializationError(f"Corrupt workflow record: {exc}") from exc

    async def _load(self, workflow_id: str) -> tuple[str, WorkflowRecord]:
        raw = await self._backend.get(self._key(workflow_id))
        if raw is None:
            raise WorkflowNotFoundError(workflow_id)
        return raw, self._decode(raw)

    @staticmethod
    def _check_identity(before: WorkflowRecord, after: WorkflowRecord) -> None:
        if after.workflow_id != before.workflow_id:
            raise InvalidTransitionError("workflow_id cannot change")
        if after.total_steps != before.total_steps:
            raise InvalidTransitionError("total_steps cannot change")
        if len(after.step_results) != after.total_steps:
            raise InvalidTransitionError(
                f"Workflow {after.workflow_id} must keep {after.total_steps} step results"
            )
        if not 0 <= after.current_step <= after.total_steps:
            raise InvalidTransitionError(
                f"current_step {after.current_step} outside [0, {after.total_steps}]"
            )

    # ------------------------------------------------------------------
    # Store API
    async def create(self, target_resource_id: str, config: str) -> WorkflowRecord:
        """Persist a brand-new record with every step pending."""
        record = WorkflowRecord.new(target_resource_id, config, self._catalog)
        record.touch()
        created = await self._backend.compare_and_swap(
            self._key(record.workflow_id), None, self._encode(record), self._ttl
        )
        if not created:
            raise PersistenceError(f"Workflow id collision: {record.workflow_id}")
        logger.info(
            f"Created workflow {record.workflow_id} for {target_resource_id} "
            f"({config}, {record.total_steps} steps)"
        )
        return record

    async def get(self, workflow_id: str) -> WorkflowRecord:
        """Return the live record or raise :class:`WorkflowNotFoundError`."""
        _, record = await self._load(workflow_id)
        return record

    async def save(self, record: WorkflowRecord) -> WorkflowRecord:
        """Persist the full record if nobody wrote it since it was loaded.

        Stamps ``updated_at``, bumps ``version`` and refreshes the TTL. Raises
        :class:`ConcurrentUpdateError` when the stored version moved on; the
        caller is expected to re-read and re-apply its change.
        """
        raw, stored = await self._load(record.workflow_id)
        if stored.version != record.version:
            raise ConcurrentUpdateError(
                f"Workflow {record.workflow_id} is at version {stored.version}, "
                f"save was based on {record.version}"
            )
        candidate = record.model_copy(deep=True)
        self._check_identity(stored, candidate)
        candidate.touch()
        swapped = await self._backend.compare_and_swap(
            self._key(record.workflow_id), raw, self._encode(candidate), self._ttl
        )
        if not swapped:
            raise ConcurrentUpdateError(
                f"Workflow {record.workflow_id} changed while saving"
            )
        record.updated_at = candidate.updated_at
        record.version = candidate.version
        return record

    async def update(self, workflow_id: str, mutator: Mutator) -> WorkflowRecord:
        """Apply ``mutator`` to the record as one logical transaction.

        ``mutator`` may run more than once and must only touch the record it is
        given. If it raises, nothing is written and the exception propagates.
        """
        key = self._key(workflow_id)
        for attempt in range(1, self._max_attempts + 1):
            raw, record = await self._load(workflow_id)
            before = record.model_copy(deep=True)
            mutator(record)
            self._check_identity(before, record)
            record.touch()
            if await self._backend.compare_and_swap(
                key, raw, self._encode(record), self._ttl
            ):
                return record
            logger.debug(
                f"Write conflict on workflow {workflow_id} (attempt {attempt}/{self._max_attempts}), retrying"
            )
        logger.warning(
            f"Giving up on workflow {workflow_id} after {self._max_attempts} conflicting writes"
        )
        raise ConcurrentUpdateError(
            f"Workflow {workflow_id} kept changing during update"
        )

    async def update_step_status(
        self,
        workflow_id: str,
        step_index: int,
        status: StepStatus,
        correlation_id: Optional[str] = None,
    ) -> WorkflowRecord:
        """Set one step's status and correlation id.

        Moving a step to running also marks the workflow running and makes that
        step the current one.
        """

        def apply(record: WorkflowRecord) -> None:
            record.set_step_status(step_index, status, correlation_id)

        return await self.update(workflow_id, apply)

    async def complete_step(
        self, workflow_id: str, step_index: int, result: Optional[str]
    ) -> WorkflowRecord:
        def apply(record: WorkflowRecord) -> None:
            record.mark_step_completed(step_index, result)

        return await self.update(workflow_id, apply)

    async def fail_step(
        self, workflow_id: str, step_index: int, error: str
    ) -> WorkflowRecord:
        def apply(record: WorkflowRecord) -> None:
            record.mark_step_failed(step_index, error)

        return await self.update(workflow_id, apply)

    async def delete(self, workflow_id: str) -> None:
        if not await self._backend.delete(self._key(workflow_id)):
            raise WorkflowNotFoundError(workflow_id)

    async def list_workflows(self) -> list[WorkflowRecord]:
        """All live records, most recently created first."""
        records = []
        for key in await self._backend.scan(self._prefix):
            raw = await self._backend.get(key)
            if raw is None:
                continue
            records.append(self._decode(raw))
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def close(self) -> None:
        await self._backend.close()
