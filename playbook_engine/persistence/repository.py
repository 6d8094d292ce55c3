"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..models import (
    EffectRecord,
    EffectStatus,
    ExecutionInstance,
    ExecutionStatus,
    PlaybookDefinition,
    SLAAuditRecord,
    StatusChange,
    StepInstance,
    Task,
    TaskQuery,
    TaskReassignment,
    Timer,
    WorkflowQuery,
)


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends.

    Every method is scoped by ``organization_id``. Methods taking an
    ``expected_version`` are conditional writes: they bump the stored
    version and raise :class:`~playbook_engine.errors.ConcurrentModificationError`
    when the stored version differs from the expected one.
    """

    # Definitions -------------------------------------------------------
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        """Insert or replace a definition version."""

    async def get_definition(
        self, organization_id: str, playbook_id: str, version: Optional[int] = None
    ) -> PlaybookDefinition | None:
        """Return an exact version, or the highest active one."""

    async def list_definitions(
        self, organization_id: str, playbook_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        """Return definitions ordered by id and version."""

    # Instances ---------------------------------------------------------
    async def create_instance(self, instance: ExecutionInstance) -> None:
        """Persist a new execution instance."""

    async def get_instance(
        self, organization_id: str, execution_id: str
    ) -> ExecutionInstance | None:
        """Retrieve an execution instance by id."""

    async def update_instance(
        self, instance: ExecutionInstance, expected_version: int
    ) -> ExecutionInstance:
        """Conditionally replace an instance; returns the stored copy."""

    async def list_instances(
        self, organization_id: str, query: WorkflowQuery, now: datetime
    ) -> list[ExecutionInstance]:
        """Filter, sort and page instances."""

    async def create_unique_instance(
        self,
        instance: ExecutionInstance,
        since: datetime,
        statuses: Iterable[ExecutionStatus],
    ) -> ExecutionInstance | None:
        """Persist ``instance`` unless an active duplicate exists.

        The duplicate check and the insert are atomic across workers. Returns
        the existing duplicate, or ``None`` when ``instance`` was created.
        """

    async def list_stale_instances(
        self,
        now: datetime,
        older_than: datetime,
        limit: int,
        organization_id: Optional[str] = None,
    ) -> list[ExecutionInstance]:
        """In-progress instances not updated since ``older_than``."""

    # Step instances ----------------------------------------------------
    async def create_step_instance(self, step_instance: StepInstance) -> None:
        """Persist a step instance; at most one may be open per step."""

    async def get_step_instance(
        self, organization_id: str, step_instance_id: str
    ) -> StepInstance | None:
        """Retrieve a step instance by id."""

    async def update_step_instance(
        self, step_instance: StepInstance, expected_version: int
    ) -> StepInstance:
        """Conditionally replace a step instance."""

    async def list_step_instances(
        self, organization_id: str, instance_id: str, limit: Optional[int] = None
    ) -> list[StepInstance]:
        """Step instances of an execution in creation order."""

    # Tasks -------------------------------------------------------------
    async def create_task(self, task: Task) -> None:
        """Persist a new task."""

    async def get_task(self, organization_id: str, task_id: str) -> Task | None:
        """Retrieve a task by id."""

    async def update_task(self, task: Task, expected_version: int) -> Task:
        """Conditionally replace a task."""

    async def list_tasks(
        self, organization_id: str, query: TaskQuery, now: datetime
    ) -> list[Task]:
        """Filter and page tasks."""

    async def append_reassignment(self, record: TaskReassignment) -> None:
        """Record a task reassignment."""

    async def list_reassignments(
        self, organization_id: str, task_id: str
    ) -> list[TaskReassignment]:
        """Reassignment history of a task."""

    # Timers ------------------------------------------------------------
    async def create_timer(self, timer: Timer) -> None:
        """Persist a new timer."""

    async def get_timer(self, organization_id: str, timer_id: str) -> Timer | None:
        """Retrieve a timer by id."""

    async def list_timers(self, organization_id: str, instance_id: str) -> list[Timer]:
        """Timers of an execution ordered by ``fire_at``."""

    async def claim_due_timers(
        self,
        now: datetime,
        limit: int,
        worker_id: str,
        lease_until: datetime,
        organization_id: Optional[str] = None,
    ) -> list[Timer]:
        """Atomically claim claimable timers for ``worker_id``."""

    async def peek_due_timers(
        self, now: datetime, limit: int, organization_id: Optional[str] = None
    ) -> list[Timer]:
        """Claimable timers, without claiming them."""

    async def mark_timer_fired(
        self, organization_id: str, timer_id: str, worker_id: str, now: datetime
    ) -> bool:
        """Set ``fired`` if still unfired and claimed by ``worker_id``."""

    async def reschedule_timer(
        self, organization_id: str, timer_id: str, fire_at: datetime
    ) -> bool:
        """Move an unfired, unclaimed timer."""

    # Effects -----------------------------------------------------------
    async def append_effect(self, effect: EffectRecord) -> None:
        """Record an action invocation attempt."""

    async def settle_effect(
        self,
        organization_id: str,
        effect_id: str,
        status: EffectStatus,
        now: datetime,
        error: Optional[str] = None,
        retryable: bool = True,
        output: Optional[dict] = None,
    ) -> bool:
        """Settle a pending effect once. Returns ``False`` if already settled."""

    async def get_effect(
        self, organization_id: str, effect_id: str
    ) -> EffectRecord | None:
        """Retrieve an effect record by id."""

    async def list_effects(
        self, organization_id: str, instance_id: str, step_id: Optional[str] = None
    ) -> list[EffectRecord]:
        """Effect records of an execution in creation order."""

    # Audit -------------------------------------------------------------
    async def append_status_change(self, change: StatusChange) -> None:
        """Record an execution history event."""

    async def list_status_changes(
        self, organization_id: str, execution_id: str
    ) -> list[StatusChange]:
        """History of an execution in order."""

    async def append_sla_audit(self, record: SLAAuditRecord) -> None:
        """Record an SLA recalculation."""

    async def list_sla_audit(
        self, organization_id: str, execution_id: str
    ) -> list[SLAAuditRecord]:
        """SLA recalculations of an execution in order."""

    async def close(self) -> None:
        """Release connections held by the backend."""
