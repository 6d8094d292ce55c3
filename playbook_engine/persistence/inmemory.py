"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import ConcurrentModificationError
from ..models import (
    TERMINAL_STATUSES,
    DefinitionStatus,
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
from .repository import ExecutionRepository


def matches_workflow_query(
    instance: ExecutionInstance, query: WorkflowQuery, now: datetime
) -> bool:
    if query.definition_code and instance.playbook_id != query.definition_code:
        return False
    if query.current_state and instance.status != query.current_state:
        return False
    if query.owner_team and (instance.owner is None or instance.owner.role != query.owner_team):
        return False
    if query.owner_user_id and (
        instance.owner is None or instance.owner.user_id != query.owner_user_id
    ):
        return False
    if query.paused is not None and (instance.status == ExecutionStatus.PAUSED) != query.paused:
        return False
    if query.overdue is not None:
        overdue = (
            instance.status not in TERMINAL_STATUSES
            and instance.current_step_due_at is not None
            and instance.current_step_due_at < now
        )
        if overdue != query.overdue:
            return False
    if query.created_after and instance.started_at < query.created_after:
        return False
    if query.created_before and instance.started_at > query.created_before:
        return False
    return True


def matches_task_query(task: Task, query: TaskQuery, now: datetime) -> bool:
    if query.instance_id and task.instance_id != query.instance_id:
        return False
    if query.task_state and task.state != query.task_state:
        return False
    if query.assignee_role and task.assignee.role != query.assignee_role:
        return False
    if query.assignee_user_id and task.assignee.user_id != query.assignee_user_id:
        return False
    if query.priority and task.priority != query.priority:
        return False
    if query.overdue is not None and task.is_overdue(now) != query.overdue:
        return False
    return True


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never hold a reference to stored state, and a single lock
    makes every conditional write and timer claim atomic.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, str, int], PlaybookDefinition] = {}
        self._instances: Dict[str, ExecutionInstance] = {}
        self._step_instances: Dict[str, StepInstance] = {}
        self._tasks: Dict[str, Task] = {}
        self._reassignments: List[TaskReassignment] = []
        self._timers: Dict[str, Timer] = {}
        self._effects: Dict[str, EffectRecord] = {}
        self._history: List[StatusChange] = []
        self._sla_audit: List[SLAAuditRecord] = []
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        key = (definition.organization_id, definition.id, definition.version)
        self._definitions[key] = definition.model_copy(deep=True)

    async def get_definition(
        self, organization_id: str, playbook_id: str, version: Optional[int] = None
    ) -> PlaybookDefinition | None:
        if version is not None:
            found = self._definitions.get((organization_id, playbook_id, version))
            return found.model_copy(deep=True) if found else None
        active = [
            d
            for (org, pid, _), d in self._definitions.items()
            if org == organization_id
            and pid == playbook_id
            and d.status == DefinitionStatus.ACTIVE
        ]
        if not active:
            return None
        return max(active, key=lambda d: d.version).model_copy(deep=True)

    async def list_definitions(
        self, organization_id: str, playbook_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        found = [
            d.model_copy(deep=True)
            for (org, pid, _), d in self._definitions.items()
            if org == organization_id and (playbook_id is None or pid == playbook_id)
        ]
        return sorted(found, key=lambda d: (d.id, d.version))

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: ExecutionInstance) -> None:
        async with self._lock:
            if instance.execution_id in self._instances:
                raise ConcurrentModificationError(
                    "ExecutionInstance", instance.execution_id
                )
            self._instances[instance.execution_id] = instance.model_copy(deep=True)

    async def get_instance(
        self, organization_id: str, execution_id: str
    ) -> ExecutionInstance | None:
        found = self._instances.get(execution_id)
        if found is None or found.organization_id != organization_id:
            return None
        return found.model_copy(deep=True)

    async def update_instance(
        self, instance: ExecutionInstance, expected_version: int
    ) -> ExecutionInstance:
        async with self._lock:
            stored = self._instances.get(instance.execution_id)
            if stored is None or stored.organization_id != instance.organization_id:
                raise ConcurrentModificationError(
                    "ExecutionInstance", instance.execution_id, expected_version
                )
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    "ExecutionInstance",
                    instance.execution_id,
                    expected_version,
                    stored.version,
                )
            updated = instance.model_copy(
                deep=True,
                update={"version": expected_version + 1},
            )
            self._instances[instance.execution_id] = updated
            return updated.model_copy(deep=True)

    async def list_instances(
        self, organization_id: str, query: WorkflowQuery, now: datetime
    ) -> list[ExecutionInstance]:
        matched = [
            i
            for i in self._instances.values()
            if i.organization_id == organization_id
            and matches_workflow_query(i, query, now)
        ]
        reverse = query.sort_order == "desc"
        present = [i for i in matched if getattr(i, query.sort_by) is not None]
        missing = [i for i in matched if getattr(i, query.sort_by) is None]
        present.sort(key=lambda i: getattr(i, query.sort_by), reverse=reverse)
        ordered = present + missing
        page = ordered[query.offset : query.offset + query.limit]
        return [i.model_copy(deep=True) for i in page]

    async def create_unique_instance(
        self,
        instance: ExecutionInstance,
        since: datetime,
        statuses: Iterable[ExecutionStatus],
    ) -> ExecutionInstance | None:
        async with self._lock:
            found = self._active_duplicate(
                instance.organization_id, instance.dedup_key, since, statuses
            )
            if found is not None:
                return found.model_copy(deep=True)
            if instance.execution_id in self._instances:
                raise ConcurrentModificationError(
                    "ExecutionInstance", instance.execution_id
                )
            self._instances[instance.execution_id] = instance.model_copy(deep=True)
            return None

    def _active_duplicate(
        self,
        organization_id: str,
        dedup_key: Optional[str],
        since: datetime,
        statuses: Iterable[ExecutionStatus],
    ) -> ExecutionInstance | None:
        wanted = set(statuses)
        candidates = [
            i
            for i in self._instances.values()
            if i.organization_id == organization_id
            and i.dedup_key == dedup_key
            and i.started_at >= since
            and i.status in wanted
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda i: i.started_at)

    async def list_stale_instances(
        self,
        now: datetime,
        older_than: datetime,
        limit: int,
        organization_id: Optional[str] = None,
    ) -> list[ExecutionInstance]:
        stale = [
            i
            for i in self._instances.values()
            if i.status == ExecutionStatus.IN_PROGRESS
            and i.updated_at < older_than
            and (organization_id is None or i.organization_id == organization_id)
        ]
        stale.sort(key=lambda i: i.updated_at)
        return [i.model_copy(deep=True) for i in stale[:limit]]

    # ------------------------------------------------------------------
    # Step instances
    async def create_step_instance(self, step_instance: StepInstance) -> None:
        async with self._lock:
            if step_instance.step_instance_id in self._step_instances:
                raise ConcurrentModificationError(
                    "StepInstance", step_instance.step_instance_id
                )
            for existing in self._step_instances.values():
                if (
                    existing.instance_id == step_instance.instance_id
                    and existing.step_id == step_instance.step_id
                    and existing.status.is_open
                ):
                    raise ConcurrentModificationError(
                        "StepInstance", step_instance.step_instance_id
                    )
            self._step_instances[step_instance.step_instance_id] = (
                step_instance.model_copy(deep=True)
            )

    async def get_step_instance(
        self, organization_id: str, step_instance_id: str
    ) -> StepInstance | None:
        found = self._step_instances.get(step_instance_id)
        if found is None or found.organization_id != organization_id:
            return None
        return found.model_copy(deep=True)

    async def update_step_instance(
        self, step_instance: StepInstance, expected_version: int
    ) -> StepInstance:
        async with self._lock:
            stored = self._step_instances.get(step_instance.step_instance_id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentModificationError(
                    "StepInstance",
                    step_instance.step_instance_id,
                    expected_version,
                    stored.version if stored else None,
                )
            updated = step_instance.model_copy(
                deep=True, update={"version": expected_version + 1}
            )
            self._step_instances[step_instance.step_instance_id] = updated
            return updated.model_copy(deep=True)

    async def list_step_instances(
        self, organization_id: str, instance_id: str, limit: Optional[int] = None
    ) -> list[StepInstance]:
        found = [
            s.model_copy(deep=True)
            for s in self._step_instances.values()
            if s.organization_id == organization_id and s.instance_id == instance_id
        ]
        found.sort(key=lambda s: s.created_at)
        return found[:limit] if limit is not None else found

    # ------------------------------------------------------------------
    # Tasks
    async def create_task(self, task: Task) -> None:
        self._tasks[task.task_id] = task.model_copy(deep=True)

    async def get_task(self, organization_id: str, task_id: str) -> Task | None:
        found = self._tasks.get(task_id)
        if found is None or found.organization_id != organization_id:
            return None
        return found.model_copy(deep=True)

    async def update_task(self, task: Task, expected_version: int) -> Task:
        async with self._lock:
            stored = self._tasks.get(task.task_id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentModificationError(
                    "Task",
                    task.task_id,
                    expected_version,
                    stored.version if stored else None,
                )
            updated = task.model_copy(
                deep=True,
                update={"version": expected_version + 1},
            )
            self._tasks[task.task_id] = updated
            return updated.model_copy(deep=True)

    async def list_tasks(
        self, organization_id: str, query: TaskQuery, now: datetime
    ) -> list[Task]:
        found = [
            t
            for t in self._tasks.values()
            if t.organization_id == organization_id and matches_task_query(t, query, now)
        ]
        found.sort(key=lambda t: t.created_at)
        page = found[query.offset : query.offset + query.limit]
        return [t.model_copy(deep=True) for t in page]

    async def append_reassignment(self, record: TaskReassignment) -> None:
        self._reassignments.append(record.model_copy(deep=True))

    async def list_reassignments(
        self, organization_id: str, task_id: str
    ) -> list[TaskReassignment]:
        return [
            r.model_copy(deep=True)
            for r in self._reassignments
            if r.organization_id == organization_id and r.task_id == task_id
        ]

    # ------------------------------------------------------------------
    # Timers
    async def create_timer(self, timer: Timer) -> None:
        self._timers[timer.timer_id] = timer.model_copy(deep=True)

    async def get_timer(self, organization_id: str, timer_id: str) -> Timer | None:
        found = self._timers.get(timer_id)
        if found is None or found.organization_id != organization_id:
            return None
        return found.model_copy(deep=True)

    async def list_timers(self, organization_id: str, instance_id: str) -> list[Timer]:
        found = [
            t.model_copy(deep=True)
            for t in self._timers.values()
            if t.organization_id == organization_id and t.instance_id == instance_id
        ]
        found.sort(key=lambda t: t.fire_at)
        return found

    def _due(
        self, now: datetime, limit: int, organization_id: Optional[str]
    ) -> list[Timer]:
        due = [
            t
            for t in self._timers.values()
            if t.is_claimable(now)
            and (organization_id is None or t.organization_id == organization_id)
        ]
        due.sort(key=lambda t: t.fire_at)
        return due[:limit]

    async def claim_due_timers(
        self,
        now: datetime,
        limit: int,
        worker_id: str,
        lease_until: datetime,
        organization_id: Optional[str] = None,
    ) -> list[Timer]:
        async with self._lock:
            claimed = []
            for timer in self._due(now, limit, organization_id):
                timer.claimed_by = worker_id
                timer.claim_expires_at = lease_until
                claimed.append(timer.model_copy(deep=True))
            return claimed

    async def peek_due_timers(
        self, now: datetime, limit: int, organization_id: Optional[str] = None
    ) -> list[Timer]:
        return [t.model_copy(deep=True) for t in self._due(now, limit, organization_id)]

    async def mark_timer_fired(
        self, organization_id: str, timer_id: str, worker_id: str, now: datetime
    ) -> bool:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if (
                timer is None
                or timer.organization_id != organization_id
                or timer.fired
                or timer.claimed_by != worker_id
            ):
                return False
            timer.fired = True
            timer.fired_at = now
            return True

    async def reschedule_timer(
        self, organization_id: str, timer_id: str, fire_at: datetime
    ) -> bool:
        async with self._lock:
            timer = self._timers.get(timer_id)
            if (
                timer is None
                or timer.organization_id != organization_id
                or timer.fired
                or timer.claimed_by is not None
            ):
                return False
            timer.fire_at = fire_at
            return True

    # ------------------------------------------------------------------
    # Effects
    async def append_effect(self, effect: EffectRecord) -> None:
        self._effects[effect.effect_id] = effect.model_copy(deep=True)

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
        async with self._lock:
            effect = self._effects.get(effect_id)
            if (
                effect is None
                or effect.organization_id != organization_id
                or effect.status != EffectStatus.PENDING
            ):
                return False
            effect.status = status
            effect.error = error
            effect.retryable = retryable
            effect.output = output
            effect.settled_at = now
            return True

    async def get_effect(
        self, organization_id: str, effect_id: str
    ) -> EffectRecord | None:
        found = self._effects.get(effect_id)
        if found is None or found.organization_id != organization_id:
            return None
        return found.model_copy(deep=True)

    async def list_effects(
        self, organization_id: str, instance_id: str, step_id: Optional[str] = None
    ) -> list[EffectRecord]:
        found = [
            e.model_copy(deep=True)
            for e in self._effects.values()
            if e.organization_id == organization_id
            and e.instance_id == instance_id
            and (step_id is None or e.step_id == step_id)
        ]
        found.sort(key=lambda e: (e.created_at, e.attempt))
        return found

    # ------------------------------------------------------------------
    # Audit
    async def append_status_change(self, change: StatusChange) -> None:
        self._history.append(change.model_copy(deep=True))

    async def list_status_changes(
        self, organization_id: str, execution_id: str
    ) -> list[StatusChange]:
        return [
            c.model_copy(deep=True)
            for c in self._history
            if c.organization_id == organization_id and c.execution_id == execution_id
        ]

    async def append_sla_audit(self, record: SLAAuditRecord) -> None:
        self._sla_audit.append(record.model_copy(deep=True))

    async def list_sla_audit(
        self, organization_id: str, execution_id: str
    ) -> list[SLAAuditRecord]:
        return [
            r.model_copy(deep=True)
            for r in self._sla_audit
            if r.organization_id == organization_id and r.execution_id == execution_id
        ]
