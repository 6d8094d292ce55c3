"""SQL implementation of the execution repository (SQLite or PostgreSQL)."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from ..db import (
    Database,
    DedupClaimRow,
    DefinitionRow,
    EffectRow,
    InstanceRow,
    SLAAuditRow,
    StatusChangeRow,
    StepInstanceRow,
    TaskReassignmentRow,
    TaskRow,
    TimerRow,
)
from ..errors import ConcurrentModificationError
from ..models import (
    Assignee,
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
    TaskState,
    Timer,
    WorkflowQuery,
)
from .repository import ExecutionRepository

_TERMINAL = [
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
]
_OPEN_TASK_STATES = [TaskState.OPEN.value, TaskState.IN_PROGRESS.value]
# Rounds of the duplicate-start claim before a start gives up to the caller.
_DEDUP_CLAIM_ATTEMPTS = 5


def _dump(model: BaseModel, exclude: Optional[set] = None) -> dict[str, Any]:
    """Column values for ``model`` with enums flattened to their values."""
    values = model.model_dump(exclude=exclude)
    return {k: v.value if isinstance(v, Enum) else v for k, v in values.items()}


def _row_dict(row: Any) -> dict[str, Any]:
    return row.model_dump()


# ----------------------------------------------------------------------
# Row conversions


def _definition_values(definition: PlaybookDefinition) -> dict[str, Any]:
    values = _dump(definition, exclude={"steps"})
    values["steps"] = [s.model_dump(mode="json") for s in definition.steps]
    return values


def _instance_values(instance: ExecutionInstance) -> dict[str, Any]:
    values = _dump(instance, exclude={"owner", "metadata"})
    values["owner_role"] = instance.owner.role if instance.owner else None
    values["owner_user_id"] = instance.owner.user_id if instance.owner else None
    values["extra_metadata"] = instance.metadata
    return values


def _instance_from_row(row: InstanceRow) -> ExecutionInstance:
    data = _row_dict(row)
    role = data.pop("owner_role")
    user_id = data.pop("owner_user_id")
    data["metadata"] = data.pop("extra_metadata") or {}
    data["owner"] = Assignee(role=role, user_id=user_id) if (role or user_id) else None
    return ExecutionInstance.model_validate(data)


def _task_values(task: Task) -> dict[str, Any]:
    values = _dump(task, exclude={"assignee"})
    values["assignee_role"] = task.assignee.role
    values["assignee_user_id"] = task.assignee.user_id
    return values


def _task_from_row(row: TaskRow) -> Task:
    data = _row_dict(row)
    data["assignee"] = Assignee(
        role=data.pop("assignee_role"), user_id=data.pop("assignee_user_id")
    )
    return Task.model_validate(data)


class SQLExecutionRepository(ExecutionRepository):
    """Persist execution state through SQLModel/SQLAlchemy.

    Conditional writes are single ``UPDATE ... WHERE version = :expected``
    statements whose row count decides the winner, so no external locking is
    needed even with several engine processes sharing one database.
    """

    def __init__(self, database_url: str) -> None:
        self.db = Database(database_url)

    async def init_db(self) -> None:
        await self.db.init_db()

    async def close(self) -> None:
        await self.db.dispose()

    async def _insert(self, row: Any) -> None:
        async with self.db.session() as session:
            session.add(row)
            await session.commit()

    async def _conditional_update(
        self, statement: Any, resource_type: str, resource_id: str, expected: int
    ) -> None:
        async with self.db.session() as session:
            result = await session.execute(statement)
            await session.commit()
        if result.rowcount != 1:
            raise ConcurrentModificationError(resource_type, resource_id, expected)

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: PlaybookDefinition) -> None:
        async with self.db.session() as session:
            await session.merge(DefinitionRow(**_definition_values(definition)))
            await session.commit()

    async def get_definition(
        self, organization_id: str, playbook_id: str, version: Optional[int] = None
    ) -> PlaybookDefinition | None:
        stmt = select(DefinitionRow).where(
            DefinitionRow.organization_id == organization_id,
            DefinitionRow.id == playbook_id,
        )
        if version is not None:
            stmt = stmt.where(DefinitionRow.version == version)
        else:
            stmt = stmt.where(DefinitionRow.status == DefinitionStatus.ACTIVE.value)
        stmt = stmt.order_by(DefinitionRow.version.desc()).limit(1)
        async with self.db.session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return PlaybookDefinition.model_validate(_row_dict(row)) if row else None

    async def list_definitions(
        self, organization_id: str, playbook_id: Optional[str] = None
    ) -> list[PlaybookDefinition]:
        stmt = select(DefinitionRow).where(DefinitionRow.organization_id == organization_id)
        if playbook_id is not None:
            stmt = stmt.where(DefinitionRow.id == playbook_id)
        stmt = stmt.order_by(DefinitionRow.id, DefinitionRow.version)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [PlaybookDefinition.model_validate(_row_dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: ExecutionInstance) -> None:
        try:
            await self._insert(InstanceRow(**_instance_values(instance)))
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                "ExecutionInstance", instance.execution_id
            ) from exc

    async def get_instance(
        self, organization_id: str, execution_id: str
    ) -> ExecutionInstance | None:
        async with self.db.session() as session:
            row = await session.get(InstanceRow, execution_id)
            if row is None or row.organization_id != organization_id:
                return None
            return _instance_from_row(row)

    async def update_instance(
        self, instance: ExecutionInstance, expected_version: int
    ) -> ExecutionInstance:
        values = _instance_values(instance)
        values["version"] = expected_version + 1
        values.pop("execution_id")
        stmt = (
            update(InstanceRow)
            .where(
                InstanceRow.execution_id == instance.execution_id,
                InstanceRow.organization_id == instance.organization_id,
                InstanceRow.version == expected_version,
            )
            .values(**values)
        )
        await self._conditional_update(
            stmt, "ExecutionInstance", instance.execution_id, expected_version
        )
        return instance.model_copy(deep=True, update={"version": expected_version + 1})

    def _workflow_filters(self, query: WorkflowQuery, now: datetime) -> list[Any]:
        clauses: list[Any] = []
        if query.definition_code:
            clauses.append(InstanceRow.playbook_id == query.definition_code)
        if query.current_state:
            clauses.append(InstanceRow.status == query.current_state.value)
        if query.owner_team:
            clauses.append(InstanceRow.owner_role == query.owner_team)
        if query.owner_user_id:
            clauses.append(InstanceRow.owner_user_id == query.owner_user_id)
        if query.paused is True:
            clauses.append(InstanceRow.status == ExecutionStatus.PAUSED.value)
        elif query.paused is False:
            clauses.append(InstanceRow.status != ExecutionStatus.PAUSED.value)
        overdue = and_(
            InstanceRow.status.not_in(_TERMINAL),
            InstanceRow.current_step_due_at.is_not(None),
            InstanceRow.current_step_due_at < now,
        )
        if query.overdue is True:
            clauses.append(overdue)
        elif query.overdue is False:
            clauses.append(~overdue)
        if query.created_after:
            clauses.append(InstanceRow.started_at >= query.created_after)
        if query.created_before:
            clauses.append(InstanceRow.started_at <= query.created_before)
        return clauses

    async def list_instances(
        self, organization_id: str, query: WorkflowQuery, now: datetime
    ) -> list[ExecutionInstance]:
        column = getattr(InstanceRow, query.sort_by)
        order = column.desc() if query.sort_order == "desc" else column.asc()
        stmt = (
            select(InstanceRow)
            .where(InstanceRow.organization_id == organization_id)
            .where(*self._workflow_filters(query, now))
            .order_by(order.nulls_last())
            .offset(query.offset)
            .limit(query.limit)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_instance_from_row(r) for r in rows]

    async def create_unique_instance(
        self,
        instance: ExecutionInstance,
        since: datetime,
        statuses: Iterable[ExecutionStatus],
    ) -> ExecutionInstance | None:
        wanted = {s.value for s in statuses}
        key = (instance.organization_id, instance.dedup_key)
        for _ in range(_DEDUP_CLAIM_ATTEMPTS):
            async with self.db.session() as session:
                claim = await session.get(DedupClaimRow, key)
                if claim is None:
                    session.add(
                        DedupClaimRow(
                            organization_id=instance.organization_id,
                            dedup_key=instance.dedup_key,
                            execution_id=instance.execution_id,
                            claimed_at=instance.started_at,
                        )
                    )
                else:
                    held = await session.get(InstanceRow, claim.execution_id)
                    if (
                        held is not None
                        and held.started_at >= since
                        and held.status in wanted
                    ):
                        return _instance_from_row(held)
                    swapped = await session.execute(
                        update(DedupClaimRow)
                        .where(
                            DedupClaimRow.organization_id == instance.organization_id,
                            DedupClaimRow.dedup_key == instance.dedup_key,
                            DedupClaimRow.execution_id == claim.execution_id,
                        )
                        .values(
                            execution_id=instance.execution_id,
                            claimed_at=instance.started_at,
                        )
                    )
                    if swapped.rowcount != 1:
                        await session.rollback()
                        continue
                session.add(InstanceRow(**_instance_values(instance)))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    continue
                return None
        raise ConcurrentModificationError("ExecutionInstance", instance.execution_id)

    async def list_stale_instances(
        self,
        now: datetime,
        older_than: datetime,
        limit: int,
        organization_id: Optional[str] = None,
    ) -> list[ExecutionInstance]:
        stmt = select(InstanceRow).where(
            InstanceRow.status == ExecutionStatus.IN_PROGRESS.value,
            InstanceRow.updated_at < older_than,
        )
        if organization_id is not None:
            stmt = stmt.where(InstanceRow.organization_id == organization_id)
        stmt = stmt.order_by(InstanceRow.updated_at).limit(limit)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_instance_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Step instances
    async def create_step_instance(self, step_instance: StepInstance) -> None:
        try:
            await self._insert(StepInstanceRow(**_dump(step_instance)))
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                "StepInstance", step_instance.step_instance_id
            ) from exc

    async def get_step_instance(
        self, organization_id: str, step_instance_id: str
    ) -> StepInstance | None:
        async with self.db.session() as session:
            row = await session.get(StepInstanceRow, step_instance_id)
            if row is None or row.organization_id != organization_id:
                return None
            return StepInstance.model_validate(_row_dict(row))

    async def update_step_instance(
        self, step_instance: StepInstance, expected_version: int
    ) -> StepInstance:
        values = _dump(step_instance, exclude={"step_instance_id"})
        values["version"] = expected_version + 1
        stmt = (
            update(StepInstanceRow)
            .where(
                StepInstanceRow.step_instance_id == step_instance.step_instance_id,
                StepInstanceRow.version == expected_version,
            )
            .values(**values)
        )
        await self._conditional_update(
            stmt, "StepInstance", step_instance.step_instance_id, expected_version
        )
        return step_instance.model_copy(
            deep=True, update={"version": expected_version + 1}
        )

    async def list_step_instances(
        self, organization_id: str, instance_id: str, limit: Optional[int] = None
    ) -> list[StepInstance]:
        stmt = (
            select(StepInstanceRow)
            .where(
                StepInstanceRow.organization_id == organization_id,
                StepInstanceRow.instance_id == instance_id,
            )
            .order_by(StepInstanceRow.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [StepInstance.model_validate(_row_dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Tasks
    async def create_task(self, task: Task) -> None:
        await self._insert(TaskRow(**_task_values(task)))

    async def get_task(self, organization_id: str, task_id: str) -> Task | None:
        async with self.db.session() as session:
            row = await session.get(TaskRow, task_id)
            if row is None or row.organization_id != organization_id:
                return None
            return _task_from_row(row)

    async def update_task(self, task: Task, expected_version: int) -> Task:
        values = _task_values(task)
        values.pop("task_id")
        values["version"] = expected_version + 1
        stmt = (
            update(TaskRow)
            .where(
                TaskRow.task_id == task.task_id,
                TaskRow.organization_id == task.organization_id,
                TaskRow.version == expected_version,
            )
            .values(**values)
        )
        await self._conditional_update(stmt, "Task", task.task_id, expected_version)
        return task.model_copy(deep=True, update={"version": expected_version + 1})

    async def list_tasks(
        self, organization_id: str, query: TaskQuery, now: datetime
    ) -> list[Task]:
        stmt = select(TaskRow).where(TaskRow.organization_id == organization_id)
        if query.instance_id:
            stmt = stmt.where(TaskRow.instance_id == query.instance_id)
        if query.task_state:
            stmt = stmt.where(TaskRow.state == query.task_state.value)
        if query.assignee_role:
            stmt = stmt.where(TaskRow.assignee_role == query.assignee_role)
        if query.assignee_user_id:
            stmt = stmt.where(TaskRow.assignee_user_id == query.assignee_user_id)
        if query.priority:
            stmt = stmt.where(TaskRow.priority == query.priority.value)
        overdue = and_(
            TaskRow.state.in_(_OPEN_TASK_STATES),
            TaskRow.due_at.is_not(None),
            TaskRow.due_at < now,
        )
        if query.overdue is True:
            stmt = stmt.where(overdue)
        elif query.overdue is False:
            stmt = stmt.where(~overdue)
        stmt = stmt.order_by(TaskRow.created_at).offset(query.offset).limit(query.limit)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_task_from_row(r) for r in rows]

    async def append_reassignment(self, record: TaskReassignment) -> None:
        values = _dump(record, exclude={"old_assignee", "new_assignee"})
        values["old_assignee"] = record.old_assignee.model_dump()
        values["new_assignee"] = record.new_assignee.model_dump()
        await self._insert(TaskReassignmentRow(**values))

    async def list_reassignments(
        self, organization_id: str, task_id: str
    ) -> list[TaskReassignment]:
        stmt = (
            select(TaskReassignmentRow)
            .where(
                TaskReassignmentRow.organization_id == organization_id,
                TaskReassignmentRow.task_id == task_id,
            )
            .order_by(TaskReassignmentRow.id)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [
                TaskReassignment.model_validate(_row_dict(r)) for r in rows
            ]

    # ------------------------------------------------------------------
    # Timers
    async def create_timer(self, timer: Timer) -> None:
        await self._insert(TimerRow(**_dump(timer)))

    async def get_timer(self, organization_id: str, timer_id: str) -> Timer | None:
        async with self.db.session() as session:
            row = await session.get(TimerRow, timer_id)
            if row is None or row.organization_id != organization_id:
                return None
            return Timer.model_validate(_row_dict(row))

    async def list_timers(self, organization_id: str, instance_id: str) -> list[Timer]:
        stmt = (
            select(TimerRow)
            .where(
                TimerRow.organization_id == organization_id,
                TimerRow.instance_id == instance_id,
            )
            .order_by(TimerRow.fire_at)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Timer.model_validate(_row_dict(r)) for r in rows]

    @staticmethod
    def _claimable(now: datetime) -> Any:
        return and_(
            TimerRow.fired.is_(False),
            TimerRow.fire_at <= now,
            or_(TimerRow.claimed_by.is_(None), TimerRow.claim_expires_at <= now),
        )

    def _due_statement(
        self, now: datetime, limit: int, organization_id: Optional[str]
    ) -> Any:
        stmt = select(TimerRow).where(self._claimable(now))
        if organization_id is not None:
            stmt = stmt.where(TimerRow.organization_id == organization_id)
        return stmt.order_by(TimerRow.fire_at).limit(limit)

    async def claim_due_timers(
        self,
        now: datetime,
        limit: int,
        worker_id: str,
        lease_until: datetime,
        organization_id: Optional[str] = None,
    ) -> list[Timer]:
        async with self.db.session() as session:
            rows = (
                await session.execute(self._due_statement(now, limit, organization_id))
            ).scalars().all()
            candidates = [r.timer_id for r in rows]

        claimed: list[Timer] = []
        for timer_id in candidates:
            # One statement per timer: the WHERE clause re-checks claimability,
            # so a concurrent worker that got there first leaves rowcount at 0.
            stmt = (
                update(TimerRow)
                .where(TimerRow.timer_id == timer_id, self._claimable(now))
                .values(claimed_by=worker_id, claim_expires_at=lease_until)
            )
            async with self.db.session() as session:
                result = await session.execute(stmt)
                await session.commit()
                if result.rowcount != 1:
                    continue
                row = await session.get(TimerRow, timer_id)
                claimed.append(Timer.model_validate(_row_dict(row)))
        return claimed

    async def peek_due_timers(
        self, now: datetime, limit: int, organization_id: Optional[str] = None
    ) -> list[Timer]:
        async with self.db.session() as session:
            rows = (
                await session.execute(self._due_statement(now, limit, organization_id))
            ).scalars().all()
            return [Timer.model_validate(_row_dict(r)) for r in rows]

    async def mark_timer_fired(
        self, organization_id: str, timer_id: str, worker_id: str, now: datetime
    ) -> bool:
        stmt = (
            update(TimerRow)
            .where(
                TimerRow.timer_id == timer_id,
                TimerRow.organization_id == organization_id,
                TimerRow.fired.is_(False),
                TimerRow.claimed_by == worker_id,
            )
            .values(fired=True, fired_at=now)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def reschedule_timer(
        self, organization_id: str, timer_id: str, fire_at: datetime
    ) -> bool:
        stmt = (
            update(TimerRow)
            .where(
                TimerRow.timer_id == timer_id,
                TimerRow.organization_id == organization_id,
                TimerRow.fired.is_(False),
                TimerRow.claimed_by.is_(None),
            )
            .values(fire_at=fire_at)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Effects
    async def append_effect(self, effect: EffectRecord) -> None:
        await self._insert(EffectRow(**_dump(effect)))

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
        stmt = (
            update(EffectRow)
            .where(
                EffectRow.effect_id == effect_id,
                EffectRow.organization_id == organization_id,
                EffectRow.status == EffectStatus.PENDING.value,
            )
            .values(
                status=status.value,
                error=error,
                retryable=retryable,
                output=output,
                settled_at=now,
            )
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def get_effect(
        self, organization_id: str, effect_id: str
    ) -> EffectRecord | None:
        async with self.db.session() as session:
            row = await session.get(EffectRow, effect_id)
            if row is None or row.organization_id != organization_id:
                return None
            return EffectRecord.model_validate(_row_dict(row))

    async def list_effects(
        self, organization_id: str, instance_id: str, step_id: Optional[str] = None
    ) -> list[EffectRecord]:
        stmt = select(EffectRow).where(
            EffectRow.organization_id == organization_id,
            EffectRow.instance_id == instance_id,
        )
        if step_id is not None:
            stmt = stmt.where(EffectRow.step_id == step_id)
        stmt = stmt.order_by(EffectRow.created_at, EffectRow.attempt)
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [EffectRecord.model_validate(_row_dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Audit
    async def append_status_change(self, change: StatusChange) -> None:
        await self._insert(StatusChangeRow(**_dump(change)))

    async def list_status_changes(
        self, organization_id: str, execution_id: str
    ) -> list[StatusChange]:
        stmt = (
            select(StatusChangeRow)
            .where(
                StatusChangeRow.organization_id == organization_id,
                StatusChangeRow.execution_id == execution_id,
            )
            .order_by(StatusChangeRow.id)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [StatusChange.model_validate(_row_dict(r)) for r in rows]

    async def append_sla_audit(self, record: SLAAuditRecord) -> None:
        await self._insert(SLAAuditRow(**_dump(record)))

    async def list_sla_audit(
        self, organization_id: str, execution_id: str
    ) -> list[SLAAuditRecord]:
        stmt = (
            select(SLAAuditRow)
            .where(
                SLAAuditRow.organization_id == organization_id,
                SLAAuditRow.execution_id == execution_id,
            )
            .order_by(SLAAuditRow.id)
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [SLAAuditRecord.model_validate(_row_dict(r)) for r in rows]
