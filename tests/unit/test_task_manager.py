"""Tests for task creation, reassignment and completion."""

import pytest

from playbook_engine.errors import InvalidStateTransition, NotFoundError, ValidationError
from playbook_engine.models import (
    Assignee,
    ExecutionInstance,
    StepDefinition,
    StepInstance,
    StepType,
    TaskPriority,
    TaskQuery,
    TaskState,
)
from playbook_engine.persistence import InMemoryExecutionRepository
from playbook_engine.tasks import TaskManager
from tests.fixtures.playbooks import ORG, FakeClock, task_step


def _instance():
    return ExecutionInstance(organization_id=ORG, playbook_id="review", playbook_version=1)


def _step_instance(instance, step_id="review"):
    return StepInstance(
        organization_id=ORG,
        instance_id=instance.execution_id,
        step_id=step_id,
        step_type=StepType.TASK,
    )


@pytest.mark.asyncio
async def test_create_task_copies_step_settings():
    clock = FakeClock()
    manager = TaskManager(InMemoryExecutionRepository(), clock)
    instance = _instance()
    step_instance = _step_instance(instance)
    step = task_step("review", role="legal", name="Legal review", priority=TaskPriority.HIGH)

    task = await manager.create_task(instance, step_instance, step)

    assert task.assignee == Assignee(role="legal")
    assert task.title == "Legal review"
    assert task.priority == TaskPriority.HIGH
    assert task.state == TaskState.OPEN
    assert task.created_at == clock.now
    current = await manager.current_task(
        ORG, instance.execution_id, step_instance.step_instance_id
    )
    assert current.task_id == task.task_id


@pytest.mark.asyncio
async def test_create_task_requires_assignee():
    manager = TaskManager(InMemoryExecutionRepository(), FakeClock())
    instance = _instance()
    step = StepDefinition(id="review", type=StepType.TASK)

    with pytest.raises(ValidationError):
        await manager.create_task(instance, _step_instance(instance), step)


@pytest.mark.asyncio
async def test_reassignment_replaces_assignee_and_is_audited():
    repository = InMemoryExecutionRepository()
    manager = TaskManager(repository, FakeClock())
    instance = _instance()
    task = await manager.create_task(instance, _step_instance(instance), task_step("review"))

    updated = await manager.reassign_task(
        ORG, task.task_id, Assignee(user_id="carol"), "bob", "on leave"
    )

    assert updated.assignee == Assignee(user_id="carol")
    assert updated.assignee.role is None
    [record] = await repository.list_reassignments(ORG, task.task_id)
    assert record.old_assignee == Assignee(role="ops")
    assert record.new_assignee == Assignee(user_id="carol")
    assert record.reassigned_by == "bob"
    assert record.reason == "on leave"


@pytest.mark.asyncio
async def test_closed_tasks_cannot_change():
    manager = TaskManager(InMemoryExecutionRepository(), FakeClock())
    instance = _instance()
    task = await manager.create_task(instance, _step_instance(instance), task_step("review"))
    await manager.complete_task(ORG, task.task_id, "alice", {"approved": True})

    with pytest.raises(InvalidStateTransition):
        await manager.complete_task(ORG, task.task_id, "alice")
    with pytest.raises(InvalidStateTransition):
        await manager.reassign_task(ORG, task.task_id, Assignee(role="ops"), "bob")


@pytest.mark.asyncio
async def test_start_then_complete_task():
    manager = TaskManager(InMemoryExecutionRepository(), FakeClock())
    instance = _instance()
    task = await manager.create_task(instance, _step_instance(instance), task_step("review"))

    started = await manager.start_task(ORG, task.task_id, "alice")
    assert started.state == TaskState.IN_PROGRESS
    with pytest.raises(InvalidStateTransition):
        await manager.start_task(ORG, task.task_id, "alice")

    done = await manager.complete_task(ORG, task.task_id, "alice", {"approved": True})
    assert done.state == TaskState.DONE
    assert done.completed_by == "alice"
    assert done.output == {"approved": True}


@pytest.mark.asyncio
async def test_cancel_open_tasks_and_overdue_listing():
    clock = FakeClock()
    manager = TaskManager(InMemoryExecutionRepository(), clock)
    instance = _instance()
    late = _step_instance(instance, "late")
    late.due_at = clock.now
    first = await manager.create_task(instance, late, task_step("late"))
    await manager.create_task(instance, _step_instance(instance, "other"), task_step("other"))
    clock.advance(minutes=1)

    overdue = await manager.list_tasks(ORG, TaskQuery(overdue=True))
    assert [t.task_id for t in overdue] == [first.task_id]

    assert await manager.cancel_open_tasks(ORG, instance.execution_id) == 2
    assert await manager.cancel_open_tasks(ORG, instance.execution_id) == 0
    cancelled = await manager.list_tasks(ORG, TaskQuery(task_state=TaskState.CANCELLED))
    assert len(cancelled) == 2


@pytest.mark.asyncio
async def test_unknown_task():
    manager = TaskManager(InMemoryExecutionRepository(), FakeClock())
    with pytest.raises(NotFoundError):
        await manager.get_task(ORG, "missing")
