"""Task manager: human work generated by task steps."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .errors import InvalidStateTransition, NotFoundError, ValidationError
from .models import (
    Assignee,
    ExecutionInstance,
    StepDefinition,
    StepInstance,
    Task,
    TaskQuery,
    TaskReassignment,
    TaskState,
)
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


class TaskManager:
    """Creates, reassigns and completes tasks.

    A task always has exactly one assignee, either a role or a user.
    Reassignment replaces it entirely and is audit-logged.
    """

    def __init__(
        self, repository: ExecutionRepository, clock: Callable[[], datetime]
    ) -> None:
        self._repository = repository
        self._clock = clock

    async def create_task(
        self,
        instance: ExecutionInstance,
        step_instance: StepInstance,
        step: StepDefinition,
    ) -> Task:
        if step.assignee is None:
            raise ValidationError(
                f"Task step '{step.id}' has no assignee",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        now = self._clock()
        task = Task(
            organization_id=instance.organization_id,
            instance_id=instance.execution_id,
            step_id=step.id,
            step_instance_id=step_instance.step_instance_id,
            title=step.name or step.id,
            assignee=step.assignee.model_copy(),
            priority=step.priority,
            due_at=step_instance.due_at,
            created_at=now,
            updated_at=now,
        )
        await self._repository.create_task(task)
        logger.info(
            f"Created task {task.task_id} for step {step.id} assigned to {task.assignee} "
            f"(execution_id={instance.execution_id})"
        )
        return task

    async def get_task(self, organization_id: str, task_id: str) -> Task:
        task = await self._repository.get_task(organization_id, task_id)
        if task is None:
            raise NotFoundError("Task", task_id, organization_id=organization_id)
        return task

    async def current_task(
        self, organization_id: str, instance_id: str, step_instance_id: str
    ) -> Optional[Task]:
        """The open task of a step instance, if there is one."""
        tasks = await self._repository.list_tasks(
            organization_id, TaskQuery(instance_id=instance_id, limit=500), self._clock()
        )
        return next(
            (
                t
                for t in tasks
                if t.step_instance_id == step_instance_id and t.state.is_open
            ),
            None,
        )

    def _require_open(self, task: Task, operation: str) -> None:
        if not task.state.is_open:
            raise InvalidStateTransition(
                operation,
                task.state.value,
                organization_id=task.organization_id,
                execution_id=task.instance_id,
                resource_id=task.task_id,
            )

    async def start_task(self, organization_id: str, task_id: str, user_id: str) -> Task:
        """Move an open task to ``in_progress`` for ``user_id``."""
        task = await self.get_task(organization_id, task_id)
        if task.state != TaskState.OPEN:
            raise InvalidStateTransition(
                "start task", task.state.value, resource_id=task_id
            )
        task.state = TaskState.IN_PROGRESS
        task.updated_at = self._clock()
        return await self._repository.update_task(task, task.version)

    async def reassign_task(
        self,
        organization_id: str,
        task_id: str,
        new_assignee: Assignee,
        reassigned_by: str,
        reason: Optional[str] = None,
    ) -> Task:
        task = await self.get_task(organization_id, task_id)
        self._require_open(task, "reassign task")

        old_assignee = task.assignee
        task.assignee = new_assignee.model_copy()
        task.updated_at = self._clock()
        updated = await self._repository.update_task(task, task.version)
        await self._repository.append_reassignment(
            TaskReassignment(
                organization_id=organization_id,
                task_id=task_id,
                instance_id=task.instance_id,
                old_assignee=old_assignee,
                new_assignee=new_assignee,
                reassigned_by=reassigned_by,
                reason=reason,
                at=task.updated_at,
            )
        )
        logger.info(
            f"Reassigned task {task_id} from {old_assignee} to {new_assignee} "
            f"by {reassigned_by}: {reason}"
        )
        return updated

    async def complete_task(
        self,
        organization_id: str,
        task_id: str,
        completed_by: str,
        output: Optional[Dict[str, Any]] = None,
    ) -> Task:
        task = await self.get_task(organization_id, task_id)
        self._require_open(task, "complete task")
        now = self._clock()
        task.state = TaskState.DONE
        task.output = output or {}
        task.completed_at = now
        task.completed_by = completed_by
        task.updated_at = now
        updated = await self._repository.update_task(task, task.version)
        logger.info(f"Task {task_id} completed by {completed_by}")
        return updated

    async def cancel_open_tasks(self, organization_id: str, instance_id: str) -> int:
        tasks = await self._repository.list_tasks(
            organization_id, TaskQuery(instance_id=instance_id, limit=500), self._clock()
        )
        cancelled = 0
        for task in tasks:
            if not task.state.is_open:
                continue
            task.state = TaskState.CANCELLED
            task.updated_at = self._clock()
            await self._repository.update_task(task, task.version)
            cancelled += 1
        return cancelled

    async def list_tasks(self, organization_id: str, query: TaskQuery) -> list[Task]:
        return await self._repository.list_tasks(organization_id, query, self._clock())
