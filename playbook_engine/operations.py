"""Typed operation surface keyed by external labels.

Transport layers (HTTP, RPC, queues) map their routes to a label such as
``workflow.pause`` and hand the raw payload plus path parameters to
:meth:`OperationRegistry.dispatch`. String labels stop here; everything
past this module works with typed requests.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .engine import ExecutionEngine
from .errors import NotFoundError, ValidationError
from .models import (
    Assignee,
    EffectFilter,
    ExecutionInstance,
    Task,
    TaskQuery,
    WorkflowQuery,
)
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class StartWorkflowRequest(BaseModel):
    organization_id: str
    playbook_id: str
    initiated_by: str
    input_data: Dict[str, Any] = Field(default_factory=dict)
    version: Optional[int] = None
    skip_validation: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PauseWorkflowRequest(BaseModel):
    organization_id: str
    execution_id: str
    reason: str
    paused_by: str


class ResumeWorkflowRequest(BaseModel):
    organization_id: str
    execution_id: str
    resumed_by: str
    notes: Optional[str] = None


class CancelWorkflowRequest(BaseModel):
    organization_id: str
    execution_id: str
    reason: str
    cancelled_by: str


class ReassignWorkflowRequest(BaseModel):
    organization_id: str
    execution_id: str
    owner_team: Optional[str] = None
    owner_user_id: Optional[str] = None
    reassigned_by: str
    reason: Optional[str] = None
    step_or_task_id: Optional[str] = None

    @model_validator(mode="after")
    def _one_owner(self) -> "ReassignWorkflowRequest":
        if bool(self.owner_team) == bool(self.owner_user_id):
            raise ValueError("provide exactly one of owner_team or owner_user_id")
        return self

    def assignee(self) -> Assignee:
        return Assignee(role=self.owner_team, user_id=self.owner_user_id)


class RetryEffectsRequest(BaseModel):
    organization_id: str
    execution_id: str
    step_id: str
    effect_filter: EffectFilter = Field(default_factory=EffectFilter)
    force_retry: bool = False
    retried_by: str


class SLARecalcRequest(BaseModel):
    organization_id: str
    execution_id: str
    sla_override_hours: float = Field(gt=0)
    recalc_reason: str
    recalc_by: str
    allow_past: bool = False


class ReassignTaskRequest(BaseModel):
    organization_id: str
    task_id: str
    assignee_role: Optional[str] = None
    assignee_user_id: Optional[str] = None
    reassigned_by: str
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _one_assignee(self) -> "ReassignTaskRequest":
        if bool(self.assignee_role) == bool(self.assignee_user_id):
            raise ValueError("provide exactly one of assignee_role or assignee_user_id")
        return self

    def assignee(self) -> Assignee:
        return Assignee(role=self.assignee_role, user_id=self.assignee_user_id)


class CompleteTaskRequest(BaseModel):
    organization_id: str
    task_id: str
    completed_by: str
    output: Dict[str, Any] = Field(default_factory=dict)


class ListWorkflowsRequest(WorkflowQuery):
    organization_id: str


class GetWorkflowRequest(BaseModel):
    organization_id: str
    execution_id: str
    include_steps: bool = True
    include_tasks: bool = True
    include_timers: bool = False
    steps_limit: Optional[int] = Field(default=None, ge=1)


class ListTasksRequest(TaskQuery):
    organization_id: str


class SweepRequest(BaseModel):
    dry_run: bool = False
    max_instances_per_run: Optional[int] = Field(default=None, ge=1)


class ExecutionList(BaseModel):
    items: List[ExecutionInstance] = Field(default_factory=list)


class TaskList(BaseModel):
    items: List[Task] = Field(default_factory=list)


Handler = Callable[[Any], Awaitable[BaseModel]]


class OperationRegistry:
    """Maps operation labels to a request model and an engine call."""

    def __init__(
        self, engine: ExecutionEngine, scheduler: Optional[Scheduler] = None
    ) -> None:
        self.engine = engine
        self.scheduler = scheduler or Scheduler(engine)
        self._operations: Dict[str, Tuple[Type[BaseModel], Handler]] = {}
        self._register_defaults()

    def register(self, label: str, request_model: Type[BaseModel], handler: Handler) -> None:
        self._operations[label] = (request_model, handler)

    def labels(self) -> List[str]:
        return sorted(self._operations)

    async def dispatch(
        self,
        label: str,
        payload: Optional[Dict[str, Any]] = None,
        path_params: Optional[Dict[str, Any]] = None,
    ) -> BaseModel:
        """Validate ``payload`` for ``label`` and run the operation.

        Path parameters win over payload fields of the same name.
        """
        if label not in self._operations:
            raise NotFoundError("Operation", label)
        request_model, handler = self._operations[label]
        data = {**(payload or {}), **(path_params or {})}
        try:
            request = request_model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid request for {label}: {e.error_count()} error(s)",
                errors=[
                    {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
                organization_id=data.get("organization_id"),
                execution_id=data.get("execution_id"),
            ) from e
        logger.debug(f"Dispatching operation {label}")
        return await handler(request)

    def _register_defaults(self) -> None:
        engine = self.engine

        async def start(req: StartWorkflowRequest) -> BaseModel:
            return await engine.start(
                req.organization_id,
                req.playbook_id,
                req.input_data,
                req.initiated_by,
                version=req.version,
                skip_validation=req.skip_validation,
                metadata=req.metadata,
            )

        async def pause(req: PauseWorkflowRequest) -> BaseModel:
            return await engine.pause(
                req.organization_id, req.execution_id, req.reason, req.paused_by
            )

        async def resume(req: ResumeWorkflowRequest) -> BaseModel:
            return await engine.resume(
                req.organization_id, req.execution_id, req.resumed_by, req.notes
            )

        async def cancel(req: CancelWorkflowRequest) -> BaseModel:
            return await engine.cancel(
                req.organization_id, req.execution_id, req.reason, req.cancelled_by
            )

        async def reassign(req: ReassignWorkflowRequest) -> BaseModel:
            return await engine.reassign(
                req.organization_id,
                req.execution_id,
                req.assignee(),
                req.reassigned_by,
                req.reason,
                req.step_or_task_id,
            )

        async def retry_effects(req: RetryEffectsRequest) -> BaseModel:
            return await engine.retry_effects(
                req.organization_id,
                req.execution_id,
                req.step_id,
                req.effect_filter,
                req.force_retry,
                req.retried_by,
            )

        async def sla_recalc(req: SLARecalcRequest) -> BaseModel:
            return await engine.recalculate_sla(
                req.organization_id,
                req.execution_id,
                req.sla_override_hours,
                req.recalc_reason,
                req.recalc_by,
                req.allow_past,
            )

        async def list_workflows(req: ListWorkflowsRequest) -> BaseModel:
            query = WorkflowQuery.model_validate(
                req.model_dump(exclude={"organization_id"})
            )
            return ExecutionList(items=await engine.list_executions(req.organization_id, query))

        async def get_workflow(req: GetWorkflowRequest) -> BaseModel:
            return await engine.get_execution(
                req.organization_id,
                req.execution_id,
                include_steps=req.include_steps,
                include_tasks=req.include_tasks,
                include_timers=req.include_timers,
                steps_limit=req.steps_limit,
            )

        async def reassign_task(req: ReassignTaskRequest) -> BaseModel:
            return await engine.reassign_task(
                req.organization_id,
                req.task_id,
                req.assignee(),
                req.reassigned_by,
                req.reason,
            )

        async def complete_task(req: CompleteTaskRequest) -> BaseModel:
            return await engine.complete_task(
                req.organization_id, req.task_id, req.completed_by, req.output
            )

        async def list_tasks(req: ListTasksRequest) -> BaseModel:
            query = TaskQuery.model_validate(req.model_dump(exclude={"organization_id"}))
            return TaskList(items=await engine.list_tasks(req.organization_id, query))

        async def sweep(req: SweepRequest) -> BaseModel:
            return await self.scheduler.run_sweep(
                dry_run=req.dry_run, max_instances_per_run=req.max_instances_per_run
            )

        self.register("workflow.start", StartWorkflowRequest, start)
        self.register("workflow.pause", PauseWorkflowRequest, pause)
        self.register("workflow.resume", ResumeWorkflowRequest, resume)
        self.register("workflow.cancel", CancelWorkflowRequest, cancel)
        self.register("workflow.reassign", ReassignWorkflowRequest, reassign)
        self.register("workflow.retry_effects", RetryEffectsRequest, retry_effects)
        self.register("workflow.sla_recalc", SLARecalcRequest, sla_recalc)
        self.register("workflow.list", ListWorkflowsRequest, list_workflows)
        self.register("workflow.get", GetWorkflowRequest, get_workflow)
        self.register("task.reassign", ReassignTaskRequest, reassign_task)
        self.register("task.complete", CompleteTaskRequest, complete_task)
        self.register("task.list", ListTasksRequest, list_tasks)
        self.register("scheduler.sweep", SweepRequest, sweep)
