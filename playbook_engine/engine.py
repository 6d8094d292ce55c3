"""Execution engine: the state machine that owns every execution instance."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .actions import ActionAdapter, ActionRegistry, ActionResult
from .config import EngineConfig
from .contracts import validate_payload
from .definitions import DefinitionStore
from .errors import (
    ConcurrentModificationError,
    DefinitionError,
    DuplicateExecutionError,
    InvalidStateTransition,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from .models import (
    Assignee,
    DefinitionStatus,
    EffectFilter,
    EffectStatus,
    ExecutionDetail,
    ExecutionInstance,
    ExecutionStatus,
    PlaybookDefinition,
    RetryEffectsResult,
    SLAAuditRecord,
    StartResult,
    StatusChange,
    StepDefinition,
    StepInstance,
    StepStatus,
    StepType,
    Task,
    TaskQuery,
    Timer,
    WorkflowQuery,
    new_id,
    utcnow,
)
from .persistence import ExecutionRepository
from .runner import StepRunner
from .security import AllowAllPolicy, PolicyEngine
from .tasks import TaskManager
from .timers import TimerService, sla_status, sla_window

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on steps settled by one advance() call; a longer chain is
# picked up again by the scheduler's stale sweep.
MAX_STEPS_PER_ADVANCE = 1000


def dedup_key(
    organization_id: str,
    playbook_id: str,
    initiated_by: str,
    input_data: Dict[str, Any],
    ignore_keys: Optional[list[str]] = None,
) -> str:
    """Fingerprint of a start request, stable across key order."""
    ignored = set(ignore_keys or [])
    payload = {k: v for k, v in input_data.items() if k not in ignored}
    canonical = json.dumps(
        [organization_id, playbook_id, initiated_by, payload],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


class ExecutionEngine:
    """Runs playbook executions.

    The engine is the only writer of :class:`ExecutionInstance` records.
    Every write is conditional on the instance version and is retried from
    a fresh read when it loses a race.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        actions: Optional[ActionAdapter] = None,
        policy: Optional[PolicyEngine] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.config = config or EngineConfig()
        self.policy = policy or AllowAllPolicy()
        self._clock = clock or utcnow
        self.definitions = DefinitionStore(repository)
        self.timers = TimerService(repository, self.config.scheduler, self._clock)
        self.tasks = TaskManager(repository, self._clock)
        self.runner = StepRunner(
            repository, actions or ActionRegistry(), self.tasks, self.timers, self._clock
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Helpers

    async def _authorize(
        self, actor: str, organization_id: str, action: str, resource: str
    ) -> None:
        allowed = await self.policy.can_perform(actor, organization_id, action, resource)
        if not allowed:
            logger.warning(f"Denied {action} on {resource} for {actor}")
            raise PermissionDenied(actor, action, resource, organization_id=organization_id)

    async def _load(self, organization_id: str, execution_id: str) -> ExecutionInstance:
        instance = await self.repository.get_instance(organization_id, execution_id)
        if instance is None:
            raise NotFoundError(
                "ExecutionInstance", execution_id, organization_id=organization_id
            )
        return instance

    async def _definition_for(self, instance: ExecutionInstance) -> PlaybookDefinition:
        return await self.definitions.get_definition(
            instance.organization_id, instance.playbook_id, instance.playbook_version
        )

    def _require_live(self, instance: ExecutionInstance, operation: str) -> None:
        if instance.is_terminal:
            raise InvalidStateTransition(
                operation,
                instance.status.value,
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )

    async def _save(self, instance: ExecutionInstance) -> ExecutionInstance:
        instance.updated_at = self._clock()
        return await self.repository.update_instance(instance, instance.version)

    async def _record(
        self,
        instance: ExecutionInstance,
        event: str,
        from_status: Optional[ExecutionStatus],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        await self.repository.append_status_change(
            StatusChange(
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
                event=event,
                from_status=from_status,
                to_status=instance.status,
                step_id=instance.current_step_id,
                actor=actor,
                reason=reason,
                at=self._clock(),
            )
        )

    async def _retrying(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` again from a fresh read whenever a conditional write loses."""
        attempts = self.config.concurrency.max_conflict_retries
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except ConcurrentModificationError as e:
                if attempt >= attempts:
                    logger.warning(f"{operation} gave up after {attempts} conflicts: {e}")
                    raise
                logger.debug(f"{operation} conflict (attempt {attempt}/{attempts}): {e}")
        raise AssertionError("unreachable")

    async def _mutate(
        self,
        organization_id: str,
        execution_id: str,
        operation: str,
        fn: Callable[[ExecutionInstance], Awaitable[T]],
    ) -> T:
        """Apply ``fn`` to a freshly loaded instance with conflict retries."""

        async def attempt() -> T:
            instance = await self._load(organization_id, execution_id)
            return await fn(instance)

        return await self._retrying(operation, attempt)

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(
        self,
        organization_id: str,
        playbook_id: str,
        input_data: Dict[str, Any],
        initiated_by: str,
        *,
        version: Optional[int] = None,
        skip_validation: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        await self._authorize(initiated_by, organization_id, "workflow.start", playbook_id)
        definition = await self.definitions.get_definition(
            organization_id, playbook_id, version
        )
        if definition.status is not DefinitionStatus.ACTIVE:
            raise InvalidStateTransition(
                "start",
                definition.status.value,
                message=f"Playbook {playbook_id} v{definition.version} is {definition.status.value}",
                organization_id=organization_id,
                resource_id=playbook_id,
            )
        first = definition.first_step()
        if first is None:
            raise DefinitionError(
                f"Playbook {playbook_id} has no steps", organization_id=organization_id
            )
        if not skip_validation:
            validate_payload(
                definition.input_contract,
                input_data,
                "input_data",
                organization_id=organization_id,
                resource_id=playbook_id,
            )

        now = self._clock()
        policy = self.config.duplicates
        window = sla_window(first)
        instance = ExecutionInstance(
            organization_id=organization_id,
            playbook_id=playbook_id,
            playbook_version=definition.version,
            current_step_id=first.id,
            current_step_instance_id=new_id(),
            current_step_due_at=now + window if window else None,
            input_data=copy.deepcopy(input_data),
            context=copy.deepcopy(input_data),
            owner=first.assignee,
            dedup_key=dedup_key(
                organization_id, playbook_id, initiated_by, input_data, policy.ignore_input_keys
            ),
            initiated_by=initiated_by,
            metadata=metadata or {},
            started_at=now,
            updated_at=now,
        )
        if policy.enabled:
            existing = await self.repository.create_unique_instance(
                instance, now - timedelta(seconds=policy.window_seconds), policy.statuses
            )
            if existing is not None:
                logger.info(
                    f"Duplicate start of {playbook_id} by {initiated_by}; "
                    f"existing execution_id={existing.execution_id}"
                )
                raise DuplicateExecutionError(
                    existing.execution_id, organization_id=organization_id
                )
        else:
            await self.repository.create_instance(instance)
        await self._record(instance, "created", None, actor=initiated_by)
        logger.info(
            f"Started playbook {playbook_id} v{definition.version} "
            f"execution_id={instance.execution_id} for organization_id={organization_id}"
        )

        instance = await self.advance(organization_id, instance.execution_id)
        return StartResult(
            execution_id=instance.execution_id,
            status=instance.status,
            current_step_id=instance.current_step_id,
        )

    async def pause(
        self, organization_id: str, execution_id: str, reason: str, paused_by: str
    ) -> ExecutionInstance:
        await self._authorize(paused_by, organization_id, "workflow.pause", execution_id)

        async def op(instance: ExecutionInstance) -> ExecutionInstance:
            if instance.status is not ExecutionStatus.IN_PROGRESS:
                raise InvalidStateTransition(
                    "pause",
                    instance.status.value,
                    organization_id=organization_id,
                    execution_id=execution_id,
                )
            instance.status = ExecutionStatus.PAUSED
            instance.pause_reason = reason
            instance = await self._save(instance)
            await self._record(instance, "paused", ExecutionStatus.IN_PROGRESS, paused_by, reason)
            return instance

        instance = await self._mutate(organization_id, execution_id, "pause", op)
        logger.info(f"Paused execution_id={execution_id} by {paused_by}: {reason}")
        return instance

    async def resume(
        self,
        organization_id: str,
        execution_id: str,
        resumed_by: str,
        notes: Optional[str] = None,
    ) -> ExecutionInstance:
        await self._authorize(resumed_by, organization_id, "workflow.resume", execution_id)

        async def op(instance: ExecutionInstance) -> ExecutionInstance:
            if instance.status is not ExecutionStatus.PAUSED:
                raise InvalidStateTransition(
                    "resume",
                    instance.status.value,
                    organization_id=organization_id,
                    execution_id=execution_id,
                )
            instance.status = ExecutionStatus.IN_PROGRESS
            instance.pause_reason = None
            instance = await self._save(instance)
            await self._record(instance, "resumed", ExecutionStatus.PAUSED, resumed_by, notes)
            return instance

        await self._mutate(organization_id, execution_id, "resume", op)
        logger.info(f"Resumed execution_id={execution_id} by {resumed_by}")
        return await self.advance(organization_id, execution_id)

    async def cancel(
        self, organization_id: str, execution_id: str, reason: str, cancelled_by: str
    ) -> ExecutionInstance:
        await self._authorize(cancelled_by, organization_id, "workflow.cancel", execution_id)

        async def op(instance: ExecutionInstance) -> ExecutionInstance:
            self._require_live(instance, "cancel")
            if instance.cancel_requested:
                return instance
            instance.cancel_requested = True
            instance.cancel_reason = reason
            instance = await self._save(instance)
            await self._record(
                instance, "cancel_requested", instance.status, cancelled_by, reason
            )
            return instance

        await self._mutate(organization_id, execution_id, "cancel", op)
        return await self._finalize_cancel(organization_id, execution_id, cancelled_by)

    async def _attempt_in_flight(self, instance: ExecutionInstance) -> bool:
        if not instance.current_step_instance_id:
            return False
        effects = await self.repository.list_effects(
            instance.organization_id, instance.execution_id, instance.current_step_id
        )
        return any(
            e.step_instance_id == instance.current_step_instance_id
            and e.status is EffectStatus.PENDING
            for e in effects
        )

    async def _finalize_cancel(
        self, organization_id: str, execution_id: str, actor: Optional[str] = None
    ) -> ExecutionInstance:
        """Cancel a flagged instance unless an action attempt is still in flight."""

        async def op(instance: ExecutionInstance) -> ExecutionInstance:
            if instance.is_terminal or not instance.cancel_requested:
                return instance
            if await self._attempt_in_flight(instance):
                logger.info(
                    f"Cancellation of execution_id={execution_id} deferred "
                    "until the in-flight action settles"
                )
                return instance

            # side effects first; they are idempotent if the save below conflicts
            await self.tasks.cancel_open_tasks(organization_id, execution_id)
            await self._skip_open_step(instance)

            previous = instance.status
            instance.status = ExecutionStatus.CANCELLED
            instance.completed_at = self._clock()
            instance.current_step_due_at = None
            instance = await self._save(instance)
            await self._record(instance, "cancelled", previous, actor, instance.cancel_reason)
            logger.info(f"Cancelled execution_id={execution_id}: {instance.cancel_reason}")
            return instance

        return await self._mutate(organization_id, execution_id, "cancel", op)

    async def _skip_open_step(self, instance: ExecutionInstance) -> None:
        if not instance.current_step_instance_id:
            return
        step_instance = await self.repository.get_step_instance(
            instance.organization_id, instance.current_step_instance_id
        )
        if step_instance is None or not step_instance.status.is_open:
            return
        step_instance.status = StepStatus.SKIPPED
        step_instance.completed_at = self._clock()
        await self.repository.update_step_instance(step_instance, step_instance.version)

    async def _fail(
        self, instance: ExecutionInstance, error: Optional[str]
    ) -> ExecutionInstance:
        await self.tasks.cancel_open_tasks(instance.organization_id, instance.execution_id)
        previous = instance.status
        instance.status = ExecutionStatus.FAILED
        instance.error = error
        instance.completed_at = self._clock()
        instance.current_step_due_at = None
        instance = await self._save(instance)
        await self._record(instance, "failed", previous, reason=error)
        logger.error(
            f"Execution failed at step {instance.current_step_id}: {error} "
            f"(execution_id={instance.execution_id})"
        )
        return instance

    # ------------------------------------------------------------------
    # Advancement

    async def advance(self, organization_id: str, execution_id: str) -> ExecutionInstance:
        """Move an execution forward as far as it can go without waiting."""
        instance = await self._load(organization_id, execution_id)
        for _ in range(MAX_STEPS_PER_ADVANCE):
            instance, progressed = await self._retrying(
                "advance", lambda: self._advance_once(organization_id, execution_id)
            )
            if not progressed:
                return instance
        logger.warning(
            f"Stopped advancing execution_id={execution_id} after "
            f"{MAX_STEPS_PER_ADVANCE} steps; the scheduler will continue it"
        )
        return instance

    async def heal(self, organization_id: str, execution_id: str) -> ExecutionInstance:
        """Advance a stalled execution and mark it as checked.

        An execution still waiting afterwards gets a fresh ``updated_at`` so
        the next stale sweep looks at other executions first.
        """
        before = await self._load(organization_id, execution_id)
        instance = await self.advance(organization_id, execution_id)
        if (
            instance.status is not ExecutionStatus.IN_PROGRESS
            or instance.version != before.version
        ):
            return instance

        async def op(instance: ExecutionInstance) -> ExecutionInstance:
            if instance.status is not ExecutionStatus.IN_PROGRESS:
                return instance
            return await self._save(instance)

        return await self._mutate(organization_id, execution_id, "heal", op)

    async def _advance_once(
        self, organization_id: str, execution_id: str
    ) -> tuple[ExecutionInstance, bool]:
        instance = await self._load(organization_id, execution_id)
        if instance.is_terminal:
            return instance, False
        if instance.cancel_requested:
            return await self._finalize_cancel(organization_id, execution_id), False
        if instance.status not in (ExecutionStatus.PENDING, ExecutionStatus.IN_PROGRESS):
            return instance, False

        definition = await self._definition_for(instance)
        if instance.status is ExecutionStatus.PENDING:
            instance.status = ExecutionStatus.IN_PROGRESS
            instance = await self._save(instance)
            await self._record(instance, "started", ExecutionStatus.PENDING)

        step_instance = None
        if instance.current_step_instance_id:
            step_instance = await self.repository.get_step_instance(
                organization_id, instance.current_step_instance_id
            )
        if step_instance is None:
            step_instance = await self._create_step_instance(instance, definition)

        if step_instance.status is StepStatus.PENDING:
            outcome = await self.runner.dispatch(instance, definition, step_instance)
            return instance, outcome is not None and outcome.status.settled
        if step_instance.status is StepStatus.ACTIVE:
            return instance, False
        if step_instance.status is StepStatus.FAILED:
            return await self._fail(instance, step_instance.error), False

        # completed or skipped: fold the output into the context and move on
        if step_instance.output:
            instance.context.update(step_instance.output)
        try:
            next_step = self._resolve_next(definition, step_instance.step_id, instance.context)
        except DefinitionError as e:
            return await self._fail(instance, e.message), False
        if next_step is None:
            return await self._finish(instance, definition), False

        previous_step = instance.current_step_id
        window = sla_window(next_step)
        instance.current_step_id = next_step.id
        instance.current_step_instance_id = new_id()
        instance.current_step_due_at = self._clock() + window if window else None
        if next_step.assignee is not None:
            instance.owner = next_step.assignee
        instance = await self._save(instance)
        await self._record(
            instance, "step_advanced", instance.status, reason=f"from {previous_step}"
        )
        logger.info(
            f"execution_id={execution_id} moved from step {previous_step} to {next_step.id}"
        )
        return instance, True

    async def _finish(
        self, instance: ExecutionInstance, definition: PlaybookDefinition
    ) -> ExecutionInstance:
        output = copy.deepcopy(instance.context)
        try:
            validate_payload(
                definition.output_contract,
                output,
                "output_data",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        except ValidationError as e:
            return await self._fail(instance, e.message)
        previous = instance.status
        instance.status = ExecutionStatus.COMPLETED
        instance.output_data = output
        instance.completed_at = self._clock()
        instance.current_step_due_at = None
        instance = await self._save(instance)
        await self._record(instance, "completed", previous)
        logger.info(f"Completed execution_id={instance.execution_id}")
        return instance

    async def _create_step_instance(
        self, instance: ExecutionInstance, definition: PlaybookDefinition
    ) -> StepInstance:
        step = definition.get_step(instance.current_step_id or "")
        if step is None:
            raise DefinitionError(
                f"Step '{instance.current_step_id}' is not part of "
                f"{definition.id} v{definition.version}",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        step_instance = StepInstance(
            step_instance_id=instance.current_step_instance_id or new_id(),
            organization_id=instance.organization_id,
            instance_id=instance.execution_id,
            step_id=step.id,
            step_type=step.type,
            due_at=instance.current_step_due_at,
            created_at=self._clock(),
        )
        try:
            await self.repository.create_step_instance(step_instance)
        except ConcurrentModificationError:
            existing = await self.repository.get_step_instance(
                instance.organization_id, step_instance.step_instance_id
            )
            if existing is None:
                raise
            return existing
        return step_instance

    @staticmethod
    def _resolve_next(
        definition: PlaybookDefinition, step_id: str, context: Dict[str, Any]
    ) -> Optional[StepDefinition]:
        step = definition.get_step(step_id)
        rule = step.next_step_rule if step else None
        if rule is None:
            return definition.following_step(step_id)
        if rule.end:
            return None
        if rule.next_step_id:
            return definition.get_step(rule.next_step_id)
        if rule.branches:
            for branch in rule.branches:
                if branch.condition.evaluate(context):
                    return definition.get_step(branch.next_step_id)
            if rule.default_step_id:
                return definition.get_step(rule.default_step_id)
            raise DefinitionError(
                f"No branch of step '{step_id}' matched and no default is set",
                organization_id=definition.organization_id,
                resource_id=step_id,
            )
        return definition.following_step(step_id)

    # ------------------------------------------------------------------
    # Work callbacks

    async def complete_task(
        self,
        organization_id: str,
        task_id: str,
        completed_by: str,
        output: Optional[Dict[str, Any]] = None,
    ) -> Task:
        await self._authorize(completed_by, organization_id, "task.complete", task_id)
        task = await self.tasks.get_task(organization_id, task_id)
        instance = await self._load(organization_id, task.instance_id)
        self._require_live(instance, "complete task")
        definition = await self._definition_for(instance)
        step = definition.get_step(task.step_id)
        validate_payload(
            step.output_contract if step else None,
            output or {},
            f"output of step {task.step_id}",
            organization_id=organization_id,
            execution_id=instance.execution_id,
            resource_id=task_id,
        )

        task = await self._retrying(
            "complete task",
            lambda: self.tasks.complete_task(organization_id, task_id, completed_by, output),
        )
        await self.runner.complete_task_step(task)
        await self.advance(organization_id, instance.execution_id)
        return task

    async def report_effect(
        self,
        organization_id: str,
        effect_id: str,
        succeeded: bool,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        retryable: bool = True,
    ) -> ExecutionInstance:
        """Settle an effect whose action answered ``pending`` earlier."""
        effect = await self.repository.get_effect(organization_id, effect_id)
        if effect is None:
            raise NotFoundError("EffectRecord", effect_id, organization_id=organization_id)
        if effect.status is not EffectStatus.PENDING:
            raise InvalidStateTransition(
                "report effect",
                effect.status.value,
                organization_id=organization_id,
                execution_id=effect.instance_id,
                resource_id=effect_id,
            )
        instance = await self._load(organization_id, effect.instance_id)
        definition = await self._definition_for(instance)
        result = (
            ActionResult.ok(output)
            if succeeded
            else ActionResult.failure(error or "action failed", retryable=retryable)
        )
        await self.runner.settle_effect(instance, definition, effect, result)
        return await self.advance(organization_id, instance.execution_id)

    async def handle_timer(self, timer: Timer) -> None:
        """Act on a claimed timer; timers of finished executions are no-ops."""
        instance = await self._load(timer.organization_id, timer.instance_id)
        if instance.is_terminal:
            logger.debug(
                f"Ignoring {timer.purpose.value} timer {timer.timer_id} of "
                f"{instance.status.value} execution_id={instance.execution_id}"
            )
            return
        definition = await self._definition_for(instance)
        await self.runner.on_timer(instance, definition, timer)
        await self.advance(timer.organization_id, timer.instance_id)

    # ------------------------------------------------------------------
    # Operator actions

    async def reassign(
        self,
        organization_id: str,
        execution_id: str,
        new_assignee: Assignee,
        reassigned_by: str,
        reason: Optional[str] = None,
        step_or_task_id: Optional[str] = None,
    ) -> Task:
        await self._authorize(
            reassigned_by, organization_id, "workflow.reassign", execution_id
        )
        instance = await self._load(organization_id, execution_id)
        self._require_live(instance, "reassign")
        task = await self._reassignable_task(instance, step_or_task_id)

        task = await self._retrying(
            "reassign",
            lambda: self.tasks.reassign_task(
                organization_id, task.task_id, new_assignee, reassigned_by, reason
            ),
        )

        async def op(instance: ExecutionInstance) -> ExecutionInstance:
            instance.owner = new_assignee
            instance = await self._save(instance)
            await self._record(
                instance, "reassigned", instance.status, reassigned_by, reason
            )
            return instance

        await self._mutate(organization_id, execution_id, "reassign", op)
        return task

    async def _reassignable_task(
        self, instance: ExecutionInstance, step_or_task_id: Optional[str]
    ) -> Task:
        org = instance.organization_id
        if step_or_task_id:
            task = await self.repository.get_task(org, step_or_task_id)
            if task is not None:
                if task.instance_id != instance.execution_id:
                    raise NotFoundError(
                        "Task",
                        step_or_task_id,
                        organization_id=org,
                        execution_id=instance.execution_id,
                    )
                if not task.state.is_open:
                    raise InvalidStateTransition(
                        "reassign",
                        task.state.value,
                        organization_id=org,
                        execution_id=instance.execution_id,
                        resource_id=task.task_id,
                    )
                return task

        step_id = step_or_task_id or instance.current_step_id
        step_instance = None
        if instance.current_step_instance_id:
            step_instance = await self.repository.get_step_instance(
                org, instance.current_step_instance_id
            )
        task = None
        if (
            step_instance is not None
            and step_instance.step_id == step_id
            and step_instance.step_type is StepType.TASK
        ):
            task = await self.tasks.current_task(
                org, instance.execution_id, step_instance.step_instance_id
            )
        if task is None:
            raise InvalidStateTransition(
                "reassign",
                step_instance.status.value if step_instance else "no step",
                message=f"Step '{step_id}' has no open task to reassign",
                organization_id=org,
                execution_id=instance.execution_id,
            )
        return task

    async def reassign_task(
        self,
        organization_id: str,
        task_id: str,
        new_assignee: Assignee,
        reassigned_by: str,
        reason: Optional[str] = None,
    ) -> Task:
        await self._authorize(reassigned_by, organization_id, "task.reassign", task_id)
        task = await self.tasks.get_task(organization_id, task_id)
        instance = await self._load(organization_id, task.instance_id)
        self._require_live(instance, "reassign task")
        return await self._retrying(
            "reassign task",
            lambda: self.tasks.reassign_task(
                organization_id, task_id, new_assignee, reassigned_by, reason
            ),
        )

    async def retry_effects(
        self,
        organization_id: str,
        execution_id: str,
        step_id: str,
        effect_filter: Optional[EffectFilter] = None,
        force_retry: bool = False,
        retried_by: str = "system",
    ) -> RetryEffectsResult:
        await self._authorize(
            retried_by, organization_id, "workflow.retry_effects", execution_id
        )
        instance = await self._load(organization_id, execution_id)
        # a failed execution stays failed; the new attempt is only recorded
        if instance.status is not ExecutionStatus.FAILED:
            self._require_live(instance, "retry effects")
        definition = await self._definition_for(instance)
        result = await self.runner.retry_effects(
            instance,
            definition,
            step_id,
            effect_filter or EffectFilter(),
            force_retry,
            retried_by,
        )
        await self._record(
            instance,
            "effects_retried",
            instance.status,
            retried_by,
            f"step {step_id}, {len(result.matched_effect_ids)} matched",
        )
        await self.advance(organization_id, execution_id)
        return result

    async def recalculate_sla(
        self,
        organization_id: str,
        execution_id: str,
        override_hours: float,
        reason: str,
        by: str,
        allow_past: bool = False,
    ) -> SLAAuditRecord:
        await self._authorize(by, organization_id, "workflow.sla_recalc", execution_id)

        async def claim(instance: ExecutionInstance):
            self._require_live(instance, "recalculate SLA")
            step_instance = None
            if instance.current_step_instance_id:
                step_instance = await self.repository.get_step_instance(
                    organization_id, instance.current_step_instance_id
                )
            if step_instance is None or not step_instance.status.is_open:
                raise InvalidStateTransition(
                    "recalculate SLA",
                    step_instance.status.value if step_instance else "no step",
                    organization_id=organization_id,
                    execution_id=execution_id,
                )
            definition = await self._definition_for(instance)
            step = definition.get_step(step_instance.step_id)
            new_due_at = self.timers.recalculated_due_at(
                instance, step_instance, step, override_hours, allow_past
            )
            old_due_at = step_instance.due_at

            # the instance write claims the change before anything is audited
            instance.current_step_due_at = new_due_at
            instance = await self._save(instance)
            return instance, step_instance.step_instance_id, old_due_at, new_due_at

        instance, step_instance_id, old_due_at, new_due_at = await self._mutate(
            organization_id, execution_id, "recalculate SLA", claim
        )

        async def apply() -> SLAAuditRecord:
            step_instance = await self.repository.get_step_instance(
                organization_id, step_instance_id
            )
            task = None
            if step_instance.step_type is StepType.TASK:
                task = await self.tasks.current_task(
                    organization_id, execution_id, step_instance_id
                )
            return await self.timers.apply_sla_override(
                instance, step_instance, task, old_due_at, new_due_at, reason, by, allow_past
            )

        record = await self._retrying("recalculate SLA", apply)
        await self._record(instance, "sla_recalculated", instance.status, by, reason)
        return record

    # ------------------------------------------------------------------
    # Queries

    async def get_execution(
        self,
        organization_id: str,
        execution_id: str,
        include_steps: bool = True,
        include_tasks: bool = True,
        include_timers: bool = False,
        steps_limit: Optional[int] = None,
    ) -> ExecutionDetail:
        instance = await self._load(organization_id, execution_id)
        detail = ExecutionDetail(instance=instance)
        if include_steps:
            detail.steps = await self.repository.list_step_instances(
                organization_id, execution_id, steps_limit
            )
        if include_tasks:
            detail.tasks = await self.repository.list_tasks(
                organization_id, TaskQuery(instance_id=execution_id, limit=500), self._clock()
            )
        if include_timers:
            detail.timers = await self.repository.list_timers(organization_id, execution_id)
        detail.effects = await self.repository.list_effects(organization_id, execution_id)
        detail.history = await self.repository.list_status_changes(
            organization_id, execution_id
        )
        detail.sla_audit = await self.repository.list_sla_audit(organization_id, execution_id)
        if instance.current_step_instance_id and not instance.is_terminal:
            current = await self.repository.get_step_instance(
                organization_id, instance.current_step_instance_id
            )
            if current is not None:
                detail.sla_status = sla_status(current, self._clock())
        return detail

    async def list_executions(
        self, organization_id: str, query: Optional[WorkflowQuery] = None
    ) -> list[ExecutionInstance]:
        return await self.repository.list_instances(
            organization_id, query or WorkflowQuery(), self._clock()
        )

    async def list_tasks(
        self, organization_id: str, query: Optional[TaskQuery] = None
    ) -> list[Task]:
        return await self.tasks.list_tasks(organization_id, query or TaskQuery())
