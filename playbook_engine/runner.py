"""Step runner: executes one step instance according to its type."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .actions import ActionAdapter, ActionRequest, ActionResult
from .errors import (
    ConcurrentModificationError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from .models import (
    EffectFilter,
    EffectRecord,
    EffectStatus,
    ExecutionInstance,
    PlaybookDefinition,
    RetryEffectsResult,
    StatusChange,
    StepDefinition,
    StepInstance,
    StepStatus,
    StepType,
    Task,
    Timer,
    TimerPurpose,
)
from .persistence import ExecutionRepository
from .tasks import TaskManager
from .timers import TimerService, sla_status
from .utils.retry import retry_delay

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def settled(self) -> bool:
        return self is not OutcomeStatus.WAITING


class StepOutcome(BaseModel):
    status: OutcomeStatus
    step_instance: StepInstance
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    effect: Optional[EffectRecord] = None


class StepRunner:
    """Drives a single step instance from ``pending`` to a settled status.

    The runner never touches the execution instance itself; the engine
    reads the settled step instance and decides what comes next. Every
    step instance write is conditional on its version, so two workers
    racing on the same step cannot both dispatch it.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        actions: ActionAdapter,
        tasks: TaskManager,
        timers: TimerService,
        clock: Callable[[], datetime],
    ) -> None:
        self._repository = repository
        self._actions = actions
        self._tasks = tasks
        self._timers = timers
        self._clock = clock

    async def dispatch(
        self,
        instance: ExecutionInstance,
        definition: PlaybookDefinition,
        step_instance: StepInstance,
    ) -> Optional[StepOutcome]:
        """Activate a pending step instance and start its work.

        Returns ``None`` when another worker activated it first.
        """
        if step_instance.status is not StepStatus.PENDING:
            return None
        step = self._step(definition, step_instance)
        now = self._clock()
        step_instance.status = StepStatus.ACTIVE
        step_instance.started_at = now
        try:
            step_instance = await self._repository.update_step_instance(
                step_instance, step_instance.version
            )
        except ConcurrentModificationError:
            logger.debug(
                f"Step instance {step_instance.step_instance_id} already dispatched "
                f"(execution_id={instance.execution_id})"
            )
            return None

        logger.info(
            f"Dispatching {step.type.value} step {step.id} "
            f"for execution_id={instance.execution_id}"
        )
        org = instance.organization_id
        sid = step_instance.step_instance_id
        if step_instance.due_at is not None:
            await self._timers.schedule_timer(
                org, instance.execution_id, TimerPurpose.SLA, step_instance.due_at, sid
            )
        if step.reminder_hours:
            await self._timers.schedule_timer(
                org,
                instance.execution_id,
                TimerPurpose.REMINDER,
                now + timedelta(hours=step.reminder_hours),
                sid,
            )

        if step.type is StepType.TASK:
            await self._tasks.create_task(instance, step_instance, step)
            return StepOutcome(status=OutcomeStatus.WAITING, step_instance=step_instance)
        if step.type is StepType.WAIT:
            await self._timers.schedule_timer(
                org,
                instance.execution_id,
                TimerPurpose.WAIT,
                now + timedelta(seconds=step.wait_seconds or 0),
                sid,
            )
            return StepOutcome(status=OutcomeStatus.WAITING, step_instance=step_instance)
        if step.type is StepType.DECISION:
            return await self._complete(step_instance, None)
        return await self._attempt(instance, step, step_instance)

    async def complete_task_step(self, task: Task) -> Optional[StepOutcome]:
        """Settle the step instance of a task that was just completed."""
        step_instance = await self._repository.get_step_instance(
            task.organization_id, task.step_instance_id
        )
        if step_instance is None or step_instance.status is not StepStatus.ACTIVE:
            return None
        return await self._complete(step_instance, task.output)

    async def on_timer(
        self,
        instance: ExecutionInstance,
        definition: PlaybookDefinition,
        timer: Timer,
    ) -> Optional[StepOutcome]:
        """React to a fired timer. Stale timers are ignored."""
        if timer.step_instance_id is None:
            return None
        step_instance = await self._repository.get_step_instance(
            timer.organization_id, timer.step_instance_id
        )
        if step_instance is None or step_instance.status is not StepStatus.ACTIVE:
            logger.debug(f"Ignoring {timer.purpose.value} timer {timer.timer_id}: step settled")
            return None

        if timer.purpose is TimerPurpose.WAIT:
            return await self._complete(step_instance, None)
        if timer.purpose is TimerPurpose.RETRY:
            return await self._on_retry_timer(instance, definition, step_instance, timer)
        if timer.purpose is TimerPurpose.SLA:
            await self._on_sla_timer(instance, step_instance)
        elif timer.purpose is TimerPurpose.REMINDER:
            logger.info(
                f"Reminder: step {step_instance.step_id} of "
                f"execution_id={instance.execution_id} is still open"
            )
            await self._history(instance, "task_reminder", step_instance.step_id)
        return None

    async def _on_retry_timer(
        self,
        instance: ExecutionInstance,
        definition: PlaybookDefinition,
        step_instance: StepInstance,
        timer: Timer,
    ) -> Optional[StepOutcome]:
        if instance.cancel_requested or instance.is_terminal:
            return None
        effects = await self._effects_of(step_instance)
        # a manual retry after this timer was scheduled supersedes it
        if any(e.created_at > timer.created_at for e in effects) or any(
            e.status is EffectStatus.PENDING for e in effects
        ):
            return None
        step = self._step(definition, step_instance)
        return await self._attempt(instance, step, step_instance)

    async def _on_sla_timer(
        self, instance: ExecutionInstance, step_instance: StepInstance
    ) -> None:
        now = self._clock()
        if step_instance.due_at is None or step_instance.due_at > now:
            return
        if step_instance.sla_breached_at is not None:
            return
        step_instance.sla_breached_at = now
        step_instance = await self._repository.update_step_instance(
            step_instance, step_instance.version
        )
        status = sla_status(step_instance, now)
        logger.warning(
            f"SLA breached for execution_id={instance.execution_id}: "
            f"{status.message if status else step_instance.step_id}"
        )
        await self._history(
            instance,
            "sla_breached",
            step_instance.step_id,
            reason=status.severity if status else None,
        )

    async def settle_effect(
        self,
        instance: ExecutionInstance,
        definition: PlaybookDefinition,
        effect: EffectRecord,
        result: ActionResult,
    ) -> Optional[StepOutcome]:
        """Apply a result reported for a pending effect."""
        step_instance = await self._repository.get_step_instance(
            effect.organization_id, effect.step_instance_id
        )
        if step_instance is None:
            raise NotFoundError(
                "StepInstance",
                effect.step_instance_id,
                organization_id=effect.organization_id,
                execution_id=effect.instance_id,
            )
        step = self._step(definition, step_instance)
        return await self._settle(instance, step, step_instance, effect, result)

    async def retry_effects(
        self,
        instance: ExecutionInstance,
        definition: PlaybookDefinition,
        step_id: str,
        effect_filter: EffectFilter,
        force_retry: bool,
        retried_by: str,
    ) -> RetryEffectsResult:
        """Re-invoke the action of ``step_id`` once for the matching failed effects."""
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(
                "Step",
                step_id,
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        if step.type is not StepType.AUTOMATED:
            raise ValidationError(
                f"Step '{step_id}' is a {step.type.value} step; only automated steps have effects",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )

        effects = await self._repository.list_effects(
            instance.organization_id, instance.execution_id, step_id
        )
        matched = [e for e in effects if effect_filter.matches(e)]
        result = RetryEffectsResult(
            execution_id=instance.execution_id,
            step_id=step_id,
            matched_effect_ids=[e.effect_id for e in matched],
        )
        if not matched:
            logger.info(
                f"No failed effects of step {step_id} match the retry filter "
                f"(execution_id={instance.execution_id})"
            )
            return result

        latest = matched[-1]
        step_instance = await self._repository.get_step_instance(
            instance.organization_id, latest.step_instance_id
        )
        if step_instance is None:
            raise NotFoundError(
                "StepInstance",
                latest.step_instance_id,
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        siblings = [e for e in effects if e.step_instance_id == latest.step_instance_id]
        if any(e.status is EffectStatus.PENDING for e in siblings):
            raise InvalidStateTransition(
                "retry effects",
                "effect pending",
                message=f"Step '{step_id}' already has an attempt in flight",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        attempts = max(e.attempt for e in siblings)
        if attempts >= step.retry_policy.max_attempts and not force_retry:
            raise InvalidStateTransition(
                "retry effects",
                step_instance.status.value,
                message=(
                    f"Step '{step_id}' used {attempts} of {step.retry_policy.max_attempts} "
                    "attempts; set force_retry to exceed the cap"
                ),
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )

        logger.info(
            f"Manual retry of step {step_id} by {retried_by} "
            f"(execution_id={instance.execution_id}, forced={force_retry})"
        )
        outcome = await self._attempt(
            instance,
            step,
            step_instance,
            attempt=attempts + 1,
            requested_by=retried_by,
            retry_of=latest.effect_id,
            forced=force_retry,
        )
        result.new_effect = outcome.effect if outcome else None
        return result

    async def _attempt(
        self,
        instance: ExecutionInstance,
        step: StepDefinition,
        step_instance: StepInstance,
        attempt: Optional[int] = None,
        requested_by: Optional[str] = None,
        retry_of: Optional[str] = None,
        forced: bool = False,
    ) -> Optional[StepOutcome]:
        """Record and run one invocation of the step's action.

        Only an active step instance is driven by the result; a manual retry
        of an already settled step just records the new effect.
        """
        attempt = attempt or step_instance.attempt_count + 1
        if step_instance.status is StepStatus.ACTIVE:
            step_instance.attempt_count = attempt
            step_instance = await self._repository.update_step_instance(
                step_instance, step_instance.version
            )

        effect = EffectRecord(
            organization_id=instance.organization_id,
            instance_id=instance.execution_id,
            step_instance_id=step_instance.step_instance_id,
            step_id=step.id,
            attempt=attempt,
            retry_of=retry_of,
            forced=forced,
            requested_by=requested_by,
            created_at=self._clock(),
        )
        await self._repository.append_effect(effect)
        request = ActionRequest(
            organization_id=instance.organization_id,
            execution_id=instance.execution_id,
            step_id=step.id,
            step_instance_id=step_instance.step_instance_id,
            effect_id=effect.effect_id,
            action=step.action or "",
            attempt=attempt,
            parameters=step.parameters,
            context=instance.context,
        )
        result = await self._actions.invoke(request)
        if result.status == "pending":
            logger.info(
                f"Action {step.action} accepted for step {step.id}, awaiting report "
                f"(effect_id={effect.effect_id})"
            )
            return StepOutcome(
                status=OutcomeStatus.WAITING, step_instance=step_instance, effect=effect
            )
        return await self._settle(instance, step, step_instance, effect, result)

    async def _settle(
        self,
        instance: ExecutionInstance,
        step: StepDefinition,
        step_instance: StepInstance,
        effect: EffectRecord,
        result: ActionResult,
    ) -> Optional[StepOutcome]:
        succeeded = result.status == "succeeded"
        status = EffectStatus.SUCCEEDED if succeeded else EffectStatus.FAILED
        now = self._clock()
        settled = await self._repository.settle_effect(
            effect.organization_id,
            effect.effect_id,
            status,
            now,
            error=result.error,
            retryable=result.retryable,
            output=result.output,
        )
        if not settled:
            logger.debug(f"Effect {effect.effect_id} was already settled")
            return None
        effect = effect.model_copy(
            update={
                "status": status,
                "error": result.error,
                "retryable": result.retryable,
                "output": result.output,
                "settled_at": now,
            }
        )

        # the step instance may have moved on while the action ran
        current = await self._repository.get_step_instance(
            step_instance.organization_id, step_instance.step_instance_id
        )
        if current is None or current.status is not StepStatus.ACTIVE:
            return StepOutcome(
                status=OutcomeStatus.WAITING, step_instance=current or step_instance, effect=effect
            )
        step_instance = current

        if succeeded:
            outcome = await self._complete(step_instance, result.output)
            outcome.effect = effect
            return outcome

        logger.warning(
            f"Attempt {effect.attempt} of step {step.id} failed "
            f"(execution_id={instance.execution_id}, retryable={result.retryable}): {result.error}"
        )
        fresh = await self._repository.get_instance(
            instance.organization_id, instance.execution_id
        )
        if fresh is not None and (fresh.cancel_requested or fresh.is_terminal):
            return StepOutcome(
                status=OutcomeStatus.WAITING, step_instance=step_instance, effect=effect
            )

        if result.retryable and step_instance.attempt_count < step.retry_policy.max_attempts:
            delay = retry_delay(step.retry_policy.backoff, step_instance.attempt_count)
            if delay <= 0:
                return await self._attempt(fresh or instance, step, step_instance)
            await self._timers.schedule_timer(
                instance.organization_id,
                instance.execution_id,
                TimerPurpose.RETRY,
                now + timedelta(seconds=delay),
                step_instance.step_instance_id,
            )
            return StepOutcome(
                status=OutcomeStatus.WAITING, step_instance=step_instance, effect=effect
            )

        outcome = await self._fail(step, step_instance, result.error)
        outcome.effect = effect
        return outcome

    async def _complete(
        self, step_instance: StepInstance, output: Optional[Dict[str, Any]]
    ) -> StepOutcome:
        step_instance.status = StepStatus.COMPLETED
        step_instance.output = output
        step_instance.completed_at = self._clock()
        step_instance = await self._repository.update_step_instance(
            step_instance, step_instance.version
        )
        return StepOutcome(
            status=OutcomeStatus.COMPLETED, step_instance=step_instance, output=output
        )

    async def _fail(
        self, step: StepDefinition, step_instance: StepInstance, error: Optional[str]
    ) -> StepOutcome:
        step_instance.status = StepStatus.SKIPPED if step.optional else StepStatus.FAILED
        step_instance.error = error
        step_instance.completed_at = self._clock()
        step_instance = await self._repository.update_step_instance(
            step_instance, step_instance.version
        )
        if step.optional:
            logger.info(f"Optional step {step.id} skipped after failure: {error}")
            return StepOutcome(
                status=OutcomeStatus.SKIPPED, step_instance=step_instance, error=error
            )
        return StepOutcome(status=OutcomeStatus.FAILED, step_instance=step_instance, error=error)

    async def _effects_of(self, step_instance: StepInstance) -> list[EffectRecord]:
        effects = await self._repository.list_effects(
            step_instance.organization_id, step_instance.instance_id, step_instance.step_id
        )
        return [e for e in effects if e.step_instance_id == step_instance.step_instance_id]

    async def _history(
        self,
        instance: ExecutionInstance,
        event: str,
        step_id: str,
        reason: Optional[str] = None,
    ) -> None:
        await self._repository.append_status_change(
            StatusChange(
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
                event=event,
                from_status=instance.status,
                to_status=instance.status,
                step_id=step_id,
                reason=reason,
                at=self._clock(),
            )
        )

    @staticmethod
    def _step(definition: PlaybookDefinition, step_instance: StepInstance) -> StepDefinition:
        step = definition.get_step(step_instance.step_id)
        if step is None:
            raise NotFoundError(
                "Step",
                step_instance.step_id,
                organization_id=step_instance.organization_id,
                execution_id=step_instance.instance_id,
            )
        return step
