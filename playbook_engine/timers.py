"""Timer and SLA service.

Timers are the engine's only source of deferred work: SLA deadlines,
retry backoffs, task reminders and wait steps. A timer is claimed by one
scheduler worker at a time under a lease and transitions to ``fired``
exactly once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import SchedulerConfig
from .constants import BUSINESS_HOURS_PER_DAY, SLA_CRITICAL_RATIO
from .errors import TimerClaimExpiredError, ValidationError
from .models import (
    ExecutionInstance,
    SLAAuditRecord,
    SLAStatus,
    StepDefinition,
    StepInstance,
    Task,
    Timer,
    TimerPurpose,
)
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


def sla_window(step: StepDefinition, override_hours: Optional[float] = None) -> Optional[timedelta]:
    """Wall-clock time allowed for ``step``.

    Business-hours SLAs stretch by the ratio of a full day to a business day.
    """
    hours = override_hours if override_hours is not None else step.sla_hours
    if hours is None:
        return None
    if step.business_hours_only:
        hours = hours * 24 / BUSINESS_HOURS_PER_DAY
    return timedelta(hours=hours)


def sla_status(step_instance: StepInstance, now: datetime) -> Optional[SLAStatus]:
    """Compliance of an active step against its deadline, if it has one."""
    if step_instance.due_at is None or step_instance.started_at is None:
        return None
    end = step_instance.completed_at or now
    elapsed = (end - step_instance.started_at).total_seconds() / 60
    allowed = (step_instance.due_at - step_instance.started_at).total_seconds() / 60
    compliant = end <= step_instance.due_at
    if compliant:
        severity = "info"
        message = f"Step {step_instance.step_id} within SLA ({elapsed:.1f}/{allowed:.1f} minutes)"
    else:
        severity = "critical" if elapsed > allowed * SLA_CRITICAL_RATIO else "warning"
        message = f"Step {step_instance.step_id} exceeds SLA ({elapsed:.1f}/{allowed:.1f} minutes)"
    return SLAStatus(
        compliant=compliant,
        elapsed_minutes=round(elapsed, 1),
        allowed_minutes=round(allowed, 1),
        severity=severity,
        message=message,
    )


class TimerService:
    def __init__(
        self,
        repository: ExecutionRepository,
        config: SchedulerConfig,
        clock: Callable[[], datetime],
    ) -> None:
        self._repository = repository
        self._config = config
        self._clock = clock

    async def schedule_timer(
        self,
        organization_id: str,
        instance_id: str,
        purpose: TimerPurpose,
        fire_at: datetime,
        step_instance_id: Optional[str] = None,
    ) -> Timer:
        timer = Timer(
            organization_id=organization_id,
            instance_id=instance_id,
            step_instance_id=step_instance_id,
            purpose=purpose,
            fire_at=fire_at,
            created_at=self._clock(),
        )
        await self._repository.create_timer(timer)
        logger.debug(
            f"Scheduled {purpose.value} timer {timer.timer_id} at {fire_at.isoformat()} "
            f"for execution_id={instance_id}"
        )
        return timer

    async def claim_due_timers(
        self,
        now: datetime,
        limit: int,
        worker_id: str,
        organization_id: Optional[str] = None,
    ) -> list[Timer]:
        lease_until = now + timedelta(seconds=self._config.claim_lease_seconds)
        return await self._repository.claim_due_timers(
            now, limit, worker_id, lease_until, organization_id
        )

    async def peek_due_timers(
        self, now: datetime, limit: int, organization_id: Optional[str] = None
    ) -> list[Timer]:
        return await self._repository.peek_due_timers(now, limit, organization_id)

    async def mark_fired(self, timer: Timer, worker_id: str) -> None:
        fired = await self._repository.mark_timer_fired(
            timer.organization_id, timer.timer_id, worker_id, self._clock()
        )
        if not fired:
            raise TimerClaimExpiredError(
                timer.timer_id,
                worker_id,
                organization_id=timer.organization_id,
                execution_id=timer.instance_id,
            )

    async def sla_timer(self, step_instance: StepInstance) -> Optional[Timer]:
        """The unfired SLA timer guarding ``step_instance``, if any."""
        timers = await self._repository.list_timers(
            step_instance.organization_id, step_instance.instance_id
        )
        return next(
            (
                t
                for t in timers
                if t.purpose is TimerPurpose.SLA
                and t.step_instance_id == step_instance.step_instance_id
                and not t.fired
            ),
            None,
        )

    def recalculated_due_at(
        self,
        instance: ExecutionInstance,
        step_instance: StepInstance,
        step: StepDefinition,
        override_hours: float,
        allow_past: bool = False,
    ) -> datetime:
        """Deadline of the current step under ``override_hours``.

        The new deadline counts from when the step started. Landing it in
        the past requires ``allow_past``.
        """
        if override_hours <= 0:
            raise ValidationError(
                "sla_override_hours must be positive",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        now = self._clock()
        started = step_instance.started_at or step_instance.created_at
        new_due_at = started + sla_window(step, override_hours)
        if new_due_at < now and not allow_past:
            raise ValidationError(
                f"Recalculated SLA {new_due_at.isoformat()} is before now "
                f"{now.isoformat()}; pass allow_past to override",
                organization_id=instance.organization_id,
                execution_id=instance.execution_id,
            )
        return new_due_at

    async def apply_sla_override(
        self,
        instance: ExecutionInstance,
        step_instance: StepInstance,
        task: Optional[Task],
        old_due_at: Optional[datetime],
        new_due_at: datetime,
        reason: str,
        by: str,
        allow_past: bool = False,
    ) -> SLAAuditRecord:
        """Move the step deadline, its task and its SLA timer, then audit it.

        Safe to call again after a write conflict: every write sets the same
        deadline and the audit record is appended last.
        """
        now = self._clock()
        step_instance.due_at = new_due_at
        if new_due_at > now:
            step_instance.sla_breached_at = None
        await self._repository.update_step_instance(step_instance, step_instance.version)

        if task is not None and task.state.is_open:
            task.due_at = new_due_at
            task.updated_at = now
            await self._repository.update_task(task, task.version)

        timer = await self.sla_timer(step_instance)
        moved = timer is not None and await self._repository.reschedule_timer(
            instance.organization_id, timer.timer_id, new_due_at
        )
        if not moved and new_due_at > now:
            await self.schedule_timer(
                instance.organization_id,
                instance.execution_id,
                TimerPurpose.SLA,
                new_due_at,
                step_instance.step_instance_id,
            )

        record = SLAAuditRecord(
            organization_id=instance.organization_id,
            execution_id=instance.execution_id,
            step_id=step_instance.step_id,
            old_due_at=old_due_at,
            new_due_at=new_due_at,
            reason=reason,
            by=by,
            allow_past=allow_past,
            at=now,
        )
        await self._repository.append_sla_audit(record)
        logger.info(
            f"Recalculated SLA for step {step_instance.step_id} of "
            f"execution_id={instance.execution_id}: {old_due_at} -> {new_due_at} ({reason})"
        )
        return record
