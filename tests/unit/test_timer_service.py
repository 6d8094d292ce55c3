"""Tests for timer claims and SLA arithmetic."""

import asyncio
from datetime import datetime, timedelta

import pytest

from playbook_engine.config import SchedulerConfig
from playbook_engine.errors import (
    ConcurrentModificationError,
    TimerClaimExpiredError,
    ValidationError,
)
from playbook_engine.models import StepInstance, StepType, TimerPurpose
from playbook_engine.persistence import InMemoryExecutionRepository
from playbook_engine.timers import TimerService, sla_status, sla_window
from tests.fixtures.playbooks import ORG, FakeClock, engine_with, playbook, task_step


def _service(clock, lease_seconds=60):
    repository = InMemoryExecutionRepository()
    config = SchedulerConfig(claim_lease_seconds=lease_seconds)
    return repository, TimerService(repository, config, clock)


def test_sla_window_stretches_business_hours():
    assert sla_window(task_step("review")) is None
    assert sla_window(task_step("review", sla_hours=2)) == timedelta(hours=2)
    assert sla_window(task_step("review", sla_hours=8, business_hours_only=True)) == timedelta(
        hours=24
    )
    assert sla_window(task_step("review", sla_hours=2), override_hours=5) == timedelta(hours=5)


def test_sla_status_severity():
    started = datetime(2024, 1, 1, 9, 0)
    step_instance = StepInstance(
        organization_id=ORG,
        instance_id="exec-1",
        step_id="review",
        step_type=StepType.TASK,
        started_at=started,
        due_at=started + timedelta(hours=1),
    )

    within = sla_status(step_instance, started + timedelta(minutes=30))
    assert within.compliant is True
    assert within.severity == "info"
    assert within.allowed_minutes == 60.0

    late = sla_status(step_instance, started + timedelta(minutes=80))
    assert late.compliant is False
    assert late.severity == "warning"

    very_late = sla_status(step_instance, started + timedelta(hours=2))
    assert very_late.severity == "critical"
    assert "exceeds SLA" in very_late.message


@pytest.mark.asyncio
async def test_concurrent_claims_never_overlap():
    clock = FakeClock()
    repository, service = _service(clock)
    for n in range(20):
        await service.schedule_timer(ORG, f"exec-{n}", TimerPurpose.WAIT, clock.now)

    batches = await asyncio.gather(
        *(service.claim_due_timers(clock.now, 7, f"w{i}") for i in range(5))
    )

    claimed = [t.timer_id for batch in batches for t in batch]
    assert len(claimed) == 20
    assert len(set(claimed)) == 20


@pytest.mark.asyncio
async def test_future_timers_are_not_claimed():
    clock = FakeClock()
    repository, service = _service(clock)
    later = clock.now + timedelta(hours=1)
    await service.schedule_timer(ORG, "exec-1", TimerPurpose.SLA, later)

    assert await service.claim_due_timers(clock.now, 10, "w1") == []
    assert await service.peek_due_timers(clock.now, 10) == []


@pytest.mark.asyncio
async def test_expired_claim_can_be_taken_over():
    clock = FakeClock()
    repository, service = _service(clock, lease_seconds=30)
    timer = await service.schedule_timer(ORG, "exec-1", TimerPurpose.WAIT, clock.now)

    [first] = await service.claim_due_timers(clock.now, 10, "w1")
    assert await service.claim_due_timers(clock.now, 10, "w2") == []

    clock.advance(seconds=31)
    [second] = await service.claim_due_timers(clock.now, 10, "w2")
    assert second.timer_id == timer.timer_id

    with pytest.raises(TimerClaimExpiredError):
        await service.mark_fired(first, "w1")
    await service.mark_fired(second, "w2")

    stored = await repository.get_timer(ORG, timer.timer_id)
    assert stored.fired is True
    assert stored.fired_at == clock.now
    assert await service.claim_due_timers(clock.now + timedelta(hours=1), 10, "w3") == []


@pytest.mark.asyncio
async def test_timer_fires_only_once():
    clock = FakeClock()
    repository, service = _service(clock)
    await service.schedule_timer(ORG, "exec-1", TimerPurpose.WAIT, clock.now)

    [timer] = await service.claim_due_timers(clock.now, 10, "w1")
    await service.mark_fired(timer, "w1")

    with pytest.raises(TimerClaimExpiredError):
        await service.mark_fired(timer, "w1")


@pytest.mark.asyncio
async def test_sla_recalculation_moves_deadline_and_audits_once():
    clock = FakeClock()
    engine = await engine_with(
        playbook("review", [task_step("review", sla_hours=2)]), clock=clock
    )
    result = await engine.start(ORG, "review", {}, "alice")
    clock.advance(hours=1)

    record = await engine.recalculate_sla(
        ORG, result.execution_id, 4, "customer asked for more time", "bob"
    )

    assert record.old_due_at == datetime(2024, 1, 1, 11, 0)
    assert record.new_due_at == datetime(2024, 1, 1, 13, 0)
    detail = await engine.get_execution(ORG, result.execution_id, include_timers=True)
    assert detail.instance.current_step_due_at == record.new_due_at
    assert detail.steps[0].due_at == record.new_due_at
    assert detail.tasks[0].due_at == record.new_due_at
    sla_timers = [t for t in detail.timers if t.purpose is TimerPurpose.SLA]
    assert [t.fire_at for t in sla_timers] == [record.new_due_at]
    assert len(detail.sla_audit) == 1
    assert detail.sla_audit[0].by == "bob"


@pytest.mark.asyncio
async def test_sla_recalculation_into_the_past_needs_allow_past():
    clock = FakeClock()
    engine = await engine_with(
        playbook("review", [task_step("review", sla_hours=2)]), clock=clock
    )
    result = await engine.start(ORG, "review", {}, "alice")
    clock.advance(hours=3)

    with pytest.raises(ValidationError, match="allow_past"):
        await engine.recalculate_sla(ORG, result.execution_id, 1, "tighten", "bob")
    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.sla_audit == []

    record = await engine.recalculate_sla(
        ORG, result.execution_id, 1, "tighten", "bob", allow_past=True
    )
    assert record.allow_past is True
    assert record.new_due_at == datetime(2024, 1, 1, 10, 0)
    detail = await engine.get_execution(ORG, result.execution_id)
    assert len(detail.sla_audit) == 1


@pytest.mark.asyncio
async def test_sla_recalculation_rejects_non_positive_hours():
    clock = FakeClock()
    engine = await engine_with(
        playbook("review", [task_step("review", sla_hours=2)]), clock=clock
    )
    result = await engine.start(ORG, "review", {}, "alice")

    with pytest.raises(ValidationError, match="positive"):
        await engine.recalculate_sla(ORG, result.execution_id, 0, "none", "bob")


class _ConflictingTaskWrites(InMemoryExecutionRepository):
    """Loses the next ``task_conflicts`` task writes to a concurrent writer."""

    def __init__(self):
        super().__init__()
        self.task_conflicts = 0

    async def update_task(self, task, expected_version):
        if self.task_conflicts:
            self.task_conflicts -= 1
            raise ConcurrentModificationError("Task", task.task_id, expected_version)
        return await super().update_task(task, expected_version)


@pytest.mark.asyncio
async def test_sla_recalculation_audits_original_deadline_after_conflict():
    clock = FakeClock()
    repository = _ConflictingTaskWrites()
    engine = await engine_with(
        playbook("review", [task_step("review", sla_hours=2)]),
        repository=repository,
        clock=clock,
    )
    result = await engine.start(ORG, "review", {}, "alice")
    repository.task_conflicts = 1

    record = await engine.recalculate_sla(ORG, result.execution_id, 4, "extension", "bob")

    assert record.old_due_at == datetime(2024, 1, 1, 11, 0)
    assert record.new_due_at == datetime(2024, 1, 1, 13, 0)
    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.tasks[0].due_at == record.new_due_at
    assert [a.old_due_at for a in detail.sla_audit] == [datetime(2024, 1, 1, 11, 0)]
