"""Manual retries of automated-step effects."""

import pytest

from playbook_engine.actions import ActionRegistry, ActionResult
from playbook_engine.errors import (
    EffectExecutionError,
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from playbook_engine.models import (
    BackoffPolicy,
    BackoffStrategy,
    EffectFilter,
    EffectStatus,
    ExecutionStatus,
    StepStatus,
)
from playbook_engine.scheduler import Scheduler
from tests.fixtures.playbooks import (
    ORG,
    FakeClock,
    automated_step,
    engine_with,
    playbook,
    task_step,
)


def _flaky(actions, name, failures, retryable=True):
    """Register an action failing its first ``failures`` calls."""
    calls = []

    @actions.action(name)
    async def handler(request):
        calls.append(request.attempt)
        if len(calls) <= failures:
            raise EffectExecutionError(f"failure {len(calls)}", retryable=retryable)
        return {"enriched": True}

    return calls


@pytest.mark.asyncio
async def test_forced_retry_of_skipped_optional_step():
    actions = ActionRegistry()
    calls = _flaky(actions, "enrich", failures=1, retryable=False)
    engine = await engine_with(
        playbook(
            "intake",
            [automated_step("enrich", "enrich", optional=True), task_step("review")],
        ),
        actions=actions,
    )
    result = await engine.start(ORG, "intake", {}, "alice")
    assert result.current_step_id == "review"

    with pytest.raises(InvalidStateTransition, match="force_retry"):
        await engine.retry_effects(ORG, result.execution_id, "enrich", retried_by="bob")

    retried = await engine.retry_effects(
        ORG, result.execution_id, "enrich", force_retry=True, retried_by="bob"
    )

    assert calls == [1, 2]
    first_effect_id = retried.matched_effect_ids[0]
    assert retried.new_effect.attempt == 2
    assert retried.new_effect.forced is True
    assert retried.new_effect.retry_of == first_effect_id
    assert retried.new_effect.requested_by == "bob"
    assert retried.new_effect.status == EffectStatus.SUCCEEDED

    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.instance.current_step_id == "review"
    enrich = next(s for s in detail.steps if s.step_id == "enrich")
    assert enrich.status == StepStatus.SKIPPED
    assert [e.status for e in detail.effects] == [EffectStatus.FAILED, EffectStatus.SUCCEEDED]
    assert any(h.event == "effects_retried" and h.actor == "bob" for h in detail.history)


@pytest.mark.asyncio
async def test_manual_retry_supersedes_pending_retry_timer():
    clock = FakeClock()
    actions = ActionRegistry()
    calls = _flaky(actions, "sync", failures=2)
    backoff = BackoffPolicy(strategy=BackoffStrategy.FIXED, delay_seconds=60)
    engine = await engine_with(
        playbook("sync", [automated_step("sync", "sync", max_attempts=3, backoff=backoff)]),
        actions=actions,
        clock=clock,
    )
    result = await engine.start(ORG, "sync", {}, "alice")
    assert calls == [1]

    clock.advance(seconds=10)
    retried = await engine.retry_effects(ORG, result.execution_id, "sync", retried_by="bob")
    assert calls == [1, 2]
    assert retried.new_effect.status == EffectStatus.FAILED

    scheduler = Scheduler(engine, worker_id="w1")
    clock.advance(seconds=50)
    await scheduler.run_sweep()
    # the timer scheduled before the manual retry does not run another attempt
    assert calls == [1, 2]

    clock.advance(seconds=10)
    await scheduler.run_sweep()
    assert calls == [1, 2, 3]
    instance = (await engine.get_execution(ORG, result.execution_id)).instance
    assert instance.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_manual_retry_of_failed_step_in_running_execution():
    actions = ActionRegistry()
    calls = _flaky(actions, "notify", failures=1)
    backoff = BackoffPolicy(strategy=BackoffStrategy.FIXED, delay_seconds=600)
    engine = await engine_with(
        playbook(
            "notify",
            [
                automated_step("notify", "notify", max_attempts=2, backoff=backoff),
                task_step("confirm"),
            ],
        ),
        actions=actions,
    )
    result = await engine.start(ORG, "notify", {}, "alice")

    retried = await engine.retry_effects(
        ORG,
        result.execution_id,
        "notify",
        EffectFilter(retryable_only=True),
        retried_by="bob",
    )

    assert retried.new_effect.status == EffectStatus.SUCCEEDED
    assert calls == [1, 2]
    instance = (await engine.get_execution(ORG, result.execution_id)).instance
    assert instance.current_step_id == "confirm"
    assert instance.context["enriched"] is True


@pytest.mark.asyncio
async def test_retry_without_matching_effects_is_a_no_op():
    actions = ActionRegistry()
    calls = _flaky(actions, "notify", failures=0)
    engine = await engine_with(
        playbook("notify", [automated_step("notify", "notify"), task_step("confirm")]),
        actions=actions,
    )
    result = await engine.start(ORG, "notify", {}, "alice")

    retried = await engine.retry_effects(ORG, result.execution_id, "notify", retried_by="bob")

    assert retried.matched_effect_ids == []
    assert retried.new_effect is None
    assert calls == [1]


@pytest.mark.asyncio
async def test_retry_rejects_unknown_and_non_automated_steps():
    engine = await engine_with(playbook("review", [task_step("review")]))
    result = await engine.start(ORG, "review", {}, "alice")

    with pytest.raises(NotFoundError):
        await engine.retry_effects(ORG, result.execution_id, "missing", retried_by="bob")
    with pytest.raises(ValidationError, match="only automated steps"):
        await engine.retry_effects(ORG, result.execution_id, "review", retried_by="bob")


@pytest.mark.asyncio
async def test_retry_rejected_while_attempt_in_flight():
    actions = ActionRegistry()
    calls = []

    @actions.action("provision")
    async def provision(request):
        calls.append(request.attempt)
        if len(calls) == 1:
            raise EffectExecutionError("timeout")
        return ActionResult.accepted()

    backoff = BackoffPolicy(strategy=BackoffStrategy.FIXED, delay_seconds=600)
    engine = await engine_with(
        playbook("provision", [automated_step("provision", "provision", 3, backoff)]),
        actions=actions,
    )
    result = await engine.start(ORG, "provision", {}, "alice")
    await engine.retry_effects(ORG, result.execution_id, "provision", retried_by="bob")

    with pytest.raises(InvalidStateTransition, match="in flight"):
        await engine.retry_effects(ORG, result.execution_id, "provision", retried_by="bob")


@pytest.mark.asyncio
async def test_forced_retry_after_exhausted_attempts_keeps_execution_failed():
    actions = ActionRegistry()
    calls = _flaky(actions, "charge", failures=2)
    engine = await engine_with(
        playbook("billing", [automated_step("charge", "charge", max_attempts=2)]),
        actions=actions,
    )
    result = await engine.start(ORG, "billing", {}, "alice")
    assert result.status == ExecutionStatus.FAILED

    with pytest.raises(InvalidStateTransition, match="force_retry"):
        await engine.retry_effects(ORG, result.execution_id, "charge", retried_by="bob")

    retried = await engine.retry_effects(
        ORG, result.execution_id, "charge", force_retry=True, retried_by="bob"
    )

    assert calls == [1, 2, 3]
    assert retried.new_effect.attempt == 3
    assert retried.new_effect.forced is True
    assert retried.new_effect.status == EffectStatus.SUCCEEDED
    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.instance.status == ExecutionStatus.FAILED
    assert detail.steps[0].status == StepStatus.FAILED
    assert [e.attempt for e in detail.effects] == [1, 2, 3]


@pytest.mark.asyncio
async def test_retry_rejected_on_completed_execution():
    actions = ActionRegistry()
    _flaky(actions, "sync", failures=0)
    engine = await engine_with(
        playbook("sync", [automated_step("sync", "sync")]), actions=actions
    )
    result = await engine.start(ORG, "sync", {}, "alice")
    assert result.status == ExecutionStatus.COMPLETED

    with pytest.raises(InvalidStateTransition, match="completed"):
        await engine.retry_effects(
            ORG, result.execution_id, "sync", force_retry=True, retried_by="bob"
        )
