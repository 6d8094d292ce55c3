"""End-to-end execution scenarios against the in-memory store."""

import pytest

from playbook_engine.actions import ActionRegistry, ActionResult
from playbook_engine.engine import dedup_key
from playbook_engine.errors import (
    DuplicateExecutionError,
    EffectExecutionError,
    InvalidStateTransition,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from playbook_engine.models import (
    Assignee,
    EffectStatus,
    ExecutionInstance,
    ExecutionStatus,
    NextStepRule,
    StepStatus,
    TaskQuery,
    TaskState,
)
from playbook_engine.security import StaticGrantPolicy
from tests.fixtures.playbooks import (
    ORG,
    FakeClock,
    automated_step,
    decision_step,
    engine_with,
    playbook,
    task_step,
)


async def _open_tasks(engine, execution_id):
    tasks = await engine.list_tasks(ORG, TaskQuery(instance_id=execution_id))
    return [t for t in tasks if t.state.is_open]


@pytest.mark.asyncio
async def test_task_automated_task_runs_to_completion():
    actions = ActionRegistry()
    seen = []

    @actions.action("provision_account")
    async def provision(request):
        seen.append(dict(request.context))
        return {"account": "acct-1"}

    definition = playbook(
        "onboarding",
        [
            task_step("collect_documents"),
            automated_step("provision", "provision_account"),
            task_step("approve", role="managers"),
        ],
    )
    engine = await engine_with(definition, actions=actions)

    result = await engine.start(ORG, "onboarding", {"employee": "bob"}, "alice")
    assert result.status == ExecutionStatus.IN_PROGRESS
    assert result.current_step_id == "collect_documents"
    tasks = await _open_tasks(engine, result.execution_id)
    assert len(tasks) == 1
    assert tasks[0].step_id == "collect_documents"

    await engine.complete_task(ORG, tasks[0].task_id, "bob", {"documents": 3})

    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.instance.status == ExecutionStatus.IN_PROGRESS
    assert detail.instance.current_step_id == "approve"
    assert seen == [{"employee": "bob", "documents": 3}]
    assert [e.status for e in detail.effects] == [EffectStatus.SUCCEEDED]
    tasks = await _open_tasks(engine, result.execution_id)
    assert [t.step_id for t in tasks] == ["approve"]
    assert tasks[0].assignee.role == "managers"

    await engine.complete_task(ORG, tasks[0].task_id, "carol", {"approved": True})

    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.instance.status == ExecutionStatus.COMPLETED
    assert detail.instance.output_data == {
        "employee": "bob",
        "documents": 3,
        "account": "acct-1",
        "approved": True,
    }
    assert [s.status for s in detail.steps] == [StepStatus.COMPLETED] * 3
    events = [h.event for h in detail.history]
    assert events[0] == "created"
    assert "started" in events
    assert events[-1] == "completed"


@pytest.mark.asyncio
async def test_retryable_failures_exhaust_attempts_and_fail_execution():
    actions = ActionRegistry()

    @actions.action("charge_card")
    async def charge(request):
        raise EffectExecutionError("gateway timeout", retryable=True)

    engine = await engine_with(
        playbook("billing", [automated_step("charge", "charge_card", max_attempts=2)]),
        actions=actions,
    )

    result = await engine.start(ORG, "billing", {"invoice": 7}, "alice")

    assert result.status == ExecutionStatus.FAILED
    detail = await engine.get_execution(ORG, result.execution_id)
    assert [e.attempt for e in detail.effects] == [1, 2]
    assert all(e.status == EffectStatus.FAILED for e in detail.effects)
    assert detail.steps[0].status == StepStatus.FAILED
    assert detail.steps[0].attempt_count == 2
    assert detail.instance.error == "gateway timeout"


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_after_one_attempt():
    actions = ActionRegistry()

    @actions.action("charge_card")
    async def charge(request):
        return ActionResult.failure("card declined", retryable=False)

    engine = await engine_with(
        playbook("billing", [automated_step("charge", "charge_card", max_attempts=5)]),
        actions=actions,
    )

    result = await engine.start(ORG, "billing", {}, "alice")

    assert result.status == ExecutionStatus.FAILED
    detail = await engine.get_execution(ORG, result.execution_id)
    assert len(detail.effects) == 1
    assert detail.effects[0].retryable is False


@pytest.mark.asyncio
async def test_unknown_action_fails_without_retry():
    engine = await engine_with(
        playbook("billing", [automated_step("charge", "missing_action", max_attempts=3)])
    )

    result = await engine.start(ORG, "billing", {}, "alice")

    detail = await engine.get_execution(ORG, result.execution_id)
    assert result.status == ExecutionStatus.FAILED
    assert len(detail.effects) == 1
    assert "missing_action" in detail.instance.error


@pytest.mark.asyncio
async def test_optional_step_failure_is_skipped():
    actions = ActionRegistry()

    @actions.action("notify")
    async def notify(request):
        raise RuntimeError("smtp down")

    definition = playbook(
        "offboarding",
        [automated_step("notify", "notify", optional=True), task_step("archive")],
    )
    engine = await engine_with(definition, actions=actions)

    result = await engine.start(ORG, "offboarding", {}, "alice")

    assert result.status == ExecutionStatus.IN_PROGRESS
    assert result.current_step_id == "archive"
    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.steps[0].status == StepStatus.SKIPPED
    assert detail.steps[0].error == "smtp down"


@pytest.mark.asyncio
async def test_pause_and_resume_does_not_duplicate_task():
    engine = await engine_with(playbook("review", [task_step("review"), task_step("sign")]))
    result = await engine.start(ORG, "review", {"doc": "contract"}, "alice")

    paused = await engine.pause(ORG, result.execution_id, "waiting on legal", "ops-lead")
    assert paused.status == ExecutionStatus.PAUSED
    assert paused.pause_reason == "waiting on legal"

    resumed = await engine.resume(ORG, result.execution_id, "ops-lead", notes="legal ok")
    assert resumed.status == ExecutionStatus.IN_PROGRESS
    assert resumed.current_step_id == "review"

    detail = await engine.get_execution(ORG, result.execution_id)
    assert len(detail.tasks) == 1
    assert len(detail.steps) == 1
    events = [h.event for h in detail.history]
    assert events.count("paused") == 1
    assert events.count("resumed") == 1


@pytest.mark.asyncio
async def test_task_completed_while_paused_continues_on_resume():
    engine = await engine_with(playbook("review", [task_step("review"), task_step("sign")]))
    result = await engine.start(ORG, "review", {}, "alice")
    [task] = await _open_tasks(engine, result.execution_id)

    await engine.pause(ORG, result.execution_id, "audit", "ops-lead")
    await engine.complete_task(ORG, task.task_id, "bob")

    instance = (await engine.get_execution(ORG, result.execution_id)).instance
    assert instance.status == ExecutionStatus.PAUSED
    assert instance.current_step_id == "review"

    resumed = await engine.resume(ORG, result.execution_id, "ops-lead")
    assert resumed.current_step_id == "sign"


@pytest.mark.asyncio
async def test_illegal_transitions_are_rejected():
    engine = await engine_with(playbook("review", [task_step("review")]))
    result = await engine.start(ORG, "review", {}, "alice")

    with pytest.raises(InvalidStateTransition) as exc:
        await engine.resume(ORG, result.execution_id, "ops-lead")
    assert exc.value.current_status == "in_progress"

    await engine.pause(ORG, result.execution_id, "hold", "ops-lead")
    with pytest.raises(InvalidStateTransition):
        await engine.pause(ORG, result.execution_id, "hold again", "ops-lead")

    await engine.cancel(ORG, result.execution_id, "no longer needed", "ops-lead")
    with pytest.raises(InvalidStateTransition) as exc:
        await engine.resume(ORG, result.execution_id, "ops-lead")
    assert exc.value.current_status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_closes_open_task_and_step():
    engine = await engine_with(playbook("review", [task_step("review")]))
    result = await engine.start(ORG, "review", {}, "alice")

    cancelled = await engine.cancel(ORG, result.execution_id, "duplicate request", "ops-lead")

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.cancel_reason == "duplicate request"
    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.tasks[0].state == TaskState.CANCELLED
    assert detail.steps[0].status == StepStatus.SKIPPED

    with pytest.raises(InvalidStateTransition):
        await engine.cancel(ORG, result.execution_id, "again", "ops-lead")


@pytest.mark.asyncio
async def test_cancel_waits_for_in_flight_action():
    actions = ActionRegistry()

    @actions.action("export")
    async def export(request):
        return ActionResult.accepted()

    engine = await engine_with(
        playbook("export", [automated_step("export", "export"), task_step("check")]),
        actions=actions,
    )
    result = await engine.start(ORG, "export", {}, "alice")
    detail = await engine.get_execution(ORG, result.execution_id)
    [effect] = detail.effects
    assert effect.status == EffectStatus.PENDING

    requested = await engine.cancel(ORG, result.execution_id, "stop", "ops-lead")
    assert requested.status == ExecutionStatus.IN_PROGRESS
    assert requested.cancel_requested is True

    instance = await engine.report_effect(
        ORG, effect.effect_id, succeeded=True, output={"rows": 10}
    )

    assert instance.status == ExecutionStatus.CANCELLED
    detail = await engine.get_execution(ORG, result.execution_id)
    assert detail.effects[0].status == EffectStatus.SUCCEEDED
    assert detail.tasks == []


@pytest.mark.asyncio
async def test_report_effect_completes_pending_action():
    actions = ActionRegistry()

    @actions.action("export")
    async def export(request):
        return ActionResult.accepted()

    engine = await engine_with(
        playbook("export", [automated_step("export", "export")]), actions=actions
    )
    result = await engine.start(ORG, "export", {}, "alice")
    effect = (await engine.get_execution(ORG, result.execution_id)).effects[0]

    instance = await engine.report_effect(
        ORG, effect.effect_id, succeeded=True, output={"rows": 10}
    )

    assert instance.status == ExecutionStatus.COMPLETED
    assert instance.output_data == {"rows": 10}
    with pytest.raises(InvalidStateTransition):
        await engine.report_effect(ORG, effect.effect_id, succeeded=False, error="late")


@pytest.mark.asyncio
async def test_decision_routes_on_context():
    definition = playbook(
        "expense",
        [
            decision_step(
                "route",
                [({"field": "amount", "operator": "gt", "value": 1000}, "cfo_review")],
                default_step_id="manager_review",
            ),
            task_step(
                "manager_review", role="managers", next_step_rule=NextStepRule(end=True)
            ),
            task_step("cfo_review", role="cfo"),
        ],
    )
    engine = await engine_with(definition)

    small = await engine.start(ORG, "expense", {"amount": 50}, "alice")
    large = await engine.start(ORG, "expense", {"amount": 5000}, "alice")

    assert small.current_step_id == "manager_review"
    assert large.current_step_id == "cfo_review"

    [task] = await _open_tasks(engine, small.execution_id)
    await engine.complete_task(ORG, task.task_id, "mgr")
    instance = (await engine.get_execution(ORG, small.execution_id)).instance
    assert instance.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_decision_without_matching_branch_fails_execution():
    definition = playbook(
        "expense",
        [
            decision_step(
                "route", [({"field": "amount", "operator": "gt", "value": 1000}, "cfo_review")]
            ),
            task_step("cfo_review", role="cfo"),
        ],
    )
    engine = await engine_with(definition)

    result = await engine.start(ORG, "expense", {"amount": 5}, "alice")

    assert result.status == ExecutionStatus.FAILED
    instance = (await engine.get_execution(ORG, result.execution_id)).instance
    assert "No branch" in instance.error


@pytest.mark.asyncio
async def test_duplicate_start_within_window_returns_existing_id():
    clock = FakeClock()
    engine = await engine_with(playbook("review", [task_step("review")]), clock=clock)

    first = await engine.start(ORG, "review", {"doc": "a", "tags": ["x"]}, "alice")
    with pytest.raises(DuplicateExecutionError) as exc:
        await engine.start(ORG, "review", {"tags": ["x"], "doc": "a"}, "alice")
    assert exc.value.existing_execution_id == first.execution_id

    other_input = await engine.start(ORG, "review", {"doc": "b"}, "alice")
    other_user = await engine.start(ORG, "review", {"doc": "a", "tags": ["x"]}, "bob")
    assert other_input.execution_id != first.execution_id
    assert other_user.execution_id != first.execution_id

    clock.advance(seconds=301)
    later = await engine.start(ORG, "review", {"doc": "a", "tags": ["x"]}, "alice")
    assert later.execution_id != first.execution_id


@pytest.mark.asyncio
async def test_finished_execution_does_not_block_new_start():
    engine = await engine_with(playbook("review", [task_step("review")]))
    first = await engine.start(ORG, "review", {"doc": "a"}, "alice")
    await engine.cancel(ORG, first.execution_id, "oops", "alice")

    second = await engine.start(ORG, "review", {"doc": "a"}, "alice")

    assert second.execution_id != first.execution_id


@pytest.mark.asyncio
async def test_start_still_pending_counts_as_duplicate():
    clock = FakeClock()
    engine = await engine_with(playbook("review", [task_step("review")]), clock=clock)
    pending = ExecutionInstance(
        organization_id=ORG,
        playbook_id="review",
        playbook_version=1,
        dedup_key=dedup_key(ORG, "review", "alice", {"doc": "a"}),
        started_at=clock.now,
        updated_at=clock.now,
    )
    await engine.repository.create_instance(pending)

    with pytest.raises(DuplicateExecutionError) as exc:
        await engine.start(ORG, "review", {"doc": "a"}, "alice")
    assert exc.value.existing_execution_id == pending.execution_id


@pytest.mark.asyncio
async def test_input_contract_is_enforced_unless_skipped():
    definition = playbook(
        "review",
        [task_step("review")],
        input_contract={
            "type": "object",
            "required": ["doc"],
            "properties": {"doc": {"type": "string"}},
        },
    )
    engine = await engine_with(definition)

    with pytest.raises(ValidationError) as exc:
        await engine.start(ORG, "review", {"doc": 5}, "alice")
    assert exc.value.errors[0]["path"] == "doc"

    result = await engine.start(ORG, "review", {"doc": 5}, "alice", skip_validation=True)
    assert result.status == ExecutionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_output_contract_violation_fails_execution():
    definition = playbook(
        "review",
        [task_step("review")],
        output_contract={"type": "object", "required": ["decision"]},
    )
    engine = await engine_with(definition)
    result = await engine.start(ORG, "review", {}, "alice")
    [task] = await _open_tasks(engine, result.execution_id)

    await engine.complete_task(ORG, task.task_id, "bob", {"notes": "fine"})

    instance = (await engine.get_execution(ORG, result.execution_id)).instance
    assert instance.status == ExecutionStatus.FAILED
    assert "output_data" in instance.error


@pytest.mark.asyncio
async def test_step_output_contract_rejects_task_completion():
    definition = playbook(
        "review",
        [
            task_step(
                "review",
                output_contract={"type": "object", "required": ["approved"]},
            )
        ],
    )
    engine = await engine_with(definition)
    result = await engine.start(ORG, "review", {}, "alice")
    [task] = await _open_tasks(engine, result.execution_id)

    with pytest.raises(ValidationError):
        await engine.complete_task(ORG, task.task_id, "bob", {})

    [still_open] = await _open_tasks(engine, result.execution_id)
    assert still_open.task_id == task.task_id


@pytest.mark.asyncio
async def test_reassign_replaces_assignee_and_records_owner():
    engine = await engine_with(playbook("review", [task_step("review", role="ops")]))
    result = await engine.start(ORG, "review", {}, "alice")

    task = await engine.reassign(
        ORG, result.execution_id, Assignee(user_id="dave"), "ops-lead", "vacation"
    )

    assert task.assignee.user_id == "dave"
    assert task.assignee.role is None
    instance = (await engine.get_execution(ORG, result.execution_id)).instance
    assert instance.owner.user_id == "dave"
    reassignments = await engine.repository.list_reassignments(ORG, task.task_id)
    assert len(reassignments) == 1
    assert reassignments[0].old_assignee.role == "ops"
    assert reassignments[0].reason == "vacation"


@pytest.mark.asyncio
async def test_reassign_requires_open_task_step():
    actions = ActionRegistry()

    @actions.action("export")
    async def export(request):
        return ActionResult.accepted()

    engine = await engine_with(
        playbook("export", [automated_step("export", "export")]), actions=actions
    )
    result = await engine.start(ORG, "export", {}, "alice")

    with pytest.raises(InvalidStateTransition):
        await engine.reassign(ORG, result.execution_id, Assignee(role="ops"), "lead", "why")


@pytest.mark.asyncio
async def test_policy_denial_blocks_operation():
    policy = StaticGrantPolicy({"alice": ["workflow.start"], "lead": ["workflow.*"]})
    engine = await engine_with(playbook("review", [task_step("review")]), policy=policy)
    result = await engine.start(ORG, "review", {}, "alice")

    with pytest.raises(PermissionDenied):
        await engine.pause(ORG, result.execution_id, "hold", "alice")
    with pytest.raises(PermissionDenied):
        await engine.start(ORG, "review", {"other": 1}, "mallory")

    paused = await engine.pause(ORG, result.execution_id, "hold", "lead")
    assert paused.status == ExecutionStatus.PAUSED


@pytest.mark.asyncio
async def test_executions_are_scoped_by_organization():
    engine = await engine_with(playbook("review", [task_step("review")]))
    result = await engine.start(ORG, "review", {}, "alice")

    with pytest.raises(NotFoundError):
        await engine.get_execution("globex", result.execution_id)
    assert await engine.list_executions("globex") == []
