import pytest

from playbook_engine.actions import ActionRegistry, ActionRequest, ActionResult, load_actions
from playbook_engine.errors import EffectExecutionError


def _request(action: str) -> ActionRequest:
    return ActionRequest(
        organization_id="acme",
        execution_id="exec-1",
        step_id="provision",
        step_instance_id="si-1",
        effect_id="eff-1",
        action=action,
        attempt=1,
    )


@pytest.mark.asyncio
async def test_handler_results_are_normalized():
    actions = ActionRegistry()

    @actions.action("dict")
    async def returns_dict(request):
        return {"account_id": 42}

    @actions.action("none")
    async def returns_none(request):
        return None

    @actions.action("scalar")
    async def returns_scalar(request):
        return "ok"

    @actions.action("async")
    async def returns_accepted(request):
        return ActionResult.accepted()

    assert (await actions.invoke(_request("dict"))).output == {"account_id": 42}
    assert (await actions.invoke(_request("none"))).status == "succeeded"
    assert (await actions.invoke(_request("scalar"))).output == {"result": "ok"}
    assert (await actions.invoke(_request("async"))).status == "pending"
    assert actions.names() == ["async", "dict", "none", "scalar"]


@pytest.mark.asyncio
async def test_failures_carry_retryable_flag():
    actions = ActionRegistry()

    @actions.action("rejected")
    async def rejected(request):
        raise EffectExecutionError("account exists", retryable=False)

    @actions.action("crashed")
    async def crashed(request):
        raise RuntimeError("connection reset")

    result = await actions.invoke(_request("rejected"))
    assert (result.status, result.error, result.retryable) == ("failed", "account exists", False)

    result = await actions.invoke(_request("crashed"))
    assert (result.status, result.error, result.retryable) == ("failed", "connection reset", True)

    result = await actions.invoke(_request("unknown"))
    assert result.status == "failed"
    assert result.retryable is False
    assert "unknown" in result.error


def test_load_actions_resolves_reference():
    adapter = load_actions("playbook_engine.actions:ActionRegistry")
    assert isinstance(adapter, ActionRegistry)

    with pytest.raises(ValueError, match="module:attribute"):
        load_actions("playbook_engine.actions")
    with pytest.raises(ValueError, match="has no attribute 'missing'"):
        load_actions("playbook_engine.actions:missing")
