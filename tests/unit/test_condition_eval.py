"""Tests for decision-branch conditions."""

import pytest

from playbook_engine.conditions import Condition, Operator

CONTEXT = {
    "amount": 1200,
    "customer": {"tier": "gold", "region": None},
    "tags": ["vip"],
    "approved": False,
}


@pytest.mark.parametrize(
    "condition,expected",
    [
        (Condition(field="amount", operator=Operator.GT, value=1000), True),
        (Condition(field="amount", operator=Operator.LTE, value=1000), False),
        (Condition(field="customer.tier", value="gold"), True),
        (
            Condition(field="customer.tier", operator=Operator.IN, value=["gold", "platinum"]),
            True,
        ),
        (Condition(field="customer.tier", operator=Operator.NOT_IN, value=["gold"]), False),
        (Condition(field="approved", operator=Operator.TRUTHY), False),
        (Condition(field="tags", operator=Operator.TRUTHY), True),
    ],
)
def test_condition_evaluates_against_context(condition, expected):
    assert condition.evaluate(CONTEXT) is expected


def test_missing_field_only_matches_negative_operators():
    assert Condition(field="customer.segment", value="smb").evaluate(CONTEXT) is False
    not_smb = Condition(field="customer.segment", operator=Operator.NE, value="smb")
    assert not_smb.evaluate(CONTEXT) is True
    missing = Condition(field="customer.segment", operator=Operator.EXISTS)
    assert missing.evaluate(CONTEXT) is False


def test_none_value_exists():
    exists = Condition(field="customer.region", operator=Operator.EXISTS)
    assert exists.evaluate(CONTEXT) is True
    assert Condition(field="customer.region", value=None).evaluate(CONTEXT) is True


def test_incomparable_types_do_not_match():
    condition = Condition(field="customer.tier", operator=Operator.GT, value=3)
    assert condition.evaluate(CONTEXT) is False


def test_condition_parses_from_yaml_shape():
    condition = Condition.model_validate({"field": "amount", "operator": "gte", "value": 1200})
    assert condition.operator is Operator.GTE
    assert condition.evaluate(CONTEXT) is True
