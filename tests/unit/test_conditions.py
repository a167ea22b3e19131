import pytest

from crmflow.contracts import DomainEvent
from crmflow.errors import ConditionError
from crmflow.rules import build_context, evaluate_condition
from crmflow.rules.conditions import resolve_field


@pytest.fixture
def context():
    event = DomainEvent(
        tenant_id="acme",
        entity_type="deal",
        entity_id="d-1",
        trigger="updated",
        actor="alice",
        data={
            "stage": "won",
            "amount": 12000,
            "is_vip": True,
            "email": "Jane.Doe@Example.com",
            "tags": ["enterprise", "renewal"],
            "owner": {"name": "Bob", "region": "EMEA"},
            "contacts": [{"email": "a@x.io"}],
            "notes": None,
        },
        previous={"stage": "negotiation"},
    )
    return build_context(event)


def test_resolve_field_paths(context):
    assert resolve_field(context, "owner.region") == "EMEA"
    assert resolve_field(context, "contacts.0.email") == "a@x.io"
    assert resolve_field(context, "contacts.5.email") is None
    assert resolve_field(context, "missing.deep") is None
    assert resolve_field(context, "$event.entity_type") == "deal"
    assert resolve_field(context, "$previous.stage") == "negotiation"


@pytest.mark.parametrize(
    "condition,expected",
    [
        ({"field": "stage", "operator": "equals", "value": "won"}, True),
        ({"field": "stage", "value": "won"}, True),
        ({"field": "stage", "operator": "not_equals", "value": "lost"}, True),
        ({"field": "is_vip", "operator": "equals", "value": 1}, False),
        ({"field": "amount", "operator": "greater_than", "value": 10000}, True),
        ({"field": "amount", "operator": "less_than_or_equal", "value": 12000}, True),
        ({"field": "amount", "operator": "greater_than", "value": "10000"}, False),
        ({"field": "email", "operator": "contains", "value": "example"}, True),
        ({"field": "email", "operator": "ends_with", "value": "@EXAMPLE.COM"}, True),
        ({"field": "email", "operator": "starts_with", "value": "john"}, False),
        ({"field": "tags", "operator": "contains", "value": "renewal"}, True),
        ({"field": "stage", "operator": "in", "value": ["won", "lost"]}, True),
        ({"field": "stage", "operator": "not_in", "value": ["won", "lost"]}, False),
        ({"field": "notes", "operator": "is_null"}, True),
        ({"field": "missing", "operator": "is_null"}, True),
        ({"field": "owner.name", "operator": "is_not_null"}, True),
        ({"field": "email", "operator": "matches_regex", "value": r".+@example\.com"}, False),
        ({"field": "email", "operator": "matches_regex", "value": r"(?i).+@example\.com"}, True),
        ({"field": "stage", "operator": "changed_to", "value": "won"}, True),
        ({"field": "stage", "operator": "changed_to", "value": "negotiation"}, False),
    ],
)
def test_leaf_operators(context, condition, expected):
    assert evaluate_condition(condition, context) is expected


def test_combinators(context):
    won = {"field": "stage", "value": "won"}
    small = {"field": "amount", "operator": "less_than", "value": 100}

    assert evaluate_condition(None, context) is True
    assert evaluate_condition([], context) is True
    assert evaluate_condition([won, small], context) is False
    assert evaluate_condition({"any": [won, small]}, context) is True
    assert evaluate_condition({"all": [won, {"not": small}]}, context) is True


def test_changed_to_requires_a_different_previous_value():
    event = DomainEvent(
        tenant_id="acme",
        entity_type="deal",
        entity_id="d-1",
        trigger="updated",
        data={"stage": "won"},
        previous={"stage": "won"},
    )
    condition = {"field": "stage", "operator": "changed_to", "value": "won"}

    assert evaluate_condition(condition, build_context(event)) is False


@pytest.mark.parametrize(
    "condition",
    [
        {"field": "stage", "operator": "sounds_like", "value": "won"},
        {"operator": "equals", "value": "won"},
        {"field": "email", "operator": "matches_regex", "value": "("},
        "stage == won",
        {"all": 5},
        {"any": None},
        {"field": 3, "value": "won"},
        [{"field": "stage", "value": "won"}, {"any": "stage"}],
    ],
)
def test_malformed_conditions_raise(context, condition):
    with pytest.raises(ConditionError):
        evaluate_condition(condition, context)


def test_evaluation_does_not_mutate_context(context):
    before = {k: v for k, v in context.items()}

    evaluate_condition({"field": "tags", "operator": "contains", "value": "x"}, context)

    assert context == before
