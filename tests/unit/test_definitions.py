from pathlib import Path

import pytest

from crmflow.contracts import (
    BusinessRule,
    DefinitionStatus,
    TriggerSpec,
    VariableSpec,
    WorkflowDefinition,
)
from crmflow.definitions import (
    CachedDefinitionStore,
    InMemoryDefinitionStore,
    load_definitions_file,
    validate_definition,
    validate_variables,
)
from crmflow.errors import (
    DefinitionImmutable,
    DefinitionInvalid,
    DefinitionNotFound,
    NoActiveRules,
    RuleNotFound,
    VariableValidationError,
)


def _definition(name="onboarding", version=1, status=DefinitionStatus.DRAFT, **fields):
    fields.setdefault("steps", [{"id": "a", "kind": "compute", "handler": "noop"}])
    return WorkflowDefinition(
        tenant_id="acme", name=name, version=version, status=status, **fields
    )


def _rule(name, priority=0, entity_type="deal", **fields):
    return BusinessRule(
        tenant_id="acme", name=name, priority=priority, entity_type=entity_type, **fields
    )


def test_steps_parse_into_kinds():
    definition = _definition(
        steps=[
            {"id": "a", "kind": "compute", "handler": "score"},
            {"id": "b", "kind": "external_call", "url": "https://crm.test/hook"},
            {"id": "c", "kind": "delay", "seconds": 60},
            {"id": "d", "kind": "human_task", "assignee": "manager"},
            {"id": "e", "kind": "sub_workflow", "workflow": "child"},
        ]
    )

    assert [s.kind for s in definition.steps] == [
        "compute",
        "external_call",
        "delay",
        "human_task",
        "sub_workflow",
    ]
    assert definition.steps[1].method == "POST"
    assert definition.is_linear is True


@pytest.mark.parametrize(
    "steps,message",
    [
        ([], "at least one step"),
        (
            [
                {"id": "a", "kind": "compute", "handler": "x"},
                {"id": "a", "kind": "compute", "handler": "y"},
            ],
            "Duplicate step ID",
        ),
        ([{"id": "a", "kind": "compute", "handler": "x", "next": "zzz"}], "unknown step"),
        (
            [{"id": "a", "kind": "compute", "handler": "x", "transitions": {"yes": "b"}}],
            "unknown step",
        ),
        ([{"id": "$end", "kind": "compute", "handler": "x"}], "reserved"),
    ],
)
def test_validate_definition_rejects_broken_graphs(steps, message):
    with pytest.raises(DefinitionInvalid, match=message):
        validate_definition(_definition(steps=steps))


def test_validate_definition_accepts_end_target():
    definition = _definition(
        steps=[
            {"id": "a", "kind": "compute", "handler": "x", "transitions": {"no": "$end"}},
            {"id": "b", "kind": "compute", "handler": "y"},
        ]
    )

    validate_definition(definition)
    assert definition.is_linear is False


def test_validate_variables_applies_defaults_and_types():
    schema = {
        "email": VariableSpec(type="string", required=True),
        "score": VariableSpec(type="integer", default=0),
        "flag": VariableSpec(type="boolean"),
    }

    assert validate_variables(schema, {"email": "a@b.c", "extra": 1}) == {
        "email": "a@b.c",
        "score": 0,
        "extra": 1,
    }
    with pytest.raises(VariableValidationError) as exc:
        validate_variables(schema, {"score": True})
    assert exc.value.context["problems"] == {"email": "required", "score": "expected integer"}


@pytest.mark.asyncio
async def test_store_lifecycle():
    store = InMemoryDefinitionStore()
    draft = store.add_definition(_definition())

    with pytest.raises(DefinitionNotFound):
        await store.get_published_definition("acme", draft.id)

    store.publish("acme", draft.id)
    assert (await store.get_published_definition("acme", draft.id)).is_published
    # Lookup by name picks the newest published version.
    v2 = store.add_definition(_definition(version=2, status=DefinitionStatus.PUBLISHED))
    assert (await store.get_published_definition("acme", "onboarding")).id == v2.id

    with pytest.raises(DefinitionImmutable):
        store.add_definition(draft)
    with pytest.raises(DefinitionInvalid):
        store.add_definition(_definition(version=2))

    store.deactivate("acme", draft.id)
    with pytest.raises(DefinitionNotFound):
        await store.get_published_definition("acme", draft.id)
    assert (await store.get_definition("acme", draft.id)).status == DefinitionStatus.DEACTIVATED
    with pytest.raises(DefinitionNotFound):
        await store.get_published_definition("globex", v2.id)


@pytest.mark.asyncio
async def test_triggered_definitions():
    store = InMemoryDefinitionStore()
    store.add_definition(
        _definition(
            status=DefinitionStatus.PUBLISHED,
            trigger=TriggerSpec(event_type="created", entity_type="lead"),
        )
    )
    store.add_definition(_definition(name="manual", status=DefinitionStatus.PUBLISHED))

    triggered = await store.list_triggered_definitions("acme", "created")

    assert [d.name for d in triggered] == ["onboarding"]
    assert await store.list_triggered_definitions("acme", "deleted") == []


@pytest.mark.asyncio
async def test_active_rules_are_ordered_by_priority_then_creation():
    store = InMemoryDefinitionStore()
    for name, priority in [("low", 1), ("high-first", 10), ("high-second", 10), ("other", 50)]:
        store.add_rule(_rule(name, priority, entity_type="lead" if name == "other" else "deal"))
    inactive = store.add_rule(_rule("off", 99))
    store.set_rule_active("acme", inactive.id, False)

    rules = await store.list_active_rules("acme", "deal")

    assert [r.name for r in rules] == ["high-first", "high-second", "low"]
    with pytest.raises(NoActiveRules):
        await store.list_active_rules("acme", "account")
    with pytest.raises(RuleNotFound):
        await store.get_rule("acme", "missing")
    with pytest.raises(DefinitionInvalid):
        store.add_rule(_rule("low"))


@pytest.mark.asyncio
async def test_cache_serves_until_ttl_then_reloads():
    now = [0.0]
    inner = InMemoryDefinitionStore()
    cache = CachedDefinitionStore(inner, ttl=10, clock=lambda: now[0])
    rule = inner.add_rule(_rule("first", 1))

    assert [r.name for r in await cache.list_active_rules("acme", "deal")] == ["first"]
    inner.set_rule_active("acme", rule.id, False)
    assert [r.name for r in await cache.list_active_rules("acme", "deal")] == ["first"]

    now[0] = 11.0
    with pytest.raises(NoActiveRules):
        await cache.list_active_rules("acme", "deal")

    inner.add_rule(_rule("second", 1))
    with pytest.raises(NoActiveRules):
        await cache.list_active_rules("acme", "deal")
    cache.invalidate("acme")
    assert [r.name for r in await cache.list_active_rules("acme", "deal")] == ["second"]


@pytest.mark.asyncio
async def test_cache_returns_copies():
    inner = InMemoryDefinitionStore()
    definition = inner.add_definition(_definition(status=DefinitionStatus.PUBLISHED))
    cache = CachedDefinitionStore(inner)

    first = await cache.get_published_definition("acme", definition.id)
    first.steps.clear()

    assert len((await cache.get_published_definition("acme", definition.id)).steps) == 1


def test_load_definitions_file(tmp_path):
    path = tmp_path / "flows.yaml"
    path.write_text(
        """
definitions:
  - id: lead-onboarding
    tenant_id: acme
    name: lead onboarding
    trigger:
      event_type: created
      entity_type: lead
    steps:
      - id: score
        kind: compute
        handler: score_lead
      - id: review
        kind: human_task
        assignee: sales-manager
  - tenant_id: acme
    name: draft flow
    status: draft
    steps:
      - id: a
        kind: delay
        seconds: 5
rules:
  - tenant_id: acme
    name: big deal alert
    entity_type: deal
    priority: 10
    conditions:
      field: amount
      operator: greater_than
      value: 50000
    actions:
      - type: send_notification
        recipient: sales-lead
        message: Big deal
"""
    )

    store = load_definitions_file(path)

    definition = store._definitions[("acme", "lead-onboarding")]
    assert definition.status == DefinitionStatus.PUBLISHED
    assert definition.steps[1].assignee == "sales-manager"
    [draft] = [d for d in store._definitions.values() if d.name == "draft flow"]
    assert draft.status == DefinitionStatus.DRAFT
    [(_, rule)] = store._rules.values()
    assert rule.actions[0].params == {"recipient": "sales-lead", "message": "Big deal"}


def test_sample_definitions_file_is_valid():
    path = Path(__file__).resolve().parents[2] / "guides" / "flows.yaml"

    store = load_definitions_file(path)

    names = sorted(d.name for d in store._definitions.values())
    assert names == ["lead qualification", "nurture"]
    assert all(d.is_published for d in store._definitions.values())
    assert len(store._rules) == 2
