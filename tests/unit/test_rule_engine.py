import asyncio
import json
import threading
import time

import httpx
import pytest

from crmflow.config import EngineConfig, RuleHealthConfig
from crmflow.contracts import BusinessRule, DomainEvent, RuleExecutionStatus, RuleType
from crmflow.definitions import InMemoryDefinitionStore
from crmflow.errors import NoActiveRules, RuleNotFound
from crmflow.persistence import InMemoryExecutionRepository
from crmflow.rules import RuleEngine, default_registry
from crmflow.rules import engine as rule_engine_module
from crmflow.transports import ACTIONS_TOPIC
from crmflow.transports.inmemory import InMemoryTransport

BIG_DEAL = {"field": "amount", "operator": "greater_than", "value": 10000}


def _rule(name, priority=0, conditions=None, actions=None, **fields):
    return BusinessRule(
        tenant_id="acme",
        name=name,
        entity_type="deal",
        priority=priority,
        conditions=conditions,
        actions=actions or [],
        **fields,
    )


def _event(trigger="updated", **data):
    return DomainEvent(
        tenant_id="acme", entity_type="deal", entity_id="d-1", trigger=trigger, data=data
    )


@pytest.fixture
def rule_store():
    return InMemoryDefinitionStore()


@pytest.fixture
def rule_repo():
    return InMemoryExecutionRepository()


@pytest.fixture
def rule_transport():
    return InMemoryTransport()


@pytest.fixture
def make_engine(rule_store, rule_repo, rule_transport):
    def _make(config=None, client_factory=None):
        actions = default_registry(rule_transport, client_factory=client_factory)
        return RuleEngine(
            rule_store, rule_repo, rule_transport, actions, config or EngineConfig()
        )

    return _make


@pytest.mark.asyncio
async def test_rules_fire_in_priority_order(rule_store, rule_repo, rule_transport, make_engine):
    notify = [{"type": "send_notification", "message": "hi"}]
    rule_store.add_rule(_rule("low", 1, BIG_DEAL, notify))
    rule_store.add_rule(_rule("high", 10, BIG_DEAL, notify))
    rule_store.add_rule(_rule("unmatched", 5, {"field": "stage", "value": "lost"}))

    results = await make_engine().evaluate("acme", _event(amount=20000, stage="won"))

    assert [r.rule_name for r in results] == ["high", "unmatched", "low"]
    assert [r.status for r in results] == [
        RuleExecutionStatus.SUCCEEDED,
        RuleExecutionStatus.UNMATCHED,
        RuleExecutionStatus.SUCCEEDED,
    ]
    stored = await rule_repo.list_rule_executions("acme")
    assert [r.rule_name for r in stored] == ["high", "unmatched", "low"]
    assert stored[0].sequence < stored[1].sequence < stored[2].sequence
    assert len(rule_transport.events("rule.action.send_notification")) == 2
    assert len(rule_transport.events("rule.executed")) == 3


@pytest.mark.asyncio
async def test_trigger_filter_skips_rules(rule_store, make_engine):
    rule_store.add_rule(_rule("on create", triggers=["created"]))
    rule_store.add_rule(_rule("always"))

    results = await make_engine().evaluate("acme", _event(trigger="updated"))

    assert [r.rule_name for r in results] == ["always"]


@pytest.mark.asyncio
async def test_no_active_rules_propagates(make_engine):
    with pytest.raises(NoActiveRules):
        await make_engine().evaluate("acme", _event())


@pytest.mark.asyncio
async def test_action_failure_stops_remaining_actions(rule_store, rule_transport, make_engine):
    rule_store.add_rule(
        _rule(
            "broken",
            actions=[
                {"type": "set_field", "field": "tier", "value": "gold"},
                {"type": "send_email"},
                {"type": "create_task", "title": "never"},
            ],
        )
    )
    rule_store.add_rule(
        _rule("next", -1, actions=[{"type": "create_task", "title": "follow up"}])
    )

    broken, following = await make_engine().evaluate("acme", _event())

    assert broken.status == RuleExecutionStatus.FAILED
    assert broken.actions_completed == ["set_field"]
    assert broken.error.type == "ActionError"
    assert broken.error.context["action_index"] == 1
    assert broken.error.context["missing"] == ["to"]
    # A failing rule does not stop later rules.
    assert following.status == RuleExecutionStatus.SUCCEEDED
    titles = [m.payload["params"]["title"] for _, m in rule_transport.published
              if m.event == "rule.action.create_task"]
    assert titles == ["follow up"]
    assert [m.event for t, m in rule_transport.published if t == ACTIONS_TOPIC] == [
        "rule.action.set_field",
        "rule.action.create_task",
    ]


@pytest.mark.asyncio
async def test_unknown_action_fails_rule(rule_store, make_engine):
    rule_store.add_rule(_rule("mystery", actions=[{"type": "teleport"}]))

    [result] = await make_engine().evaluate("acme", _event())

    assert result.status == RuleExecutionStatus.FAILED
    assert "teleport" in result.error.message


@pytest.mark.asyncio
async def test_invalid_condition_fails_rule(rule_store, make_engine):
    rule_store.add_rule(_rule("bad", conditions={"field": "x", "operator": "sounds_like"}))

    [result] = await make_engine().evaluate("acme", _event())

    assert result.status == RuleExecutionStatus.FAILED
    assert result.error.type == "ConditionError"


@pytest.mark.asyncio
async def test_malformed_condition_fails_only_its_own_rule(rule_store, rule_repo, make_engine):
    rule_store.add_rule(_rule("broken", 10, conditions={"all": 5}))
    rule_store.add_rule(_rule("typo", 7, conditions={"field": ["amount"], "value": 1}))
    rule_store.add_rule(_rule("fallback", 5, actions=[{"type": "create_task", "title": "t"}]))

    results = await make_engine().evaluate("acme", _event(amount=1))

    assert [(r.rule_name, r.status) for r in results] == [
        ("broken", RuleExecutionStatus.FAILED),
        ("typo", RuleExecutionStatus.FAILED),
        ("fallback", RuleExecutionStatus.SUCCEEDED),
    ]
    assert {r.error.type for r in results[:2]} == {"ConditionError"}
    assert len(await rule_repo.list_rule_executions("acme")) == 3
    stats = {s.rule_id: s for s in await rule_repo.list_rule_stats("acme")}
    assert sorted(s.failure_count for s in stats.values()) == [0, 1, 1]


@pytest.mark.asyncio
async def test_unexpected_evaluator_error_is_recorded(rule_store, make_engine, monkeypatch):
    def exploding_condition(condition, context):
        raise KeyError("amount")

    monkeypatch.setattr(rule_engine_module, "evaluate_condition", exploding_condition)
    rule_store.add_rule(_rule("explodes"))

    [result] = await make_engine().evaluate("acme", _event())

    assert result.status == RuleExecutionStatus.FAILED
    assert result.error.type == "ConditionError"
    assert "KeyError" in result.error.message


@pytest.mark.asyncio
async def test_conditions_run_in_dedicated_pool(rule_store, make_engine, monkeypatch):
    threads = []

    def recording_condition(condition, context):
        threads.append(threading.current_thread().name)
        return True

    monkeypatch.setattr(rule_engine_module, "evaluate_condition", recording_condition)
    rule_store.add_rule(_rule("any"))

    await make_engine().evaluate("acme", _event())

    assert threads and threads[0].startswith("crmflow-conditions")


@pytest.mark.asyncio
async def test_stuck_condition_only_occupies_condition_pool(rule_store, make_engine, monkeypatch):
    release = threading.Event()

    def stuck_condition(condition, context):
        release.wait(5)
        return True

    monkeypatch.setattr(rule_engine_module, "evaluate_condition", stuck_condition)
    rule_store.add_rule(_rule("stuck"))
    engine = make_engine(EngineConfig(condition_timeout=0.05, condition_workers=1))

    try:
        [result] = await engine.evaluate("acme", _event())
        assert result.status == RuleExecutionStatus.UNMATCHED
        # The default executor is still free for steps and persistence.
        assert await asyncio.wait_for(asyncio.to_thread(lambda: "free"), timeout=1) == "free"
    finally:
        release.set()
        engine.close()


@pytest.mark.asyncio
async def test_condition_timeout_is_unmatched(rule_store, rule_repo, make_engine, monkeypatch, caplog):
    def slow_condition(condition, context):
        time.sleep(0.3)
        return True

    monkeypatch.setattr(rule_engine_module, "evaluate_condition", slow_condition)
    rule_store.add_rule(_rule("slow", actions=[{"type": "create_task", "title": "t"}]))

    [result] = await make_engine(EngineConfig(condition_timeout=0.05)).evaluate(
        "acme", _event()
    )

    assert result.status == RuleExecutionStatus.UNMATCHED
    assert result.error.type == "ConditionEvaluationTimeout"
    assert result.actions_completed == []
    assert "timed out" in caplog.text
    [stats] = await rule_repo.list_rule_stats("acme")
    assert stats.execution_count == 1
    assert stats.failure_count == 0


@pytest.mark.asyncio
async def test_failing_rule_is_flagged_and_recovers(rule_store, rule_repo, rule_transport, make_engine):
    rule = rule_store.add_rule(
        _rule(
            "flaky",
            conditions={"field": "ok", "operator": "equals", "value": True},
            actions=[{"type": "send_email"}],
        )
    )
    config = EngineConfig(
        rule_health=RuleHealthConfig(
            failure_ratio_threshold=0.5, failure_ratio_window=4, failure_ratio_min_samples=3
        )
    )
    engine = make_engine(config)

    for _ in range(2):
        await engine.evaluate("acme", _event(ok=True))
    [stats] = await rule_repo.list_rule_stats("acme")
    assert stats.flagged is False

    await engine.evaluate("acme", _event(ok=True))
    [stats] = await rule_repo.list_rule_stats("acme")
    assert stats.flagged is True
    assert [m.payload["rule_id"] for m in rule_transport.events("rule.flagged")] == [rule.id]

    fixed = BusinessRule.model_validate(
        {**rule.model_dump(), "actions": [{"type": "send_email", "to": "ops@acme.test"}]}
    )
    rule_store.add_rule(fixed)
    for _ in range(3):
        await engine.evaluate("acme", _event(ok=True))
    [stats] = await rule_repo.list_rule_stats("acme")
    assert stats.flagged is False
    assert stats.execution_count == 6
    assert stats.failure_count == 3


@pytest.mark.asyncio
async def test_webhook_action_uses_http_client(rule_store, make_engine):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        status = 200 if request.url.path == "/ok" else 502
        return httpx.Response(status, json={})

    def client_factory():
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    rule_store.add_rule(
        _rule("hook", 2, actions=[{"type": "call_webhook", "url": "https://hooks.test/ok"}])
    )
    rule_store.add_rule(
        _rule("down", 1, actions=[{"type": "call_webhook", "url": "https://hooks.test/down"}])
    )

    ok, down = await make_engine(client_factory=client_factory).evaluate(
        "acme", _event(amount=5)
    )

    assert ok.status == RuleExecutionStatus.SUCCEEDED
    assert ok.output_data["actions"] == [{"type": "call_webhook", "result": {"status_code": 200}}]
    assert down.status == RuleExecutionStatus.FAILED
    assert down.error.context["status_code"] == 502
    assert seen[0]["data"] == {"amount": 5}
    assert seen[0]["entity_id"] == "d-1"


@pytest.mark.asyncio
async def test_test_rule_dry_run_has_no_side_effects(rule_store, rule_repo, rule_transport, make_engine):
    rule = rule_store.add_rule(
        _rule("big", conditions=BIG_DEAL, actions=[{"type": "send_notification", "message": "m"}])
    )
    engine = make_engine()

    hit = await engine.test_rule("acme", rule.id, {"amount": 50000})
    miss = await engine.test_rule("acme", rule.id, {"amount": 5})

    assert hit.conditions_met is True
    assert hit.actions == ["send_notification"]
    assert miss.conditions_met is False
    assert miss.actions == []
    assert await rule_repo.list_rule_executions("acme") == []
    assert rule_transport.published == []
    with pytest.raises(RuleNotFound):
        await engine.test_rule("acme", "missing", {})


@pytest.mark.asyncio
async def test_rule_statistics(rule_store, make_engine):
    rule_store.add_rule(_rule("a", rule_type=RuleType.NOTIFICATION))
    rule_store.add_rule(_rule("b"))
    off = rule_store.add_rule(_rule("c", rule_type=RuleType.NOTIFICATION))
    rule_store.set_rule_active("acme", off.id, False)
    engine = make_engine()
    await engine.evaluate("acme", _event())

    stats = await engine.rule_statistics("acme")

    assert stats.total_rules == 3
    assert stats.active_rules == 2
    assert stats.by_rule_type == {"notification": 2, "field_update": 1}
    assert stats.by_entity_type == {"deal": 3}
    assert len(stats.rules) == 2
    assert stats.flagged == []
