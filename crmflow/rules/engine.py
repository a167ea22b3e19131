"""Business rule evaluation."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from ..config import EngineConfig
from ..contracts import (
    BusinessRule,
    DomainEvent,
    EngineMessage,
    ErrorDetail,
    RuleExecution,
    RuleExecutionStatus,
    RuleStatistics,
    RuleStats,
    RuleTestResult,
)
from ..definitions import DefinitionStore
from ..errors import ActionError, ConditionError, ConditionEvaluationTimeout
from ..persistence import ExecutionRepository
from ..transports import LIFECYCLE_TOPIC, BaseTransport
from ..utils.time import elapsed_ms, utcnow
from .actions import ActionContext, ActionRegistry
from .conditions import build_context, evaluate_condition

logger = logging.getLogger(__name__)


def _evaluate(conditions: Any, context: Dict[str, Any]) -> bool:
    try:
        return evaluate_condition(conditions, context)
    except ConditionError:
        raise
    except Exception as exc:
        raise ConditionError(
            f"Condition could not be evaluated: {type(exc).__name__}: {exc}",
            {"conditions": conditions},
        ) from exc


class RuleEngine:
    """Evaluates the active rules of a tenant against domain events.

    Rules fire in priority order. Each evaluated rule yields exactly one
    ``RuleExecution`` record and one update of the rule counters, whatever
    the outcome.
    """

    def __init__(
        self,
        store: DefinitionStore,
        repository: ExecutionRepository,
        transport: BaseTransport,
        actions: ActionRegistry,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._transport = transport
        self._actions = actions
        self._config = config or EngineConfig()
        # A timed-out evaluation keeps its thread until it returns; only this
        # pool is affected, never the default executor.
        self._condition_pool = ThreadPoolExecutor(
            max_workers=self._config.condition_workers,
            thread_name_prefix="crmflow-conditions",
        )

    async def evaluate(self, tenant_id: str, event: DomainEvent) -> List[RuleExecution]:
        """Fire every active rule listening to ``event``.

        Raises ``NoActiveRules`` when the tenant has no active rule for the
        event's entity type.
        """

        rules = await self._store.list_active_rules(tenant_id, event.entity_type)
        context = build_context(event)
        results: List[RuleExecution] = []
        for rule in rules:
            if not rule.listens_to(event.trigger):
                continue
            record = await self._fire(rule, event, context)
            results.append(record)
        return results

    async def _fire(
        self, rule: BusinessRule, event: DomainEvent, context: Dict[str, Any]
    ) -> RuleExecution:
        record = RuleExecution(
            tenant_id=event.tenant_id,
            rule_id=rule.id,
            rule_name=rule.name,
            priority=rule.priority,
            event_id=event.event_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            trigger=event.trigger,
            input_data=dict(event.data),
        )
        started = utcnow()

        try:
            matched = await self._match(rule, context)
        except ConditionEvaluationTimeout as exc:
            logger.warning(f"Rule {rule.name} condition timed out; treating as unmatched")
            matched = False
            record.error = ErrorDetail.from_exception(exc)
        except ConditionError as exc:
            logger.error(f"Rule {rule.name} has an invalid condition: {exc}")
            matched = False
            record.status = RuleExecutionStatus.FAILED
            record.error = ErrorDetail.from_exception(exc)

        if matched:
            record.status = RuleExecutionStatus.MATCHED
            await self._run_actions(rule, event, record)

        record.duration_ms = elapsed_ms(started, utcnow())
        record = await self._repository.save_rule_execution(record)
        stats = await self._repository.update_rule_stats(
            event.tenant_id,
            rule.id,
            record.status,
            self._config.rule_health.failure_ratio_window,
        )
        await self._check_health(rule, stats, event)
        await self._emit(
            "rule.executed",
            event,
            {
                "rule_id": rule.id,
                "rule_execution_id": record.id,
                "status": record.status.value,
                "actions_completed": record.actions_completed,
            },
        )
        logger.info(
            f"Rule {rule.name} on {event.entity_type}/{event.entity_id}: {record.status.value}"
        )
        return record

    async def check_condition(self, conditions: Any, context: Dict[str, Any]) -> bool:
        """Evaluate ``conditions`` in the condition pool under ``condition_timeout``.

        Raises ``ConditionError`` for malformed conditions and
        ``ConditionEvaluationTimeout`` when the evaluation runs too long.
        """

        timeout = self._config.condition_timeout
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._condition_pool, _evaluate, conditions, context),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConditionEvaluationTimeout(
                f"Condition exceeded {timeout}s", {"timeout": timeout}
            ) from exc

    async def _match(self, rule: BusinessRule, context: Dict[str, Any]) -> bool:
        try:
            return await self.check_condition(rule.conditions, context)
        except ConditionEvaluationTimeout as exc:
            exc.context["rule_id"] = rule.id
            raise

    def close(self) -> None:
        self._condition_pool.shutdown(wait=False, cancel_futures=True)

    async def _run_actions(
        self, rule: BusinessRule, event: DomainEvent, record: RuleExecution
    ) -> None:
        outputs: List[Dict[str, Any]] = []
        for index, action in enumerate(rule.actions):
            try:
                output = await self._actions.dispatch(ActionContext(rule, event, action))
            except Exception as exc:
                error = (
                    exc
                    if isinstance(exc, ActionError)
                    else ActionError(str(exc) or type(exc).__name__, {"action": action.type})
                )
                error.context.setdefault("action_index", index)
                logger.error(f"Rule {rule.name} action {action.type} failed: {error}")
                record.status = RuleExecutionStatus.FAILED
                record.error = ErrorDetail.from_exception(error)
                break
            outputs.append({"type": action.type, "result": output})
            record.actions_completed.append(action.type)
        else:
            record.status = RuleExecutionStatus.SUCCEEDED
        record.output_data = {"actions": outputs}

    async def _check_health(
        self, rule: BusinessRule, stats: RuleStats, event: DomainEvent
    ) -> None:
        health = self._config.rule_health
        unhealthy = (
            len(stats.recent_failures) >= health.failure_ratio_min_samples
            and stats.failure_ratio > health.failure_ratio_threshold
        )
        if unhealthy == stats.flagged:
            return
        await self._repository.set_rule_flag(stats.tenant_id, stats.rule_id, unhealthy)
        if unhealthy:
            logger.warning(
                f"Rule {rule.name} flagged: failure ratio {stats.failure_ratio:.2f} "
                f"over last {len(stats.recent_failures)} evaluations"
            )
            await self._emit(
                "rule.flagged",
                event,
                {"rule_id": rule.id, "failure_ratio": stats.failure_ratio},
            )
        else:
            logger.info(f"Rule {rule.name} recovered, flag cleared")

    async def _emit(self, name: str, event: DomainEvent, payload: Dict[str, Any]) -> None:
        await self._transport.publish(
            LIFECYCLE_TOPIC,
            EngineMessage(
                correlation_id=event.event_id,
                tenant_id=event.tenant_id,
                event=name,
                payload=payload,
            ),
        )

    # ------------------------------------------------------------------
    async def test_rule(
        self, tenant_id: str, rule_id: str, data: Dict[str, Any], trigger: Optional[str] = None
    ) -> RuleTestResult:
        """Dry run: evaluate the condition and list the actions that would run."""

        rule = await self._store.get_rule(tenant_id, rule_id)
        event = DomainEvent(
            tenant_id=tenant_id,
            entity_type=rule.entity_type,
            entity_id="test",
            trigger=trigger or (rule.triggers[0] if rule.triggers else "test"),
            data=data,
        )
        started = utcnow()
        error: Optional[ErrorDetail] = None
        try:
            matched = await self._match(rule, build_context(event))
        except (ConditionError, ConditionEvaluationTimeout) as exc:
            matched = False
            error = ErrorDetail.from_exception(exc)
        return RuleTestResult(
            rule_id=rule.id,
            conditions_met=matched,
            actions=[action.type for action in rule.actions] if matched else [],
            duration_ms=elapsed_ms(started, utcnow()),
            error=error,
        )

    async def rule_statistics(self, tenant_id: str) -> RuleStatistics:
        rules = await self._store.list_rules(tenant_id)
        stats = await self._repository.list_rule_stats(tenant_id)
        return RuleStatistics(
            tenant_id=tenant_id,
            total_rules=len(rules),
            active_rules=sum(1 for rule in rules if rule.is_active),
            by_rule_type=dict(Counter(rule.rule_type.value for rule in rules)),
            by_entity_type=dict(Counter(rule.entity_type for rule in rules)),
            rules=stats,
        )
