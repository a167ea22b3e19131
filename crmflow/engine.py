"""Public entry point of the workflow and business-rule engine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from .audit import ExecutionLog
from .config import CrmflowConfig, EngineConfig, load_config
from .contracts import (
    DomainEvent,
    EventOutcome,
    ExecutionHandle,
    ExecutionLogEntry,
    ExecutionStatistics,
    ExecutionStatus,
    ExecutionView,
    RuleExecutionView,
    RuleStatistics,
    RuleTestResult,
    TriggerSpec,
    WorkflowExecution,
    new_id,
)
from .coordinator import ExecutionCoordinator
from .definitions import (
    CachedDefinitionStore,
    DefinitionStore,
    InMemoryDefinitionStore,
    load_definitions_file,
)
from .errors import (
    ConditionError,
    ConditionEvaluationTimeout,
    CrmflowError,
    ExecutionNotFound,
    NoActiveRules,
)
from .persistence import CANCEL, SUSPEND, ExecutionRepository, get_repository
from .rules import (
    ActionRegistry,
    RuleEngine,
    build_context,
    default_registry,
)
from .steps import ComputeFunction, ComputeHandler, StepExecutor, default_handlers
from .transports import EVENTS_TOPIC, BaseTransport, get_transport

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Facade over the rule engine, step executor and execution coordinator.

    Every operation is scoped to a tenant; executions of another tenant are
    reported as not found.
    """

    def __init__(
        self,
        store: DefinitionStore,
        repository: ExecutionRepository,
        transport: BaseTransport,
        config: Optional[EngineConfig] = None,
        functions: Optional[Dict[str, ComputeFunction]] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        actions: Optional[ActionRegistry] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.repository = repository
        self.transport = transport
        self.audit = ExecutionLog(repository)

        handlers = default_handlers(functions, client_factory)
        self._compute = next(h for h in handlers if isinstance(h, ComputeHandler))
        self.executor = StepExecutor(handlers, repository, self.config)
        self.coordinator = ExecutionCoordinator(
            store, repository, self.executor, transport, self.config, self.audit
        )
        self.actions = actions or default_registry(
            transport, start_workflow=self.start_execution, client_factory=client_factory
        )
        self.rules = RuleEngine(store, repository, transport, self.actions, self.config)

    def register_function(self, name: str, function: ComputeFunction) -> None:
        """Make ``function`` available to compute steps as ``handler: name``."""
        self._compute.register(name, function)

    # ------------------------------------------------------------------
    # Executions
    async def start_execution(
        self,
        tenant_id: str,
        definition_id: str,
        trigger_type: Optional[str] = "manual",
        trigger_data: Optional[Dict[str, Any]] = None,
        variables: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        execution_key: Optional[str] = None,
        run: bool = True,
    ) -> ExecutionHandle:
        """Start an execution of the published definition ``definition_id``.

        Starting twice with the same ``execution_key`` returns the first
        execution with ``created=False``. With ``run`` the new execution is
        driven inline until it suspends or terminates; otherwise it stays
        PENDING for a worker.
        """

        definition = await self.store.get_published_definition(tenant_id, definition_id)
        key = execution_key or (
            f"{tenant_id[:8]}-{definition.id[:8]}-{int(time.time() * 1000)}-{new_id()[:8]}"
        )
        execution, created = await self.coordinator.create(
            definition,
            key,
            variables=variables,
            trigger_type=trigger_type,
            trigger_data=trigger_data,
            actor=actor,
        )
        if created and run:
            execution = await self.coordinator.drive(execution.id, actor=actor)
        return ExecutionHandle(
            execution_id=execution.id,
            execution_key=execution.execution_key,
            status=execution.status,
            created=created,
        )

    async def get_execution(self, tenant_id: str, execution_id: str) -> ExecutionView:
        execution = await self._owned(tenant_id, execution_id)
        return await self._view(execution)

    async def list_executions(
        self,
        tenant_id: str,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> List[WorkflowExecution]:
        return await self.repository.list_executions(
            tenant_id=tenant_id, status=status, definition_id=definition_id
        )

    async def cancel(
        self, tenant_id: str, execution_id: str, actor: Optional[str] = None
    ) -> ExecutionView:
        await self._owned(tenant_id, execution_id)
        return await self._view(await self.coordinator.cancel(execution_id, actor))

    async def suspend(
        self, tenant_id: str, execution_id: str, actor: Optional[str] = None
    ) -> ExecutionView:
        await self._owned(tenant_id, execution_id)
        return await self._view(await self.coordinator.suspend(execution_id, actor))

    async def resume(
        self,
        tenant_id: str,
        execution_id: str,
        input: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> ExecutionView:
        await self._owned(tenant_id, execution_id)
        return await self._view(await self.coordinator.resume(execution_id, input, actor))

    async def retry(
        self, tenant_id: str, execution_id: str, actor: Optional[str] = None
    ) -> ExecutionView:
        await self._owned(tenant_id, execution_id)
        return await self._view(await self.coordinator.retry(execution_id, actor))

    async def execution_statistics(self, tenant_id: str) -> ExecutionStatistics:
        return await self.coordinator.execution_statistics(tenant_id)

    async def audit_log(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> List[ExecutionLogEntry]:
        return await self.audit.entries(tenant_id, execution_id)

    async def resume_due_timers(self) -> List[str]:
        return await self.coordinator.resume_due_timers()

    async def run_pending(self, tenant_id: Optional[str] = None) -> List[str]:
        return await self.coordinator.run_pending(tenant_id)

    async def _owned(self, tenant_id: str, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None or execution.tenant_id != tenant_id:
            raise ExecutionNotFound(
                f"Workflow execution not found: {execution_id}",
                {"tenant_id": tenant_id, "execution_id": execution_id},
            )
        return execution

    async def _view(self, execution: WorkflowExecution) -> ExecutionView:
        controls = await self.repository.get_controls(execution.id)
        return ExecutionView(
            execution=execution,
            steps=await self.repository.list_step_executions(execution.id),
            cancel_requested=CANCEL in controls,
            suspend_requested=SUSPEND in controls,
        )

    # ------------------------------------------------------------------
    # Rules and events
    async def evaluate_rules(self, tenant_id: str, event: DomainEvent) -> List[RuleExecutionView]:
        return await self.rules.evaluate(tenant_id, event)

    async def test_rule(
        self, tenant_id: str, rule_id: str, data: Dict[str, Any]
    ) -> RuleTestResult:
        return await self.rules.test_rule(tenant_id, rule_id, data)

    async def rule_statistics(self, tenant_id: str) -> RuleStatistics:
        return await self.rules.rule_statistics(tenant_id)

    async def handle_event(self, event: DomainEvent) -> EventOutcome:
        """Fire matching rules, then start workflows whose trigger matches."""

        outcome = EventOutcome(event_id=event.event_id)
        try:
            outcome.rule_executions = await self.evaluate_rules(event.tenant_id, event)
        except NoActiveRules:
            logger.debug(f"No active rules for {event.entity_type} in {event.tenant_id}")

        for definition in await self.store.list_triggered_definitions(
            event.tenant_id, event.trigger
        ):
            if not await self._trigger_matches(definition.trigger, event):
                continue
            try:
                handle = await self.start_execution(
                    event.tenant_id,
                    definition.id,
                    trigger_type="event",
                    trigger_data={
                        "event_id": event.event_id,
                        "trigger": event.trigger,
                        "entity_type": event.entity_type,
                        "entity_id": event.entity_id,
                    },
                    variables={
                        **event.data,
                        "entity_type": event.entity_type,
                        "entity_id": event.entity_id,
                    },
                    actor=event.actor,
                    execution_key=f"{definition.id}:{event.event_id}",
                )
            except CrmflowError as exc:
                logger.error(
                    f"Could not start {definition.name} for event {event.event_id}: {exc}"
                )
                continue
            outcome.executions.append(handle)
        return outcome

    async def _trigger_matches(self, trigger: Optional[TriggerSpec], event: DomainEvent) -> bool:
        if trigger is None:
            return False
        if trigger.entity_type and trigger.entity_type != event.entity_type:
            return False
        try:
            return await self.rules.check_condition(trigger.conditions, build_context(event))
        except (ConditionError, ConditionEvaluationTimeout) as exc:
            logger.warning(f"Trigger condition not evaluated for event {event.event_id}: {exc}")
            return False

    # ------------------------------------------------------------------
    # Worker
    async def consume(self, lifespan: Optional[float] = None) -> None:
        """Handle domain events published on the events topic."""

        async for raw_message, message in self.transport.subscribe(
            EVENTS_TOPIC, lifespan=lifespan
        ):
            try:
                event = DomainEvent.model_validate(
                    {"tenant_id": message.tenant_id, **message.payload}
                )
                await self.handle_event(event)
            except Exception as exc:
                logger.error(f"Failed to handle message {message.message_id}: {exc}")
                await self.transport.nack(raw_message, requeue=False)
                continue
            await self.transport.ack(raw_message)

    async def maintain(self, poll_interval: float = 1.0, lifespan: Optional[float] = None) -> None:
        """Periodically resume elapsed timers and pick up pending executions."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        while deadline is None or loop.time() < deadline:
            await self.resume_due_timers()
            await self.run_pending()
            await asyncio.sleep(poll_interval)

    async def run_worker(
        self, poll_interval: float = 1.0, lifespan: Optional[float] = None
    ) -> None:
        logger.info(f"Worker {self.coordinator.worker_id} started")
        await self.transport.connect()
        try:
            await asyncio.gather(
                self.consume(lifespan=lifespan),
                self.maintain(poll_interval=poll_interval, lifespan=lifespan),
            )
        finally:
            await self.transport.disconnect()
            self.rules.close()
            logger.info(f"Worker {self.coordinator.worker_id} stopped")


def build_engine(
    config: Optional[CrmflowConfig] = None,
    definitions_path: Optional[str] = None,
    functions: Optional[Dict[str, ComputeFunction]] = None,
) -> WorkflowEngine:
    """Assemble an engine from configuration.

    Definitions and rules come from the YAML file at ``definitions_path``
    (or ``config.definitions_path``) and are served through a TTL cache.
    """

    config = config or load_config()
    store = InMemoryDefinitionStore()
    path = definitions_path or config.definitions_path
    if path:
        load_definitions_file(path, store)
    return WorkflowEngine(
        CachedDefinitionStore(store, ttl=config.engine.definition_cache_ttl),
        get_repository(config.database_url),
        get_transport(config=config),
        config.engine,
        functions=functions,
    )
