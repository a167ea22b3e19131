"""Execution coordinator: drives workflow executions through their steps."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from .audit import ExecutionLog
from .config import EngineConfig
from .contracts import (
    END_STEP,
    EngineMessage,
    ErrorDetail,
    ExecutionStatistics,
    ExecutionStatus,
    Lease,
    StepSpec,
    StepStatus,
    Suspension,
    SuspensionReason,
    WorkflowDefinition,
    WorkflowExecution,
    new_id,
)
from .definitions import DefinitionStore, validate_variables
from .errors import (
    ExecutionNotFound,
    ExecutionStateError,
    InvalidTransition,
    LeaseLost,
    VariableValidationError,
)
from .lease import LeaseKeeper
from .persistence import CANCEL, SUSPEND, ExecutionRepository
from .steps import ChildStarter, StepContext, StepExecutor
from .transports import LIFECYCLE_TOPIC, BaseTransport
from .utils.time import utcnow

logger = logging.getLogger(__name__)

# Output key a step uses to pick its successor.
NEXT_STEP_KEY = "next_step"
BRANCH_KEY = "branch"


def merge_resume_input(
    variables: Dict[str, Any], resume_input: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Shallow merge of external input into variables; input keys win."""
    reserved = [key for key in (resume_input or {}) if key.startswith("_")]
    if reserved:
        raise VariableValidationError(
            "Resume input keys must not start with '_'", {"keys": reserved}
        )
    return {**variables, **(resume_input or {})}


def next_step_id(
    definition: WorkflowDefinition, step: StepSpec, output: Dict[str, Any]
) -> str:
    """Successor of ``step`` given its output; ``END_STEP`` finishes the run."""

    target = output.get(NEXT_STEP_KEY)
    if target is None and BRANCH_KEY in output and step.transitions:
        branch = str(output[BRANCH_KEY])
        target = step.transitions.get(branch)
        if target is None:
            raise InvalidTransition(
                f"Step {step.id} has no transition for branch {branch!r}",
                {"step_id": step.id, "branch": branch},
            )
    if target is None:
        target = step.next
    if target is None:
        index = definition.index_of(step.id)
        following = definition.steps[index + 1 :]
        target = following[0].id if following else END_STEP
    if target != END_STEP and definition.step(target) is None:
        raise InvalidTransition(
            f"Step {step.id} transitions to unknown step {target!r}",
            {"step_id": step.id, "target": target},
        )
    return target


def compute_progress(definition: WorkflowDefinition, execution: WorkflowExecution) -> int:
    """Percentage of steps done.

    Linear definitions divide by the step count; branching ones estimate the
    total as steps done plus the steps left in declared order.
    """

    if execution.status == ExecutionStatus.COMPLETED:
        return 100
    done = execution.completed_steps
    if definition.is_linear:
        total = len(definition.steps)
    else:
        current = execution.current_step_id
        index = definition.index_of(current) if current and current != END_STEP else -1
        remaining = len(definition.steps) - index if index >= 0 else 0
        total = done + remaining
    if total <= 0:
        return 0
    return min(100, int(done * 100 / total))


class ExecutionCoordinator:
    """Owns the execution state machine.

    Every mutation of a running execution happens under its lease and is
    fenced by the lease token; a worker that loses the lease stops without
    writing. Cancel and suspend requests against an execution held by
    another worker are raised as control flags that the holder observes
    between steps.
    """

    def __init__(
        self,
        store: DefinitionStore,
        repository: ExecutionRepository,
        executor: StepExecutor,
        transport: BaseTransport,
        config: Optional[EngineConfig] = None,
        audit: Optional[ExecutionLog] = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._executor = executor
        self._transport = transport
        self._config = config or EngineConfig()
        self._audit = audit or ExecutionLog(repository)
        self.worker_id = self._config.worker_id or f"worker-{new_id()[:8]}"

    # ------------------------------------------------------------------
    # Creation
    async def create(
        self,
        definition: WorkflowDefinition,
        execution_key: str,
        variables: Optional[Dict[str, Any]] = None,
        trigger_type: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        parent_execution_id: Optional[str] = None,
    ) -> tuple[WorkflowExecution, bool]:
        """Insert a PENDING execution unless one with ``execution_key`` exists."""

        execution = WorkflowExecution(
            tenant_id=definition.tenant_id,
            definition_id=definition.id,
            definition_name=definition.name,
            definition_version=definition.version,
            execution_key=execution_key,
            current_step_id=definition.first_step_id,
            variables=validate_variables(definition.variables_schema, variables or {}),
            trigger_type=trigger_type,
            trigger_data=dict(trigger_data or {}),
            created_by=actor,
            parent_execution_id=parent_execution_id,
        )
        stored, created = await self._repository.create_execution(execution)
        if created:
            logger.info(
                f"Created execution {stored.id} of {definition.name} v{definition.version} "
                f"(key {execution_key})"
            )
            await self._audit.record(
                stored.tenant_id,
                "execution.created",
                execution_id=stored.id,
                actor=actor,
                definition_id=definition.id,
                execution_key=execution_key,
            )
        else:
            logger.info(f"Execution key {execution_key} already used by {stored.id}")
        return stored, created

    # ------------------------------------------------------------------
    # Driving
    async def drive(
        self,
        execution_id: str,
        resume_input: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        strict: bool = False,
    ) -> WorkflowExecution:
        """Advance the execution until it suspends or terminates.

        When another worker holds the lease the stored state is returned
        unchanged, or ``ExecutionStateError`` is raised if ``strict``.
        """

        lease = await self._repository.acquire_lease(
            execution_id, self.worker_id, self._config.lease_ttl
        )
        if lease is None:
            if strict:
                raise ExecutionStateError(
                    f"Execution {execution_id} is being processed by another worker",
                    {"execution_id": execution_id},
                )
            logger.debug(f"Execution {execution_id} is leased elsewhere, skipping")
            return await self.load(execution_id)

        try:
            async with LeaseKeeper(self._repository, lease, self._config.lease_ttl) as keeper:
                execution = await self.load(execution_id)
                await self._advance(execution, keeper, resume_input, actor)
        except LeaseLost as exc:
            logger.warning(f"Stopped driving {execution_id}: {exc.message}")
        return await self.load(execution_id)

    async def _advance(
        self,
        execution: WorkflowExecution,
        keeper: LeaseKeeper,
        resume_input: Optional[Dict[str, Any]],
        actor: Optional[str],
    ) -> None:
        if execution.is_terminal:
            return
        definition = await self._store.get_definition(execution.tenant_id, execution.definition_id)
        step_input: Optional[Dict[str, Any]] = None

        if execution.status == ExecutionStatus.SUSPENDED:
            if resume_input is None:
                return
            suspension = execution.suspension
            execution.variables = merge_resume_input(execution.variables, resume_input)
            if suspension is not None and suspension.reason != SuspensionReason.OPERATOR:
                step_input = dict(resume_input)
            execution.status = ExecutionStatus.RUNNING
            execution.suspension = None
            await self._save(execution, keeper)
            await self._emit(
                execution,
                "workflow.execution.resumed",
                actor=actor,
                reason=suspension.reason.value if suspension else None,
            )
        elif execution.status == ExecutionStatus.PENDING:
            first_run = execution.started_at is None
            execution.status = ExecutionStatus.RUNNING
            execution.current_step_id = execution.current_step_id or definition.first_step_id
            if first_run:
                execution.started_at = utcnow()
            await self._save(execution, keeper)
            if first_run:
                await self._emit(execution, "workflow.execution.started", actor=actor)
        else:
            logger.info(
                f"Taking over execution {execution.id} at step {execution.current_step_id}"
            )

        while True:
            keeper.check()
            if await self._honour_controls(execution, keeper, actor):
                return

            step_id = execution.current_step_id
            if step_id is None or step_id == END_STEP:
                await self._complete(execution, keeper)
                return
            step = definition.step(step_id)
            if step is None:
                await self._fail(
                    execution,
                    keeper,
                    ErrorDetail.from_exception(
                        InvalidTransition(
                            f"Execution points at unknown step {step_id!r}",
                            {"step_id": step_id},
                        )
                    ),
                )
                return

            context = StepContext(
                execution=execution.model_copy(deep=True),
                step=step,
                variables=dict(execution.variables),
                resume_input=step_input,
                start_child=self._child_starter(execution),
            )
            step_input = None

            async def guard() -> None:
                keeper.check()

            result = await self._executor.run(context, before_attempt=guard)
            keeper.check()
            if CANCEL in await self._repository.get_controls(execution.id):
                await self._cancel_now(execution, keeper.lease, actor)
                return

            if result.status == StepStatus.SUSPENDED:
                execution.status = ExecutionStatus.SUSPENDED
                execution.suspension = result.suspension or Suspension(
                    reason=SuspensionReason.HUMAN_TASK, step_id=step.id
                )
                await self._save(execution, keeper)
                # An operator suspend that arrived during the step is already satisfied.
                await self._repository.clear_control(execution.id, SUSPEND)
                await self._emit(
                    execution,
                    "workflow.execution.suspended",
                    step_id=step.id,
                    reason=execution.suspension.reason.value,
                )
                return

            if result.status == StepStatus.FAILED:
                if step.on_failure != "skip":
                    await self._fail(execution, keeper, result.error, step.id)
                    return
                logger.warning(f"Skipping failed step {step.id} of execution {execution.id}")
                output: Dict[str, Any] = {}
            else:
                output = dict(result.output)
                execution.variables.update(
                    {k: v for k, v in output.items() if k != NEXT_STEP_KEY}
                )

            try:
                target = next_step_id(definition, step, output)
            except InvalidTransition as exc:
                await self._fail(execution, keeper, ErrorDetail.from_exception(exc), step.id)
                return
            execution.completed_steps += 1
            execution.current_step_id = target
            execution.progress_percentage = compute_progress(definition, execution)
            await self._save(execution, keeper)

    async def _honour_controls(
        self, execution: WorkflowExecution, keeper: LeaseKeeper, actor: Optional[str]
    ) -> bool:
        controls = await self._repository.get_controls(execution.id)
        if CANCEL in controls:
            await self._cancel_now(execution, keeper.lease, actor)
            return True
        if SUSPEND in controls:
            await self._repository.clear_control(execution.id, SUSPEND)
            await self._suspend_now(execution, keeper.lease)
            return True
        return False

    # ------------------------------------------------------------------
    # Terminal transitions
    async def _complete(self, execution: WorkflowExecution, keeper: LeaseKeeper) -> None:
        execution.status = ExecutionStatus.COMPLETED
        execution.current_step_id = None
        execution.progress_percentage = 100
        execution.completed_at = utcnow()
        await self._save(execution, keeper)
        await self._clear_controls(execution.id)
        logger.info(f"Execution {execution.id} completed")
        await self._emit(execution, "workflow.execution.completed")
        await self._wake_parent(execution)

    async def _fail(
        self,
        execution: WorkflowExecution,
        keeper: LeaseKeeper,
        error: Optional[ErrorDetail],
        step_id: Optional[str] = None,
    ) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.error = error
        execution.completed_at = utcnow()
        await self._save(execution, keeper)
        await self._clear_controls(execution.id)
        logger.error(
            f"Execution {execution.id} failed at step {step_id or execution.current_step_id}: "
            f"{error.message if error else 'unknown error'}"
        )
        await self._emit(
            execution,
            "workflow.execution.failed",
            step_id=step_id,
            error=error.model_dump() if error else None,
        )
        await self._wake_parent(execution)

    async def _cancel_now(
        self, execution: WorkflowExecution, lease: Lease, actor: Optional[str]
    ) -> None:
        child_id = execution.suspension.child_execution_id if execution.suspension else None
        execution.status = ExecutionStatus.CANCELLED
        execution.suspension = None
        execution.completed_at = utcnow()
        await self._repository.save_execution(execution, lease)
        await self._clear_controls(execution.id)
        logger.info(f"Execution {execution.id} cancelled")
        await self._emit(execution, "workflow.execution.cancelled", actor=actor)
        if child_id is not None:
            child = await self._repository.get_execution(child_id)
            if child is not None and not child.is_terminal:
                await self.cancel(child_id, actor)
        await self._wake_parent(execution)

    async def _clear_controls(self, execution_id: str) -> None:
        for flag in (CANCEL, SUSPEND):
            await self._repository.clear_control(execution_id, flag)

    async def _suspend_now(self, execution: WorkflowExecution, lease: Lease) -> None:
        execution.status = ExecutionStatus.SUSPENDED
        execution.suspension = Suspension(
            reason=SuspensionReason.OPERATOR, step_id=execution.current_step_id
        )
        await self._repository.save_execution(execution, lease)
        logger.info(f"Execution {execution.id} suspended by operator")
        await self._emit(
            execution, "workflow.execution.suspended", reason=SuspensionReason.OPERATOR.value
        )

    # ------------------------------------------------------------------
    # Sub-workflows
    def _child_starter(self, parent: WorkflowExecution) -> ChildStarter:
        async def start_child(step: StepSpec, variables: Dict[str, Any]) -> WorkflowExecution:
            key = f"{parent.id}:{step.id}"
            child = await self._repository.find_execution_by_key(parent.tenant_id, key)
            if child is None:
                definition = await self._store.get_published_definition(
                    parent.tenant_id, step.workflow
                )
                child, _ = await self.create(
                    definition,
                    key,
                    variables=variables,
                    trigger_type="sub_workflow",
                    trigger_data={"parent_execution_id": parent.id, "step_id": step.id},
                    actor=parent.created_by,
                    parent_execution_id=parent.id,
                )
            elif child.status == ExecutionStatus.FAILED and child.run < parent.run:
                # Retrying the parent retries the failed child as well.
                await self.retry(child.id, drive=False)
                child = await self.load(child.id)
            if child.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
                child = await self.drive(child.id)
            return child

        return start_child

    async def _wake_parent(self, child: WorkflowExecution) -> None:
        if child.parent_execution_id is None:
            return
        parent = await self._repository.get_execution(child.parent_execution_id)
        if (
            parent is None
            or parent.status != ExecutionStatus.SUSPENDED
            or parent.suspension is None
            or parent.suspension.child_execution_id != child.id
        ):
            return
        logger.info(f"Child {child.id} finished {child.status.value}, resuming parent {parent.id}")
        await self.drive(parent.id, resume_input={})

    # ------------------------------------------------------------------
    # Operator commands
    async def cancel(self, execution_id: str, actor: Optional[str] = None) -> WorkflowExecution:
        execution = await self.load(execution_id)
        if execution.is_terminal:
            raise ExecutionStateError(
                f"Cannot cancel execution in status {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        await self._audit.record(
            execution.tenant_id,
            "execution.cancel_requested",
            execution_id=execution_id,
            actor=actor,
        )
        lease = await self._repository.acquire_lease(
            execution_id, self.worker_id, self._config.lease_ttl
        )
        if lease is None:
            # A worker is running it; it will observe the flag between steps.
            await self._repository.request_control(execution_id, CANCEL)
            logger.info(f"Cancellation of {execution_id} requested")
            return await self.load(execution_id)
        try:
            execution = await self.load(execution_id)
            if not execution.is_terminal:
                await self._cancel_now(execution, lease, actor)
        finally:
            await self._repository.release_lease(lease)
        return await self.load(execution_id)

    async def suspend(self, execution_id: str, actor: Optional[str] = None) -> WorkflowExecution:
        execution = await self.load(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise ExecutionStateError(
                f"Cannot suspend execution in status {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        await self._audit.record(
            execution.tenant_id,
            "execution.suspend_requested",
            execution_id=execution_id,
            actor=actor,
        )
        lease = await self._repository.acquire_lease(
            execution_id, self.worker_id, self._config.lease_ttl
        )
        if lease is None:
            await self._repository.request_control(execution_id, SUSPEND)
            logger.info(f"Suspension of {execution_id} requested")
            return await self.load(execution_id)
        try:
            execution = await self.load(execution_id)
            if execution.status == ExecutionStatus.RUNNING:
                await self._suspend_now(execution, lease)
        finally:
            await self._repository.release_lease(lease)
        return await self.load(execution_id)

    async def resume(
        self,
        execution_id: str,
        resume_input: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> WorkflowExecution:
        execution = await self.load(execution_id)
        if execution.status != ExecutionStatus.SUSPENDED:
            raise ExecutionStateError(
                f"Cannot resume execution in status {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        merge_resume_input({}, resume_input)
        await self._audit.record(
            execution.tenant_id,
            "execution.resume_requested",
            execution_id=execution_id,
            actor=actor,
            input_keys=sorted(resume_input or {}),
        )
        return await self.drive(
            execution_id, resume_input=resume_input or {}, actor=actor, strict=True
        )

    async def retry(
        self, execution_id: str, actor: Optional[str] = None, drive: bool = True
    ) -> WorkflowExecution:
        """Re-run a FAILED execution from the step that failed."""

        execution = await self.load(execution_id)
        if execution.status != ExecutionStatus.FAILED:
            raise ExecutionStateError(
                f"Cannot retry execution in status {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        lease = await self._repository.acquire_lease(
            execution_id, self.worker_id, self._config.lease_ttl
        )
        if lease is None:
            raise ExecutionStateError(
                f"Execution {execution_id} is being processed by another worker",
                {"execution_id": execution_id},
            )
        try:
            execution = await self.load(execution_id)
            execution.status = ExecutionStatus.PENDING
            execution.error = None
            execution.completed_at = None
            execution.suspension = None
            execution.run += 1
            await self._repository.save_execution(execution, lease)
            for flag in (CANCEL, SUSPEND):
                await self._repository.clear_control(execution_id, flag)
        finally:
            await self._repository.release_lease(lease)
        logger.info(f"Retrying execution {execution_id} from step {execution.current_step_id}")
        await self._emit(
            execution, "workflow.execution.retried", actor=actor, step_id=execution.current_step_id
        )
        if not drive:
            return execution
        return await self.drive(execution_id, actor=actor)

    # ------------------------------------------------------------------
    # Worker loop helpers
    async def resume_due_timers(self, now: Optional[datetime] = None) -> List[str]:
        """Resume delay steps whose wake time has passed."""

        now = now or utcnow()
        resumed: List[str] = []
        for execution in await self._repository.list_executions(status=ExecutionStatus.SUSPENDED):
            suspension = execution.suspension
            if (
                suspension is None
                or suspension.reason != SuspensionReason.TIMER
                or suspension.wake_at is None
                or suspension.wake_at > now
            ):
                continue
            await self.drive(execution.id, resume_input={})
            resumed.append(execution.id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} executions with elapsed timers")
        return resumed

    async def run_pending(self, tenant_id: Optional[str] = None) -> List[str]:
        """Drive PENDING executions and RUNNING ones whose worker died."""

        driven: List[str] = []
        candidates = await self._repository.list_executions(
            tenant_id=tenant_id, status=ExecutionStatus.PENDING
        )
        for execution in await self._repository.list_executions(
            tenant_id=tenant_id, status=ExecutionStatus.RUNNING
        ):
            lease = await self._repository.get_lease(execution.id)
            if lease is None or lease.is_expired():
                candidates.append(execution)
        for execution in candidates:
            await self.drive(execution.id)
            driven.append(execution.id)
        return driven

    async def execution_statistics(self, tenant_id: str) -> ExecutionStatistics:
        executions = await self._repository.list_executions(tenant_id=tenant_id)
        counts = Counter(execution.status for execution in executions)
        return ExecutionStatistics(
            tenant_id=tenant_id,
            counts={status: counts.get(status, 0) for status in ExecutionStatus},
        )

    # ------------------------------------------------------------------
    async def load(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(
                f"Workflow execution not found: {execution_id}", {"execution_id": execution_id}
            )
        return execution

    async def _save(self, execution: WorkflowExecution, keeper: LeaseKeeper) -> None:
        keeper.check()
        await self._repository.save_execution(execution, keeper.lease)

    async def _emit(
        self,
        execution: WorkflowExecution,
        name: str,
        actor: Optional[str] = None,
        **details: Any,
    ) -> None:
        payload = {
            "execution_id": execution.id,
            "definition_id": execution.definition_id,
            "status": execution.status.value,
            "progress": execution.progress_percentage,
            **details,
        }
        await self._audit.record(
            execution.tenant_id, name, execution_id=execution.id, actor=actor, **details
        )
        await self._transport.publish(
            LIFECYCLE_TOPIC,
            EngineMessage(
                correlation_id=execution.id,
                tenant_id=execution.tenant_id,
                event=name,
                payload=payload,
            ),
        )
