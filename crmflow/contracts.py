"""Core records exchanged between the crmflow engine components.

Records reference each other by id only; every cross-entity read goes through
a store or repository call and returns a plain model.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .utils.time import elapsed_ms, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


END_STEP = "$end"


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    DEACTIVATED = "deactivated"


class RuleType(str, Enum):
    VALIDATION = "validation"
    ASSIGNMENT = "assignment"
    NOTIFICATION = "notification"
    FIELD_UPDATE = "field_update"
    WORKFLOW_TRIGGER = "workflow_trigger"


class RuleExecutionStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SuspensionReason(str, Enum):
    HUMAN_TASK = "human_task"
    TIMER = "timer"
    OPERATOR = "operator"
    SUB_WORKFLOW = "sub_workflow"
    CALLBACK = "callback"


class ErrorDetail(BaseModel):
    """Error message plus structured context kept on failed records."""

    type: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorDetail":
        return cls(
            type=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
            context=dict(getattr(exc, "context", None) or {}),
        )


# ---------------------------------------------------------------------------
# Workflow definitions


class _StepBase(BaseModel):
    """Fields shared by every step kind."""

    id: str
    name: Optional[str] = None
    on_failure: Literal["fail", "skip"] = "fail"
    max_attempts: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    next: Optional[str] = None
    transitions: Dict[str, str] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def branches(self) -> bool:
        return bool(self.next or self.transitions)


class ComputeStep(_StepBase):
    """Runs a registered Python callable inline."""

    kind: Literal["compute"] = "compute"
    handler: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ExternalCallStep(_StepBase):
    """Performs an HTTP request against an external system."""

    kind: Literal["external_call"] = "external_call"
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None
    async_callback: bool = False


class DelayStep(_StepBase):
    """Suspends the execution until a timer fires."""

    kind: Literal["delay"] = "delay"
    seconds: float = Field(ge=0)


class HumanTaskStep(_StepBase):
    """Suspends the execution until a person supplies input."""

    kind: Literal["human_task"] = "human_task"
    assignee: Optional[str] = None
    form: Dict[str, Any] = Field(default_factory=dict)


class SubWorkflowStep(_StepBase):
    """Starts a child execution of another published definition."""

    kind: Literal["sub_workflow"] = "sub_workflow"
    workflow: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    pass_variables: bool = True


StepSpec = Annotated[
    Union[ComputeStep, ExternalCallStep, DelayStep, HumanTaskStep, SubWorkflowStep],
    Field(discriminator="kind"),
]

STEP_KINDS = ("compute", "external_call", "delay", "human_task", "sub_workflow")


class TriggerSpec(BaseModel):
    """Event type and filter that start a workflow."""

    event_type: str
    entity_type: Optional[str] = None
    conditions: Any = None


class VariableSpec(BaseModel):
    type: Literal["string", "number", "integer", "boolean", "object", "array", "any"] = "any"
    required: bool = False
    default: Any = None
    description: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """Versioned workflow definition, identified by (tenant, name, version)."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    status: DefinitionStatus = DefinitionStatus.DRAFT
    steps: List[StepSpec] = Field(default_factory=list)
    trigger: Optional[TriggerSpec] = None
    variables_schema: Dict[str, VariableSpec] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def step(self, step_id: str) -> Optional[StepSpec]:
        return next((s for s in self.steps if s.id == step_id), None)

    def index_of(self, step_id: str) -> int:
        for idx, step in enumerate(self.steps):
            if step.id == step_id:
                return idx
        return -1

    @property
    def first_step_id(self) -> Optional[str]:
        return self.steps[0].id if self.steps else None

    @property
    def is_linear(self) -> bool:
        return not any(step.branches for step in self.steps)

    @property
    def is_published(self) -> bool:
        return self.status == DefinitionStatus.PUBLISHED


# ---------------------------------------------------------------------------
# Business rules


class RuleAction(BaseModel):
    """One action of a rule; type-specific parameters are kept as extras."""

    model_config = ConfigDict(extra="allow")

    type: str

    @property
    def params(self) -> Dict[str, Any]:
        extra = dict(self.model_extra or {})
        nested = extra.pop("params", None)
        if isinstance(nested, dict):
            extra.update(nested)
        return extra


class BusinessRule(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    name: str
    description: Optional[str] = None
    rule_type: RuleType = RuleType.FIELD_UPDATE
    entity_type: str
    triggers: List[str] = Field(default_factory=list)
    conditions: Any = None
    actions: List[RuleAction] = Field(default_factory=list)
    is_active: bool = True
    priority: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    def listens_to(self, trigger: str) -> bool:
        return not self.triggers or trigger in self.triggers


class RuleStats(BaseModel):
    """Running counters of one rule, owned by the rule engine."""

    tenant_id: str
    rule_id: str
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    recent_failures: List[bool] = Field(default_factory=list)
    flagged: bool = False
    last_evaluated_at: Optional[datetime] = None

    @property
    def failure_ratio(self) -> float:
        if not self.recent_failures:
            return 0.0
        return sum(self.recent_failures) / len(self.recent_failures)

    def record(self, status: "RuleExecutionStatus", window: int) -> None:
        self.execution_count += 1
        self.last_evaluated_at = utcnow()
        if status == RuleExecutionStatus.SUCCEEDED:
            self.success_count += 1
        elif status == RuleExecutionStatus.FAILED:
            self.failure_count += 1
        if status in (RuleExecutionStatus.SUCCEEDED, RuleExecutionStatus.FAILED):
            self.recent_failures.append(status == RuleExecutionStatus.FAILED)
            del self.recent_failures[:-window]


class DomainEvent(BaseModel):
    """Something that happened to a CRM entity, e.g. a deal changing stage."""

    event_id: str = Field(default_factory=new_id)
    tenant_id: str
    entity_type: str
    entity_id: str
    trigger: str
    data: Dict[str, Any] = Field(default_factory=dict)
    previous: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class RuleExecution(BaseModel):
    """Outcome of evaluating one rule against one event."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    rule_id: str
    rule_name: str
    priority: int
    event_id: str
    entity_type: str
    entity_id: str
    trigger: str
    status: RuleExecutionStatus = RuleExecutionStatus.UNMATCHED
    sequence: int = 0
    evaluated_at: datetime = Field(default_factory=utcnow)
    duration_ms: Optional[int] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    actions_completed: List[str] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None


RuleExecutionView = RuleExecution


# ---------------------------------------------------------------------------
# Executions


class Suspension(BaseModel):
    reason: SuspensionReason
    step_id: Optional[str] = None
    wake_at: Optional[datetime] = None
    child_execution_id: Optional[str] = None
    since: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecution(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    definition_id: str
    definition_name: Optional[str] = None
    definition_version: Optional[int] = None
    execution_key: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    progress_percentage: int = 0
    completed_steps: int = 0
    run: int = 1
    trigger_type: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    parent_execution_id: Optional[str] = None
    suspension: Optional[Suspension] = None
    error: Optional[ErrorDetail] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class WorkflowStepExecution(BaseModel):
    """One attempt at running one step of an execution."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    execution_id: str
    step_id: str
    step_name: str
    kind: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 1
    retry_count: int = 0
    sequence: int = 0
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[ErrorDetail] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    def mark_started(self) -> None:
        self.status = StepStatus.RUNNING
        self.started_at = utcnow()

    def _finish(self, status: StepStatus) -> None:
        self.status = status
        self.completed_at = utcnow()
        if self.started_at is not None:
            self.duration_ms = elapsed_ms(self.started_at, self.completed_at)

    def mark_completed(self, output: Optional[Dict[str, Any]]) -> None:
        self.output_data = output or {}
        self._finish(StepStatus.COMPLETED)

    def mark_failed(self, error: ErrorDetail, partial_output: Optional[Dict[str, Any]] = None) -> None:
        self.error = error
        if partial_output is not None:
            self.output_data = partial_output
        self._finish(StepStatus.FAILED)

    def mark_suspended(self, output: Optional[Dict[str, Any]] = None) -> None:
        self.output_data = output
        self._finish(StepStatus.SUSPENDED)


class StepResult(BaseModel):
    """What the step executor reports back to the coordinator."""

    status: StepStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorDetail] = None
    retryable: bool = False
    suspension: Optional[Suspension] = None
    attempts: int = 1

    @classmethod
    def completed(cls, output: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(status=StepStatus.COMPLETED, output=output or {})

    @classmethod
    def suspend(cls, suspension: Suspension, output: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(status=StepStatus.SUSPENDED, suspension=suspension, output=output or {})

    @classmethod
    def failed(
        cls,
        error: ErrorDetail,
        retryable: bool = False,
        output: Optional[Dict[str, Any]] = None,
    ) -> "StepResult":
        return cls(status=StepStatus.FAILED, error=error, retryable=retryable, output=output or {})


class Lease(BaseModel):
    """Time-bounded right of one worker to advance one execution."""

    execution_id: str
    owner: str
    token: str = Field(default_factory=new_id)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class ExecutionLogEntry(BaseModel):
    """Append-only audit trail entry."""

    sequence: int = 0
    tenant_id: str
    event: str
    execution_id: Optional[str] = None
    rule_id: Optional[str] = None
    actor: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utcnow)


class ExecutionHandle(BaseModel):
    execution_id: str
    execution_key: str
    status: ExecutionStatus
    created: bool = True


class ExecutionView(BaseModel):
    execution: WorkflowExecution
    steps: List[WorkflowStepExecution] = Field(default_factory=list)
    cancel_requested: bool = False
    suspend_requested: bool = False

    @property
    def status(self) -> ExecutionStatus:
        return self.execution.status


class ExecutionStatistics(BaseModel):
    tenant_id: str
    counts: Dict[ExecutionStatus, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class RuleStatistics(BaseModel):
    tenant_id: str
    total_rules: int = 0
    active_rules: int = 0
    by_rule_type: Dict[str, int] = Field(default_factory=dict)
    by_entity_type: Dict[str, int] = Field(default_factory=dict)
    rules: List[RuleStats] = Field(default_factory=list)

    @property
    def flagged(self) -> List[str]:
        return [stats.rule_id for stats in self.rules if stats.flagged]


class EventOutcome(BaseModel):
    """What handling one domain event produced."""

    event_id: str
    rule_executions: List[RuleExecution] = Field(default_factory=list)
    executions: List[ExecutionHandle] = Field(default_factory=list)


class RuleTestResult(BaseModel):
    rule_id: str
    conditions_met: bool
    actions: List[str] = Field(default_factory=list)
    duration_ms: int = 0
    error: Optional[ErrorDetail] = None


class EngineMessage(BaseModel):
    """
    Envelope exchanged over the transport: lifecycle notifications going out,
    domain events and action requests flowing between services.
    """

    message_id: str = Field(default_factory=new_id)
    correlation_id: str
    tenant_id: str
    event: str
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EngineMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
