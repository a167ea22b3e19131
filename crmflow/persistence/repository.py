"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import Optional, Protocol, Tuple

from ..contracts import (
    ExecutionLogEntry,
    ExecutionStatus,
    Lease,
    RuleExecution,
    RuleExecutionStatus,
    RuleStats,
    WorkflowExecution,
    WorkflowStepExecution,
)

CANCEL = "cancel"
SUSPEND = "suspend"


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends.

    Execution writes are fenced: when a ``lease`` is passed to
    :meth:`save_execution`, the write only succeeds while that lease is still
    the current, unexpired lease of the execution; otherwise ``LeaseLost`` is
    raised and nothing is written.
    """

    # Executions --------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution
    ) -> Tuple[WorkflowExecution, bool]:
        """Insert unless (tenant, execution_key) exists; return (stored, created)."""

    async def save_execution(
        self, execution: WorkflowExecution, lease: Optional[Lease] = None
    ) -> None:
        """Transactional upsert of the execution state."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def find_execution_by_key(
        self, tenant_id: str, execution_key: str
    ) -> WorkflowExecution | None:
        """Retrieve an execution by its idempotency key."""

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        """Return executions, oldest first."""

    # Leases ------------------------------------------------------------
    async def acquire_lease(
        self, execution_id: str, owner: str, ttl: float
    ) -> Lease | None:
        """Take the lease if it is free or expired (compare-and-swap)."""

    async def renew_lease(self, lease: Lease, ttl: float) -> Lease | None:
        """Extend an unexpired lease still held by ``lease.token``."""

    async def release_lease(self, lease: Lease) -> None:
        """Drop the lease if still held by ``lease.token``."""

    async def get_lease(self, execution_id: str) -> Lease | None:
        """Return the current lease row, expired or not."""

    # Cooperative control flags ------------------------------------------
    async def request_control(self, execution_id: str, flag: str) -> None:
        """Raise a cancel/suspend flag for the lease holder to observe."""

    async def get_controls(self, execution_id: str) -> set[str]:
        """Return the raised control flags."""

    async def clear_control(self, execution_id: str, flag: str) -> None:
        """Lower a control flag."""

    # Step executions ---------------------------------------------------
    async def save_step_execution(
        self, record: WorkflowStepExecution
    ) -> WorkflowStepExecution:
        """Insert or update a step record; assigns ``sequence`` on insert."""

    async def list_step_executions(
        self, execution_id: str
    ) -> list[WorkflowStepExecution]:
        """Return step records in creation order."""

    # Rules -------------------------------------------------------------
    async def save_rule_execution(self, record: RuleExecution) -> RuleExecution:
        """Persist a rule execution; assigns ``sequence`` on insert."""

    async def list_rule_executions(
        self,
        tenant_id: str,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> list[RuleExecution]:
        """Return rule executions in evaluation order."""

    async def update_rule_stats(
        self,
        tenant_id: str,
        rule_id: str,
        status: RuleExecutionStatus,
        window: int,
    ) -> RuleStats:
        """Atomically fold one outcome into the rule counters."""

    async def set_rule_flag(self, tenant_id: str, rule_id: str, flagged: bool) -> None:
        """Set the health flag of a rule without touching its counters."""

    async def list_rule_stats(self, tenant_id: str) -> list[RuleStats]:
        """Return counters for every evaluated rule of a tenant."""

    # Audit trail -------------------------------------------------------
    async def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        """Append an audit entry; assigns ``sequence``."""

    async def list_log(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> list[ExecutionLogEntry]:
        """Return audit entries in append order."""
