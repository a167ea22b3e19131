"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Set, Tuple

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
from ..errors import LeaseLost
from ..utils.time import utcnow
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._executions: Dict[str, WorkflowExecution] = {}
        self._keys: Dict[Tuple[str, str], str] = {}
        self._leases: Dict[str, Lease] = {}
        self._controls: Dict[str, Set[str]] = defaultdict(set)
        self._steps: Dict[str, WorkflowStepExecution] = {}
        self._rule_executions: Dict[str, RuleExecution] = {}
        self._rule_stats: Dict[Tuple[str, str], RuleStats] = {}
        self._log: List[ExecutionLogEntry] = []
        self._sequence = 0

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _check_lease(self, execution_id: str, lease: Optional[Lease]) -> None:
        if lease is None:
            return
        current = self._leases.get(execution_id)
        if current is None or current.token != lease.token or current.is_expired():
            raise LeaseLost(
                f"Lease on execution {execution_id} is no longer held",
                {"execution_id": execution_id, "owner": lease.owner},
            )

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution
    ) -> Tuple[WorkflowExecution, bool]:
        async with self._lock:
            key = (execution.tenant_id, execution.execution_key)
            existing_id = self._keys.get(key)
            if existing_id is not None:
                return self._executions[existing_id].model_copy(deep=True), False
            self._keys[key] = execution.id
            self._executions[execution.id] = execution.model_copy(deep=True)
            return execution.model_copy(deep=True), True

    async def save_execution(
        self, execution: WorkflowExecution, lease: Optional[Lease] = None
    ) -> None:
        async with self._lock:
            self._check_lease(execution.id, lease)
            execution.updated_at = utcnow()
            self._keys[(execution.tenant_id, execution.execution_key)] = execution.id
            self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def find_execution_by_key(
        self, tenant_id: str, execution_key: str
    ) -> WorkflowExecution | None:
        execution_id = self._keys.get((tenant_id, execution_key))
        return await self.get_execution(execution_id) if execution_id else None

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._executions.values(), key=lambda e: e.created_at)
            if (tenant_id is None or e.tenant_id == tenant_id)
            and (status is None or e.status == status)
            and (definition_id is None or e.definition_id == definition_id)
        ]

    # ------------------------------------------------------------------
    async def acquire_lease(
        self, execution_id: str, owner: str, ttl: float
    ) -> Lease | None:
        async with self._lock:
            now = utcnow()
            current = self._leases.get(execution_id)
            if current is not None and not current.is_expired(now):
                return None
            lease = Lease(
                execution_id=execution_id,
                owner=owner,
                expires_at=now + timedelta(seconds=ttl),
            )
            self._leases[execution_id] = lease
            return lease.model_copy()

    async def renew_lease(self, lease: Lease, ttl: float) -> Lease | None:
        async with self._lock:
            now = utcnow()
            current = self._leases.get(lease.execution_id)
            if current is None or current.token != lease.token or current.is_expired(now):
                return None
            current.expires_at = now + timedelta(seconds=ttl)
            return current.model_copy()

    async def release_lease(self, lease: Lease) -> None:
        async with self._lock:
            current = self._leases.get(lease.execution_id)
            if current is not None and current.token == lease.token:
                del self._leases[lease.execution_id]

    async def get_lease(self, execution_id: str) -> Lease | None:
        lease = self._leases.get(execution_id)
        return lease.model_copy() if lease else None

    # ------------------------------------------------------------------
    async def request_control(self, execution_id: str, flag: str) -> None:
        self._controls[execution_id].add(flag)

    async def get_controls(self, execution_id: str) -> set[str]:
        return set(self._controls.get(execution_id, set()))

    async def clear_control(self, execution_id: str, flag: str) -> None:
        self._controls[execution_id].discard(flag)

    # ------------------------------------------------------------------
    async def save_step_execution(
        self, record: WorkflowStepExecution
    ) -> WorkflowStepExecution:
        async with self._lock:
            if not record.sequence:
                record.sequence = self._next_sequence()
            self._steps[record.id] = record.model_copy(deep=True)
            return record

    async def list_step_executions(
        self, execution_id: str
    ) -> list[WorkflowStepExecution]:
        return [
            s.model_copy(deep=True)
            for s in sorted(self._steps.values(), key=lambda s: s.sequence)
            if s.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    async def save_rule_execution(self, record: RuleExecution) -> RuleExecution:
        async with self._lock:
            if not record.sequence:
                record.sequence = self._next_sequence()
            self._rule_executions[record.id] = record.model_copy(deep=True)
            return record

    async def list_rule_executions(
        self,
        tenant_id: str,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> list[RuleExecution]:
        return [
            r.model_copy(deep=True)
            for r in sorted(self._rule_executions.values(), key=lambda r: r.sequence)
            if r.tenant_id == tenant_id
            and (rule_id is None or r.rule_id == rule_id)
            and (event_id is None or r.event_id == event_id)
        ]

    async def update_rule_stats(
        self,
        tenant_id: str,
        rule_id: str,
        status: RuleExecutionStatus,
        window: int,
    ) -> RuleStats:
        async with self._lock:
            stats = self._rule_stats.get((tenant_id, rule_id)) or RuleStats(
                tenant_id=tenant_id, rule_id=rule_id
            )
            stats.record(status, window)
            self._rule_stats[(tenant_id, rule_id)] = stats
            return stats.model_copy(deep=True)

    async def set_rule_flag(self, tenant_id: str, rule_id: str, flagged: bool) -> None:
        async with self._lock:
            stats = self._rule_stats.setdefault(
                (tenant_id, rule_id), RuleStats(tenant_id=tenant_id, rule_id=rule_id)
            )
            stats.flagged = flagged

    async def list_rule_stats(self, tenant_id: str) -> list[RuleStats]:
        return [
            s.model_copy(deep=True)
            for (tenant, _), s in self._rule_stats.items()
            if tenant == tenant_id
        ]

    # ------------------------------------------------------------------
    async def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        async with self._lock:
            entry.sequence = self._next_sequence()
            self._log.append(entry.model_copy(deep=True))
            return entry

    async def list_log(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> list[ExecutionLogEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._log
            if e.tenant_id == tenant_id
            and (execution_id is None or e.execution_id == execution_id)
        ]
