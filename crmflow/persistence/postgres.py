"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional, Tuple

import asyncpg

from ..contracts import (
    ExecutionLogEntry,
    ExecutionStatus,
    Lease,
    RuleExecution,
    RuleExecutionStatus,
    RuleStats,
    WorkflowExecution,
    WorkflowStepExecution,
    new_id,
)
from ..errors import LeaseLost
from ..utils.time import utcnow
from .repository import ExecutionRepository


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                execution_key TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL,
                UNIQUE (tenant_id, execution_key)
            );
            CREATE TABLE IF NOT EXISTS leases (
                execution_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                token TEXT NOT NULL,
                expires_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS execution_controls (
                execution_id TEXT NOT NULL,
                flag TEXT NOT NULL,
                PRIMARY KEY (execution_id, flag)
            );
            CREATE TABLE IF NOT EXISTS step_executions (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL,
                body JSONB
            );
            CREATE TABLE IF NOT EXISTS rule_executions (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                body JSONB
            );
            CREATE TABLE IF NOT EXISTS rule_stats (
                tenant_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (tenant_id, rule_id)
            );
            CREATE TABLE IF NOT EXISTS audit_log (
                seq BIGSERIAL PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                execution_id TEXT,
                body JSONB
            );
            """
        )

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution
    ) -> Tuple[WorkflowExecution, bool]:
        conn = await self._connect()
        try:
            inserted = await conn.fetchval(
                """
                INSERT INTO executions (id, tenant_id, definition_id, execution_key, status, created_at, body)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (tenant_id, execution_key) DO NOTHING
                RETURNING id
                """,
                execution.id,
                execution.tenant_id,
                execution.definition_id,
                execution.execution_key,
                execution.status.value,
                execution.created_at,
                execution.model_dump_json(),
            )
            body = await conn.fetchval(
                "SELECT body FROM executions WHERE tenant_id = $1 AND execution_key = $2",
                execution.tenant_id,
                execution.execution_key,
            )
        finally:
            await conn.close()
        return WorkflowExecution.model_validate_json(body), inserted is not None

    async def save_execution(
        self, execution: WorkflowExecution, lease: Optional[Lease] = None
    ) -> None:
        execution.updated_at = utcnow()
        conn = await self._connect()
        try:
            async with conn.transaction():
                if lease is not None:
                    row = await conn.fetchrow(
                        "SELECT token, expires_at FROM leases WHERE execution_id = $1 FOR UPDATE",
                        execution.id,
                    )
                    if not row or row["token"] != lease.token or row["expires_at"] <= utcnow():
                        raise LeaseLost(
                            f"Lease on execution {execution.id} is no longer held",
                            {"execution_id": execution.id, "owner": lease.owner},
                        )
                await conn.execute(
                    """
                    INSERT INTO executions (id, tenant_id, definition_id, execution_key, status, created_at, body)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, body = EXCLUDED.body
                    """,
                    execution.id,
                    execution.tenant_id,
                    execution.definition_id,
                    execution.execution_key,
                    execution.status.value,
                    execution.created_at,
                    execution.model_dump_json(),
                )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            body = await conn.fetchval(
                "SELECT body FROM executions WHERE id = $1", execution_id
            )
        finally:
            await conn.close()
        return WorkflowExecution.model_validate_json(body) if body else None

    async def find_execution_by_key(
        self, tenant_id: str, execution_key: str
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            body = await conn.fetchval(
                "SELECT body FROM executions WHERE tenant_id = $1 AND execution_key = $2",
                tenant_id,
                execution_key,
            )
        finally:
            await conn.close()
        return WorkflowExecution.model_validate_json(body) if body else None

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        clauses, params = [], []
        for column, value in (
            ("tenant_id", tenant_id),
            ("status", ExecutionStatus(status).value if status is not None else None),
            ("definition_id", definition_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT body FROM executions {where} ORDER BY created_at", *params
            )
        finally:
            await conn.close()
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def acquire_lease(
        self, execution_id: str, owner: str, ttl: float
    ) -> Lease | None:
        now = utcnow()
        lease = Lease(
            execution_id=execution_id,
            owner=owner,
            token=new_id(),
            expires_at=now + timedelta(seconds=ttl),
        )
        conn = await self._connect()
        try:
            token = await conn.fetchval(
                """
                INSERT INTO leases (execution_id, owner, token, expires_at) VALUES ($1, $2, $3, $4)
                ON CONFLICT (execution_id) DO UPDATE
                SET owner = EXCLUDED.owner, token = EXCLUDED.token, expires_at = EXCLUDED.expires_at
                WHERE leases.expires_at <= $5
                RETURNING token
                """,
                execution_id,
                owner,
                lease.token,
                lease.expires_at,
                now,
            )
        finally:
            await conn.close()
        return lease if token == lease.token else None

    async def renew_lease(self, lease: Lease, ttl: float) -> Lease | None:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl)
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE leases SET expires_at = $1 WHERE execution_id = $2 AND token = $3 AND expires_at > $4",
                expires_at,
                lease.execution_id,
                lease.token,
                now,
            )
        finally:
            await conn.close()
        if status != "UPDATE 1":
            return None
        return lease.model_copy(update={"expires_at": expires_at})

    async def release_lease(self, lease: Lease) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM leases WHERE execution_id = $1 AND token = $2",
                lease.execution_id,
                lease.token,
            )
        finally:
            await conn.close()

    async def get_lease(self, execution_id: str) -> Lease | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT execution_id, owner, token, expires_at FROM leases WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return Lease(**dict(row)) if row else None

    # ------------------------------------------------------------------
    async def request_control(self, execution_id: str, flag: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO execution_controls (execution_id, flag) VALUES ($1, $2) ON CONFLICT DO NOTHING",
                execution_id,
                flag,
            )
        finally:
            await conn.close()

    async def get_controls(self, execution_id: str) -> set[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT flag FROM execution_controls WHERE execution_id = $1", execution_id
            )
        finally:
            await conn.close()
        return {r["flag"] for r in rows}

    async def clear_control(self, execution_id: str, flag: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM execution_controls WHERE execution_id = $1 AND flag = $2",
                execution_id,
                flag,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_step_execution(
        self, record: WorkflowStepExecution
    ) -> WorkflowStepExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if not record.sequence:
                    record.sequence = await conn.fetchval(
                        "INSERT INTO step_executions (id, execution_id) VALUES ($1, $2) RETURNING seq",
                        record.id,
                        record.execution_id,
                    )
                await conn.execute(
                    "UPDATE step_executions SET body = $1 WHERE id = $2",
                    record.model_dump_json(),
                    record.id,
                )
        finally:
            await conn.close()
        return record

    async def list_step_executions(
        self, execution_id: str
    ) -> list[WorkflowStepExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM step_executions WHERE execution_id = $1 ORDER BY seq",
                execution_id,
            )
        finally:
            await conn.close()
        return [WorkflowStepExecution.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def save_rule_execution(self, record: RuleExecution) -> RuleExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if not record.sequence:
                    record.sequence = await conn.fetchval(
                        """
                        INSERT INTO rule_executions (id, tenant_id, rule_id, event_id)
                        VALUES ($1, $2, $3, $4) RETURNING seq
                        """,
                        record.id,
                        record.tenant_id,
                        record.rule_id,
                        record.event_id,
                    )
                await conn.execute(
                    "UPDATE rule_executions SET body = $1 WHERE id = $2",
                    record.model_dump_json(),
                    record.id,
                )
        finally:
            await conn.close()
        return record

    async def list_rule_executions(
        self,
        tenant_id: str,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> list[RuleExecution]:
        clauses, params = ["tenant_id = $1"], [tenant_id]
        for column, value in (("rule_id", rule_id), ("event_id", event_id)):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT body FROM rule_executions WHERE {' AND '.join(clauses)} ORDER BY seq",
                *params,
            )
        finally:
            await conn.close()
        return [RuleExecution.model_validate_json(r["body"]) for r in rows]

    async def update_rule_stats(
        self,
        tenant_id: str,
        rule_id: str,
        status: RuleExecutionStatus,
        window: int,
    ) -> RuleStats:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO rule_stats (tenant_id, rule_id, body) VALUES ($1, $2, $3)
                    ON CONFLICT DO NOTHING
                    """,
                    tenant_id,
                    rule_id,
                    RuleStats(tenant_id=tenant_id, rule_id=rule_id).model_dump_json(),
                )
                body = await conn.fetchval(
                    "SELECT body FROM rule_stats WHERE tenant_id = $1 AND rule_id = $2 FOR UPDATE",
                    tenant_id,
                    rule_id,
                )
                stats = RuleStats.model_validate_json(body)
                stats.record(status, window)
                await conn.execute(
                    "UPDATE rule_stats SET body = $1 WHERE tenant_id = $2 AND rule_id = $3",
                    stats.model_dump_json(),
                    tenant_id,
                    rule_id,
                )
        finally:
            await conn.close()
        return stats

    async def set_rule_flag(self, tenant_id: str, rule_id: str, flagged: bool) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO rule_stats (tenant_id, rule_id, body) VALUES ($1, $2, $3)
                ON CONFLICT (tenant_id, rule_id) DO UPDATE
                SET body = jsonb_set(rule_stats.body, '{flagged}', to_jsonb($4::boolean))
                """,
                tenant_id,
                rule_id,
                RuleStats(tenant_id=tenant_id, rule_id=rule_id, flagged=flagged).model_dump_json(),
                flagged,
            )
        finally:
            await conn.close()

    async def list_rule_stats(self, tenant_id: str) -> list[RuleStats]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM rule_stats WHERE tenant_id = $1", tenant_id
            )
        finally:
            await conn.close()
        return [RuleStats.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        conn = await self._connect()
        try:
            async with conn.transaction():
                entry.sequence = await conn.fetchval(
                    "INSERT INTO audit_log (tenant_id, execution_id) VALUES ($1, $2) RETURNING seq",
                    entry.tenant_id,
                    entry.execution_id,
                )
                await conn.execute(
                    "UPDATE audit_log SET body = $1 WHERE seq = $2",
                    entry.model_dump_json(),
                    entry.sequence,
                )
        finally:
            await conn.close()
        return entry

    async def list_log(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> list[ExecutionLogEntry]:
        conn = await self._connect()
        try:
            if execution_id is None:
                rows = await conn.fetch(
                    "SELECT body FROM audit_log WHERE tenant_id = $1 ORDER BY seq", tenant_id
                )
            else:
                rows = await conn.fetch(
                    "SELECT body FROM audit_log WHERE tenant_id = $1 AND execution_id = $2 ORDER BY seq",
                    tenant_id,
                    execution_id,
                )
        finally:
            await conn.close()
        return [ExecutionLogEntry.model_validate_json(r["body"]) for r in rows]
