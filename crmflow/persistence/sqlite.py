"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

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


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite.

    Records are stored as JSON documents next to the columns used for lookups.
    Lease acquisition is a conditional upsert so it stays a compare-and-swap
    even when several processes share the database file.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                definition_id TEXT NOT NULL,
                execution_key TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                body TEXT NOT NULL,
                UNIQUE (tenant_id, execution_key)
            );
            CREATE TABLE IF NOT EXISTS leases (
                execution_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                token TEXT NOT NULL,
                expires_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS execution_controls (
                execution_id TEXT NOT NULL,
                flag TEXT NOT NULL,
                PRIMARY KEY (execution_id, flag)
            );
            CREATE TABLE IF NOT EXISTS step_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL,
                body TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS rule_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                body TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS rule_stats (
                tenant_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (tenant_id, rule_id)
            );
            CREATE TABLE IF NOT EXISTS audit_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                execution_id TEXT,
                body TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _lease_held(self, cur: sqlite3.Cursor, lease: Lease) -> bool:
        cur.execute(
            "SELECT token, expires_at FROM leases WHERE execution_id = ?",
            (lease.execution_id,),
        )
        row = cur.fetchone()
        return bool(row) and row["token"] == lease.token and row["expires_at"] > _ts(utcnow())

    # ------------------------------------------------------------------
    # Executions
    def _insert_execution(self, execution: WorkflowExecution) -> Tuple[WorkflowExecution, bool]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO executions (id, tenant_id, definition_id, execution_key, status, created_at, body)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, execution_key) DO NOTHING
                """,
                (
                    execution.id,
                    execution.tenant_id,
                    execution.definition_id,
                    execution.execution_key,
                    execution.status.value,
                    _ts(execution.created_at),
                    execution.model_dump_json(),
                ),
            )
            created = cur.rowcount == 1
            self._conn.commit()
            cur.execute(
                "SELECT body FROM executions WHERE tenant_id = ? AND execution_key = ?",
                (execution.tenant_id, execution.execution_key),
            )
            row = cur.fetchone()
        return WorkflowExecution.model_validate_json(row["body"]), created

    async def create_execution(
        self, execution: WorkflowExecution
    ) -> Tuple[WorkflowExecution, bool]:
        return await asyncio.to_thread(self._insert_execution, execution)

    def _upsert_execution(self, execution: WorkflowExecution, lease: Optional[Lease]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                if lease is not None and not self._lease_held(cur, lease):
                    raise LeaseLost(
                        f"Lease on execution {execution.id} is no longer held",
                        {"execution_id": execution.id, "owner": lease.owner},
                    )
                cur.execute(
                    """
                    INSERT INTO executions (id, tenant_id, definition_id, execution_key, status, created_at, body)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET status = excluded.status, body = excluded.body
                    """,
                    (
                        execution.id,
                        execution.tenant_id,
                        execution.definition_id,
                        execution.execution_key,
                        execution.status.value,
                        _ts(execution.created_at),
                        execution.model_dump_json(),
                    ),
                )
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()

    async def save_execution(
        self, execution: WorkflowExecution, lease: Optional[Lease] = None
    ) -> None:
        execution.updated_at = utcnow()
        await asyncio.to_thread(self._upsert_execution, execution, lease)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM executions WHERE id = ?", execution_id
        )
        return WorkflowExecution.model_validate_json(row["body"]) if row else None

    async def find_execution_by_key(
        self, tenant_id: str, execution_key: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM executions WHERE tenant_id = ? AND execution_key = ?",
            tenant_id,
            execution_key,
        )
        return WorkflowExecution.model_validate_json(row["body"]) if row else None

    async def list_executions(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> list[WorkflowExecution]:
        clauses, params = [], []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        if definition_id is not None:
            clauses.append("definition_id = ?")
            params.append(definition_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT body FROM executions {where} ORDER BY created_at",
            *params,
        )
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Leases
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
        changed = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO leases (execution_id, owner, token, expires_at) VALUES (?, ?, ?, ?)
            ON CONFLICT (execution_id) DO UPDATE
            SET owner = excluded.owner, token = excluded.token, expires_at = excluded.expires_at
            WHERE leases.expires_at <= ?
            """,
            execution_id,
            owner,
            lease.token,
            _ts(lease.expires_at),
            _ts(now),
        )
        return lease if changed == 1 else None

    async def renew_lease(self, lease: Lease, ttl: float) -> Lease | None:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl)
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE leases SET expires_at = ? WHERE execution_id = ? AND token = ? AND expires_at > ?",
            _ts(expires_at),
            lease.execution_id,
            lease.token,
            _ts(now),
        )
        if changed != 1:
            return None
        return lease.model_copy(update={"expires_at": expires_at})

    async def release_lease(self, lease: Lease) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM leases WHERE execution_id = ? AND token = ?",
            lease.execution_id,
            lease.token,
        )

    async def get_lease(self, execution_id: str) -> Lease | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT execution_id, owner, token, expires_at FROM leases WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        return Lease(
            execution_id=row["execution_id"],
            owner=row["owner"],
            token=row["token"],
            expires_at=_dt(row["expires_at"]),
        )

    # ------------------------------------------------------------------
    # Control flags
    async def request_control(self, execution_id: str, flag: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO execution_controls (execution_id, flag) VALUES (?, ?)",
            execution_id,
            flag,
        )

    async def get_controls(self, execution_id: str) -> set[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT flag FROM execution_controls WHERE execution_id = ?",
            execution_id,
        )
        return {r["flag"] for r in rows}

    async def clear_control(self, execution_id: str, flag: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM execution_controls WHERE execution_id = ? AND flag = ?",
            execution_id,
            flag,
        )

    # ------------------------------------------------------------------
    # Step executions
    def _upsert_step(self, record: WorkflowStepExecution) -> WorkflowStepExecution:
        with self._lock:
            cur = self._conn.cursor()
            if record.sequence:
                cur.execute(
                    "UPDATE step_executions SET body = ? WHERE id = ?",
                    (record.model_dump_json(), record.id),
                )
            else:
                cur.execute(
                    "INSERT INTO step_executions (id, execution_id, body) VALUES (?, ?, ?)",
                    (record.id, record.execution_id, ""),
                )
                record.sequence = cur.lastrowid
                cur.execute(
                    "UPDATE step_executions SET body = ? WHERE seq = ?",
                    (record.model_dump_json(), record.sequence),
                )
            self._conn.commit()
        return record

    async def save_step_execution(
        self, record: WorkflowStepExecution
    ) -> WorkflowStepExecution:
        return await asyncio.to_thread(self._upsert_step, record)

    async def list_step_executions(
        self, execution_id: str
    ) -> list[WorkflowStepExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM step_executions WHERE execution_id = ? ORDER BY seq",
            execution_id,
        )
        return [WorkflowStepExecution.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Rules
    def _upsert_rule_execution(self, record: RuleExecution) -> RuleExecution:
        with self._lock:
            cur = self._conn.cursor()
            if record.sequence:
                cur.execute(
                    "UPDATE rule_executions SET body = ? WHERE id = ?",
                    (record.model_dump_json(), record.id),
                )
            else:
                cur.execute(
                    "INSERT INTO rule_executions (id, tenant_id, rule_id, event_id, body) VALUES (?, ?, ?, ?, ?)",
                    (record.id, record.tenant_id, record.rule_id, record.event_id, ""),
                )
                record.sequence = cur.lastrowid
                cur.execute(
                    "UPDATE rule_executions SET body = ? WHERE seq = ?",
                    (record.model_dump_json(), record.sequence),
                )
            self._conn.commit()
        return record

    async def save_rule_execution(self, record: RuleExecution) -> RuleExecution:
        return await asyncio.to_thread(self._upsert_rule_execution, record)

    async def list_rule_executions(
        self,
        tenant_id: str,
        rule_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> list[RuleExecution]:
        clauses, params = ["tenant_id = ?"], [tenant_id]
        if rule_id is not None:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if event_id is not None:
            clauses.append("event_id = ?")
            params.append(event_id)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT body FROM rule_executions WHERE {' AND '.join(clauses)} ORDER BY seq",
            *params,
        )
        return [RuleExecution.model_validate_json(r["body"]) for r in rows]

    def _fold_rule_stats(
        self, tenant_id: str, rule_id: str, update: Callable[[RuleStats], None]
    ) -> RuleStats:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    "SELECT body FROM rule_stats WHERE tenant_id = ? AND rule_id = ?",
                    (tenant_id, rule_id),
                )
                row = cur.fetchone()
                stats = (
                    RuleStats.model_validate_json(row["body"])
                    if row
                    else RuleStats(tenant_id=tenant_id, rule_id=rule_id)
                )
                update(stats)
                cur.execute(
                    "INSERT OR REPLACE INTO rule_stats (tenant_id, rule_id, body) VALUES (?, ?, ?)",
                    (tenant_id, rule_id, stats.model_dump_json()),
                )
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
        return stats

    async def update_rule_stats(
        self,
        tenant_id: str,
        rule_id: str,
        status: RuleExecutionStatus,
        window: int,
    ) -> RuleStats:
        return await asyncio.to_thread(
            self._fold_rule_stats,
            tenant_id,
            rule_id,
            lambda stats: stats.record(status, window),
        )

    async def set_rule_flag(self, tenant_id: str, rule_id: str, flagged: bool) -> None:
        def update(stats: RuleStats) -> None:
            stats.flagged = flagged

        await asyncio.to_thread(self._fold_rule_stats, tenant_id, rule_id, update)

    async def list_rule_stats(self, tenant_id: str) -> list[RuleStats]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT body FROM rule_stats WHERE tenant_id = ?", tenant_id
        )
        return [RuleStats.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Audit trail
    def _insert_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "INSERT INTO audit_log (tenant_id, execution_id, body) VALUES (?, ?, ?)",
                (entry.tenant_id, entry.execution_id, ""),
            )
            entry.sequence = cur.lastrowid
            cur.execute(
                "UPDATE audit_log SET body = ? WHERE seq = ?",
                (entry.model_dump_json(), entry.sequence),
            )
            self._conn.commit()
        return entry

    async def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        return await asyncio.to_thread(self._insert_log, entry)

    async def list_log(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> list[ExecutionLogEntry]:
        if execution_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM audit_log WHERE tenant_id = ? ORDER BY seq",
                tenant_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM audit_log WHERE tenant_id = ? AND execution_id = ? ORDER BY seq",
                tenant_id,
                execution_id,
            )
        return [ExecutionLogEntry.model_validate_json(r["body"]) for r in rows]

    def close(self) -> None:
        self._conn.close()
