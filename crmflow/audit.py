"""Append-only audit trail of engine operations."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .contracts import ExecutionLogEntry
from .persistence import ExecutionRepository

logger = logging.getLogger(__name__)


class ExecutionLog:
    """Records who did what to which execution or rule."""

    def __init__(self, repository: ExecutionRepository) -> None:
        self._repository = repository

    async def record(
        self,
        tenant_id: str,
        event: str,
        execution_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        actor: Optional[str] = None,
        **details: Any,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            tenant_id=tenant_id,
            event=event,
            execution_id=execution_id,
            rule_id=rule_id,
            actor=actor,
            details=details,
        )
        entry = await self._repository.append_log(entry)
        logger.debug(f"Audit {entry.sequence}: {event} {execution_id or rule_id or ''}")
        return entry

    async def entries(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> List[ExecutionLogEntry]:
        return await self._repository.list_log(tenant_id, execution_id)

