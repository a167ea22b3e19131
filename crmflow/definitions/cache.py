"""Per-tenant TTL cache in front of a definition store."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..contracts import BusinessRule, WorkflowDefinition
from ..errors import NoActiveRules
from .store import DefinitionStore

logger = logging.getLogger(__name__)

_MISSING_RULES = object()


class CachedDefinitionStore(DefinitionStore):
    """Caches reads of ``inner`` for ``ttl`` seconds, invalidated per tenant.

    Definitions are immutable once published, so the only staleness is in
    activation flags and newly published versions, bounded by ``ttl``.
    """

    def __init__(
        self,
        inner: DefinitionStore,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inner = inner
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Dict[Tuple[str, str], Tuple[float, Any]]] = {}

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)

    async def _cached(
        self, tenant_id: str, key: Tuple[str, str], load: Callable[[], Awaitable[Any]]
    ) -> Any:
        bucket = self._entries.setdefault(tenant_id, {})
        now = self._clock()
        hit = bucket.get(key)
        if hit is not None and hit[0] > now:
            return hit[1]
        value = await load()
        bucket[key] = (now + self._ttl, value)
        return value

    async def get_published_definition(
        self, tenant_id: str, definition_id: str
    ) -> WorkflowDefinition:
        definition = await self._cached(
            tenant_id,
            ("published", definition_id),
            lambda: self._inner.get_published_definition(tenant_id, definition_id),
        )
        return definition.model_copy(deep=True)

    async def get_definition(
        self, tenant_id: str, definition_id: str
    ) -> WorkflowDefinition:
        definition = await self._cached(
            tenant_id,
            ("definition", definition_id),
            lambda: self._inner.get_definition(tenant_id, definition_id),
        )
        return definition.model_copy(deep=True)

    async def list_triggered_definitions(
        self, tenant_id: str, event_type: str
    ) -> list[WorkflowDefinition]:
        definitions = await self._cached(
            tenant_id,
            ("triggered", event_type),
            lambda: self._inner.list_triggered_definitions(tenant_id, event_type),
        )
        return [d.model_copy(deep=True) for d in definitions]

    async def list_active_rules(
        self, tenant_id: str, entity_type: str
    ) -> list[BusinessRule]:
        async def load() -> Any:
            try:
                return await self._inner.list_active_rules(tenant_id, entity_type)
            except NoActiveRules:
                return _MISSING_RULES

        rules = await self._cached(tenant_id, ("rules", entity_type), load)
        if rules is _MISSING_RULES:
            raise NoActiveRules(
                f"No active rules for {entity_type}",
                {"tenant_id": tenant_id, "entity_type": entity_type},
            )
        return [r.model_copy(deep=True) for r in rules]

    async def list_rules(self, tenant_id: str) -> list[BusinessRule]:
        return await self._inner.list_rules(tenant_id)

    async def get_rule(self, tenant_id: str, rule_id: str) -> BusinessRule:
        return await self._inner.get_rule(tenant_id, rule_id)
