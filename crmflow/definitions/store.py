"""Definition store contract and in-memory implementation."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Tuple

from ..contracts import BusinessRule, DefinitionStatus, WorkflowDefinition
from ..errors import (
    DefinitionImmutable,
    DefinitionInvalid,
    DefinitionNotFound,
    NoActiveRules,
    RuleNotFound,
)
from .validation import validate_definition

logger = logging.getLogger(__name__)


class DefinitionStore(Protocol):
    """Read-only view of definitions and rules consumed by the engine."""

    async def get_published_definition(
        self, tenant_id: str, definition_id: str
    ) -> WorkflowDefinition:
        """Return a published, active definition or raise ``DefinitionNotFound``."""

    async def get_definition(
        self, tenant_id: str, definition_id: str
    ) -> WorkflowDefinition:
        """Return a published or deactivated definition.

        Used to continue executions started before a definition was
        deactivated.
        """

    async def list_triggered_definitions(
        self, tenant_id: str, event_type: str
    ) -> list[WorkflowDefinition]:
        """Return published definitions whose trigger listens to ``event_type``."""

    async def list_active_rules(
        self, tenant_id: str, entity_type: str
    ) -> list[BusinessRule]:
        """Active rules by priority desc, ties by creation order; ``NoActiveRules`` if none."""

    async def list_rules(self, tenant_id: str) -> list[BusinessRule]:
        """Every rule of the tenant, active or not."""

    async def get_rule(self, tenant_id: str, rule_id: str) -> BusinessRule:
        """Return a rule or raise ``RuleNotFound``."""


def order_rules(rules: List[Tuple[int, BusinessRule]]) -> List[BusinessRule]:
    """Sort (insertion index, rule) pairs by priority desc, then creation order."""
    ordered = sorted(rules, key=lambda pair: (-pair[1].priority, pair[1].created_at, pair[0]))
    return [rule for _, rule in ordered]


class InMemoryDefinitionStore(DefinitionStore):
    """Arena of definitions and rules keyed by id.

    The authoring helpers stand in for the external CRUD layer; the engine
    itself only uses the read operations of :class:`DefinitionStore`.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        self._rules: Dict[Tuple[str, str], Tuple[int, BusinessRule]] = {}
        self._counter = 0

    # Authoring ---------------------------------------------------------
    def add_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        key = (definition.tenant_id, definition.id)
        existing = self._definitions.get(key)
        if existing is not None and existing.status != DefinitionStatus.DRAFT:
            raise DefinitionImmutable(
                f"Definition {definition.id} is already published",
                {"definition_id": definition.id},
            )
        for other in self._definitions.values():
            if (
                other.id != definition.id
                and other.tenant_id == definition.tenant_id
                and other.name == definition.name
                and other.version == definition.version
            ):
                raise DefinitionInvalid(
                    f"Definition {definition.name} v{definition.version} already exists",
                    {"name": definition.name, "version": definition.version},
                )
        if definition.status != DefinitionStatus.DRAFT:
            validate_definition(definition)
        self._definitions[key] = definition.model_copy(deep=True)
        return definition

    def publish(self, tenant_id: str, definition_id: str) -> WorkflowDefinition:
        definition = self._require(tenant_id, definition_id)
        if definition.status == DefinitionStatus.DRAFT:
            validate_definition(definition)
            definition.status = DefinitionStatus.PUBLISHED
            logger.info(f"Published definition {definition.name} v{definition.version}")
        return definition.model_copy(deep=True)

    def deactivate(self, tenant_id: str, definition_id: str) -> WorkflowDefinition:
        definition = self._require(tenant_id, definition_id)
        if definition.status == DefinitionStatus.PUBLISHED:
            definition.status = DefinitionStatus.DEACTIVATED
            logger.info(f"Deactivated definition {definition.name} v{definition.version}")
        return definition.model_copy(deep=True)

    def add_rule(self, rule: BusinessRule) -> BusinessRule:
        for _, other in self._rules.values():
            if other.tenant_id == rule.tenant_id and other.name == rule.name and other.id != rule.id:
                raise DefinitionInvalid(
                    f"Business rule name already exists: {rule.name}", {"name": rule.name}
                )
        key = (rule.tenant_id, rule.id)
        index = self._rules[key][0] if key in self._rules else self._next_index()
        self._rules[key] = (index, rule.model_copy(deep=True))
        return rule

    def set_rule_active(self, tenant_id: str, rule_id: str, active: bool) -> None:
        if (tenant_id, rule_id) not in self._rules:
            raise RuleNotFound(f"Business rule not found: {rule_id}", {"rule_id": rule_id})
        self._rules[(tenant_id, rule_id)][1].is_active = active

    def _next_index(self) -> int:
        self._counter += 1
        return self._counter

    def _require(self, tenant_id: str, definition_id: str) -> WorkflowDefinition:
        definition = self._definitions.get((tenant_id, definition_id))
        if definition is None:
            raise DefinitionNotFound(
                f"Workflow definition not found: {definition_id}",
                {"tenant_id": tenant_id, "definition_id": definition_id},
            )
        return definition

    def _resolve(self, tenant_id: str, ref: str) -> Optional[WorkflowDefinition]:
        """Look up by id, falling back to the newest published version by name."""
        definition = self._definitions.get((tenant_id, ref))
        if definition is not None:
            return definition
        candidates = [
            d
            for d in self._definitions.values()
            if d.tenant_id == tenant_id and d.name == ref and d.status == DefinitionStatus.PUBLISHED
        ]
        return max(candidates, key=lambda d: d.version) if candidates else None

    # Reads -------------------------------------------------------------
    async def get_published_definition(
        self, tenant_id: str, definition_id: str
    ) -> WorkflowDefinition:
        definition = self._resolve(tenant_id, definition_id)
        if definition is None or definition.status != DefinitionStatus.PUBLISHED:
            raise DefinitionNotFound(
                f"Workflow definition not found: {definition_id}",
                {"tenant_id": tenant_id, "definition_id": definition_id},
            )
        return definition.model_copy(deep=True)

    async def get_definition(
        self, tenant_id: str, definition_id: str
    ) -> WorkflowDefinition:
        definition = self._definitions.get((tenant_id, definition_id))
        if definition is None or definition.status == DefinitionStatus.DRAFT:
            raise DefinitionNotFound(
                f"Workflow definition not found: {definition_id}",
                {"tenant_id": tenant_id, "definition_id": definition_id},
            )
        return definition.model_copy(deep=True)

    async def list_triggered_definitions(
        self, tenant_id: str, event_type: str
    ) -> list[WorkflowDefinition]:
        return [
            d.model_copy(deep=True)
            for d in self._definitions.values()
            if d.tenant_id == tenant_id
            and d.status == DefinitionStatus.PUBLISHED
            and d.trigger is not None
            and d.trigger.event_type == event_type
        ]

    async def list_active_rules(
        self, tenant_id: str, entity_type: str
    ) -> list[BusinessRule]:
        rules = order_rules(
            [
                (index, rule)
                for index, rule in self._rules.values()
                if rule.tenant_id == tenant_id
                and rule.entity_type == entity_type
                and rule.is_active
            ]
        )
        if not rules:
            raise NoActiveRules(
                f"No active rules for {entity_type}",
                {"tenant_id": tenant_id, "entity_type": entity_type},
            )
        return [rule.model_copy(deep=True) for rule in rules]

    async def list_rules(self, tenant_id: str) -> list[BusinessRule]:
        return [
            rule.model_copy(deep=True)
            for rule in order_rules(
                [(i, r) for i, r in self._rules.values() if r.tenant_id == tenant_id]
            )
        ]

    async def get_rule(self, tenant_id: str, rule_id: str) -> BusinessRule:
        entry = self._rules.get((tenant_id, rule_id))
        if entry is None:
            raise RuleNotFound(
                f"Business rule not found with ID: {rule_id}",
                {"tenant_id": tenant_id, "rule_id": rule_id},
            )
        return entry[1].model_copy(deep=True)
