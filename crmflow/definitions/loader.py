"""Load definitions and rules from a YAML document."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml

from ..contracts import BusinessRule, DefinitionStatus, WorkflowDefinition
from .store import InMemoryDefinitionStore

logger = logging.getLogger(__name__)


def load_definitions_file(
    path: str | Path, store: Optional[InMemoryDefinitionStore] = None
) -> InMemoryDefinitionStore:
    """Populate an in-memory store from ``path``.

    The document has two optional lists, ``definitions`` and ``rules``, whose
    items follow the ``WorkflowDefinition`` and ``BusinessRule`` models.
    Definitions default to ``published`` so that a file can be used directly
    by ``crmflow worker run``; drafts must say ``status: draft``.
    """

    store = store or InMemoryDefinitionStore()
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    for raw in data.get("definitions", []):
        raw.setdefault("status", DefinitionStatus.PUBLISHED.value)
        definition = WorkflowDefinition.model_validate(raw)
        store.add_definition(definition)

    for raw in data.get("rules", []):
        store.add_rule(BusinessRule.model_validate(raw))

    logger.info(
        f"Loaded {len(data.get('definitions', []))} definitions and "
        f"{len(data.get('rules', []))} rules from {path}"
    )
    return store
