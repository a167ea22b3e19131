"""Workflow definitions and business rules as seen by the engine."""

from __future__ import annotations

from .cache import CachedDefinitionStore
from .loader import load_definitions_file
from .store import DefinitionStore, InMemoryDefinitionStore
from .validation import validate_definition, validate_variables

__all__ = [
    "CachedDefinitionStore",
    "DefinitionStore",
    "InMemoryDefinitionStore",
    "load_definitions_file",
    "validate_definition",
    "validate_variables",
]
