"""Business rules: condition language, actions and the rule engine."""

from __future__ import annotations

from .actions import ActionContext, ActionRegistry, default_registry
from .conditions import build_context, evaluate_condition
from .engine import RuleEngine

__all__ = [
    "ActionContext",
    "ActionRegistry",
    "RuleEngine",
    "build_context",
    "default_registry",
    "evaluate_condition",
]
