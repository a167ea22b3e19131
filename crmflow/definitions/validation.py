"""Structural validation of workflow definitions and execution variables."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from ..contracts import END_STEP, VariableSpec, WorkflowDefinition
from ..errors import DefinitionInvalid, VariableValidationError

logger = logging.getLogger(__name__)

_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
    "any": lambda v: True,
}


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise ``DefinitionInvalid`` if ``definition`` cannot be executed."""
    if not definition.name.strip():
        raise DefinitionInvalid("Workflow name is required")
    if not definition.steps:
        raise DefinitionInvalid(
            "Workflow must have at least one step", {"definition_id": definition.id}
        )

    seen: set[str] = set()
    for step in definition.steps:
        if not step.id.strip():
            raise DefinitionInvalid("Step is missing required field: id")
        if step.id == END_STEP:
            raise DefinitionInvalid(f"Step id {END_STEP!r} is reserved")
        if step.id in seen:
            raise DefinitionInvalid(
                f"Duplicate step ID found: {step.id}", {"step_id": step.id}
            )
        seen.add(step.id)

    for step in definition.steps:
        targets = list(step.transitions.values())
        if step.next:
            targets.append(step.next)
        for target in targets:
            if target != END_STEP and target not in seen:
                raise DefinitionInvalid(
                    f"Step '{step.id}' points to unknown step '{target}'",
                    {"step_id": step.id, "target": target},
                )

    for name, spec in definition.variables_schema.items():
        if spec.default is not None and not _TYPE_CHECKS[spec.type](spec.default):
            raise DefinitionInvalid(
                f"Default of variable '{name}' is not of type {spec.type}",
                {"variable": name},
            )


def validate_variables(
    schema: Mapping[str, VariableSpec], variables: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """Check ``variables`` against ``schema`` and return them with defaults applied.

    Variables that the schema does not mention are passed through untouched.
    """
    result: Dict[str, Any] = dict(variables or {})
    problems: Dict[str, str] = {}
    for name, spec in schema.items():
        if name not in result or result[name] is None:
            if spec.default is not None:
                result[name] = spec.default
            elif spec.required:
                problems[name] = "required"
            continue
        if not _TYPE_CHECKS[spec.type](result[name]):
            problems[name] = f"expected {spec.type}"
    if problems:
        raise VariableValidationError(
            "Execution variables do not match the workflow schema",
            {"problems": problems},
        )
    return result
