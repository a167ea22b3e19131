"""Exception taxonomy for the crmflow engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CrmflowError(Exception):
    """Base class for all engine errors.

    ``context`` carries structured details that end up in the durable
    ``ErrorDetail`` of whichever record the failure is attached to.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})


# Definition store -----------------------------------------------------------


class DefinitionNotFound(CrmflowError):
    """No published definition matches the requested tenant/id."""


class RuleNotFound(DefinitionNotFound):
    """No business rule with the given id exists for the tenant."""


class NoActiveRules(CrmflowError):
    """The tenant has no active rules for the event's entity type."""


class DefinitionInvalid(CrmflowError):
    """A workflow definition failed structural validation."""


class VariableValidationError(DefinitionInvalid):
    """Initial execution variables do not satisfy the variable schema."""


class DefinitionImmutable(CrmflowError):
    """Attempt to change a definition that has already been published."""


# Executions -----------------------------------------------------------------


class ExecutionNotFound(CrmflowError):
    """No execution with the given id exists for the tenant."""


class ExecutionStateError(CrmflowError):
    """The requested operation is not allowed in the execution's state."""


class InvalidTransition(CrmflowError):
    """A step named a next step that does not exist in the definition."""


class LeaseLost(CrmflowError):
    """The worker no longer owns the execution lease and must stop."""


# Steps ----------------------------------------------------------------------


class StepError(CrmflowError):
    """Base class for failures raised while running a step."""

    retryable = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        partial_output: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context)
        self.partial_output = partial_output


class StepTransientError(StepError):
    """Temporary failure, e.g. a dropped connection; safe to retry."""

    retryable = True


class StepTimeout(StepTransientError):
    """The step exceeded its wall-clock timeout."""


class StepValidationError(StepError):
    """The step input or configuration is invalid; retrying cannot help."""


class StepFailed(StepError):
    """The step failed permanently or exhausted its retries."""


# Rules ----------------------------------------------------------------------


class ConditionError(CrmflowError):
    """A rule condition is malformed (unknown operator, bad regex...)."""


class ConditionEvaluationTimeout(CrmflowError):
    """Condition evaluation exceeded its time budget."""


class ActionError(CrmflowError):
    """A rule action could not be carried out."""


__all__ = [
    "CrmflowError",
    "DefinitionNotFound",
    "RuleNotFound",
    "NoActiveRules",
    "DefinitionInvalid",
    "VariableValidationError",
    "DefinitionImmutable",
    "ExecutionNotFound",
    "ExecutionStateError",
    "InvalidTransition",
    "LeaseLost",
    "StepError",
    "StepTransientError",
    "StepTimeout",
    "StepValidationError",
    "StepFailed",
    "ConditionError",
    "ConditionEvaluationTimeout",
    "ActionError",
]
