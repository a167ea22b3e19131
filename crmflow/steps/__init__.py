"""Step kinds and the executor that runs them."""

from __future__ import annotations

from typing import Dict, List, Optional

from .base import ChildStarter, StepContext, StepHandler
from .compute import ComputeFunction, ComputeHandler
from .executor import StepExecutor, is_retryable
from .http import ClientFactory, ExternalCallHandler
from .subworkflow import SubWorkflowHandler
from .waiting import DelayHandler, HumanTaskHandler


def default_handlers(
    functions: Optional[Dict[str, ComputeFunction]] = None,
    client_factory: Optional[ClientFactory] = None,
) -> List[StepHandler]:
    """One handler per built-in step kind."""
    return [
        ComputeHandler(functions),
        ExternalCallHandler(client_factory),
        DelayHandler(),
        HumanTaskHandler(),
        SubWorkflowHandler(),
    ]


__all__ = [
    "ChildStarter",
    "ComputeFunction",
    "ComputeHandler",
    "DelayHandler",
    "ExternalCallHandler",
    "HumanTaskHandler",
    "StepContext",
    "StepExecutor",
    "StepHandler",
    "SubWorkflowHandler",
    "default_handlers",
    "is_retryable",
]
