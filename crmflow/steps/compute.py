"""Inline Python computation steps."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from ..contracts import StepResult
from ..errors import StepValidationError
from .base import StepContext, StepHandler

logger = logging.getLogger(__name__)

ComputeFunction = Callable[[Dict[str, Any], Dict[str, Any]], Any]


class ComputeHandler(StepHandler):
    """Calls a function registered under the step's ``handler`` name.

    Functions receive ``(variables, params)`` and return a dict (or ``None``).
    Coroutine functions are awaited; plain functions run in a worker thread so
    the step timeout can interrupt the wait.
    """

    kind = "compute"

    def __init__(self, functions: Optional[Dict[str, ComputeFunction]] = None) -> None:
        self._functions: Dict[str, ComputeFunction] = dict(functions or {})

    def register(self, name: str, function: ComputeFunction) -> None:
        self._functions[name] = function

    async def run(self, context: StepContext) -> StepResult:
        step = context.step
        function = self._functions.get(step.handler)
        if function is None:
            raise StepValidationError(
                f"Unknown compute handler: {step.handler}", {"handler": step.handler}
            )
        logger.debug(f"Running {step.handler} for execution {context.execution.id}")
        variables = dict(context.variables)
        params = dict(step.params)
        if inspect.iscoroutinefunction(function):
            output = await function(variables, params)
        else:
            output = await asyncio.to_thread(function, variables, params)
        if output is None:
            output = {}
        elif not isinstance(output, dict):
            output = {"result": output}
        return StepResult.completed(output)
