"""Step handler contract."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from ..contracts import StepResult, StepSpec, WorkflowExecution

ChildStarter = Callable[[StepSpec, Dict[str, Any]], Awaitable[WorkflowExecution]]


@dataclass
class StepContext:
    """Inputs of a single step invocation.

    ``resume_input`` is ``None`` on the first invocation of a step and holds
    the external input (possibly empty) when a suspended step is resumed.
    """

    execution: WorkflowExecution
    step: StepSpec
    variables: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    resume_input: Optional[Dict[str, Any]] = None
    start_child: Optional[ChildStarter] = None

    @property
    def resuming(self) -> bool:
        return self.resume_input is not None


class StepHandler(abc.ABC):
    """Runs one kind of step.

    Handlers report success or suspension through the returned
    ``StepResult`` and failures by raising; the executor turns exceptions
    into failed attempts and decides whether to retry.
    """

    kind: str
    # Whether the per-step wall-clock timeout applies.
    timed: bool = True

    @abc.abstractmethod
    async def run(self, context: StepContext) -> StepResult:
        raise NotImplementedError
