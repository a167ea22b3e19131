"""Steps that park the execution until something external happens."""

from __future__ import annotations

from datetime import timedelta

from ..contracts import StepResult, Suspension, SuspensionReason
from ..utils.time import utcnow
from .base import StepContext, StepHandler


class DelayHandler(StepHandler):
    """Suspends until ``seconds`` have elapsed; a zero delay completes at once."""

    kind = "delay"
    timed = False

    async def run(self, context: StepContext) -> StepResult:
        step = context.step
        if context.resuming or step.seconds == 0:
            return StepResult.completed(dict(context.resume_input or {}))
        wake_at = utcnow() + timedelta(seconds=step.seconds)
        return StepResult.suspend(
            Suspension(reason=SuspensionReason.TIMER, step_id=step.id, wake_at=wake_at),
            {"wake_at": wake_at.isoformat()},
        )


class HumanTaskHandler(StepHandler):
    """Suspends until a person resumes the execution with input."""

    kind = "human_task"
    timed = False

    async def run(self, context: StepContext) -> StepResult:
        step = context.step
        if context.resuming:
            return StepResult.completed(dict(context.resume_input or {}))
        return StepResult.suspend(
            Suspension(
                reason=SuspensionReason.HUMAN_TASK,
                step_id=step.id,
                details={"assignee": step.assignee, "form": step.form},
            )
        )
