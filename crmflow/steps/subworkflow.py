"""Sub-workflow steps."""

from __future__ import annotations

from ..contracts import ExecutionStatus, StepResult, Suspension, SuspensionReason
from ..errors import StepFailed, StepValidationError
from .base import StepContext, StepHandler


class SubWorkflowHandler(StepHandler):
    """Starts (or looks up) the child execution and mirrors its outcome.

    Starting the child is idempotent, keyed by ``"{parent_id}:{step_id}"``,
    so re-running the step after the parent is resumed finds the same child.
    A completed child's variables become ``child_variables`` in the output.
    """

    kind = "sub_workflow"
    timed = False

    async def run(self, context: StepContext) -> StepResult:
        step = context.step
        if context.start_child is None:
            raise StepValidationError("Sub-workflows are not supported here", {"step": step.id})

        variables = dict(context.variables) if step.pass_variables else {}
        variables.update(step.variables)
        child = await context.start_child(step, variables)

        if child.status == ExecutionStatus.COMPLETED:
            return StepResult.completed(
                {"child_execution_id": child.id, "child_variables": dict(child.variables)}
            )
        if child.status in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            raise StepFailed(
                f"Sub-workflow {step.workflow} ended {child.status.value}",
                {
                    "child_execution_id": child.id,
                    "child_error": child.error.model_dump() if child.error else None,
                },
            )
        return StepResult.suspend(
            Suspension(
                reason=SuspensionReason.SUB_WORKFLOW,
                step_id=step.id,
                child_execution_id=child.id,
            ),
            {"child_execution_id": child.id},
        )
