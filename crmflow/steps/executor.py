"""Runs steps with retries, timeouts and per-attempt records."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, Optional

import httpx

from ..config import EngineConfig
from ..contracts import (
    ErrorDetail,
    StepResult,
    StepSpec,
    StepStatus,
    WorkflowStepExecution,
)
from ..errors import StepError, StepFailed, StepTimeout, StepValidationError
from ..persistence import ExecutionRepository
from ..utils.retry import schedule_retry
from .base import StepContext, StepHandler

logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    """Whether another attempt could succeed after ``exc``."""
    if isinstance(exc, StepError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, OSError)):
        return True
    return False


class StepExecutor:
    """Dispatches a step to the handler registered for its kind."""

    def __init__(
        self,
        handlers: Iterable[StepHandler],
        repository: ExecutionRepository,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._handlers: Dict[str, StepHandler] = {h.kind: h for h in handlers}
        self._repository = repository
        self._config = config or EngineConfig()

    def handler_for(self, step: StepSpec) -> StepHandler:
        handler = self._handlers.get(step.kind)
        if handler is None:
            raise StepValidationError(f"No handler for step kind {step.kind}", {"kind": step.kind})
        return handler

    def max_attempts(self, step: StepSpec) -> int:
        return step.max_attempts or self._config.retry.max_attempts

    def timeout_for(self, step: StepSpec, handler: StepHandler) -> Optional[float]:
        if not handler.timed:
            return None
        return step.timeout or self._config.step_timeout

    async def execute(self, context: StepContext) -> StepResult:
        """Run a single attempt and persist its record."""

        step = context.step
        record = WorkflowStepExecution(
            tenant_id=context.execution.tenant_id,
            execution_id=context.execution.id,
            step_id=step.id,
            step_name=step.display_name,
            kind=step.kind,
            attempt=context.attempt,
            retry_count=context.attempt - 1,
            input_data=dict(context.variables),
        )
        if context.resume_input is not None:
            record.input_data["_resume"] = dict(context.resume_input)
        record.mark_started()
        record = await self._repository.save_step_execution(record)

        try:
            handler = self.handler_for(step)
            timeout = self.timeout_for(step, handler)
            try:
                result = await asyncio.wait_for(handler.run(context), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise StepTimeout(
                    f"Step {step.id} exceeded {timeout}s", {"timeout": timeout}
                ) from exc
        except Exception as exc:
            error = ErrorDetail.from_exception(exc)
            record.mark_failed(error, getattr(exc, "partial_output", None))
            await self._repository.save_step_execution(record)
            retryable = is_retryable(exc)
            logger.warning(
                f"Step {step.id} of {context.execution.id} failed on attempt "
                f"{context.attempt}: {error.message}"
            )
            return StepResult.failed(error, retryable=retryable, output=record.output_data)

        if result.status == StepStatus.SUSPENDED:
            record.mark_suspended(result.output)
        else:
            record.mark_completed(result.output)
        await self._repository.save_step_execution(record)
        result.attempts = context.attempt
        return result

    async def run(
        self,
        context: StepContext,
        before_attempt: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> StepResult:
        """Run ``context.step`` until it succeeds, suspends or exhausts retries.

        ``before_attempt`` is awaited ahead of every retry; it may raise to
        abandon the step (e.g. when the lease is lost).
        """

        step = context.step
        max_attempts = self.max_attempts(step)
        retry = self._config.retry
        attempt = 1
        while True:
            result = await self.execute(replace(context, attempt=attempt))
            if result.status != StepStatus.FAILED:
                return result
            if not result.retryable:
                result.attempts = attempt
                return result
            if attempt >= max_attempts:
                break
            await schedule_retry(
                attempt,
                base=retry.backoff_base,
                jitter=retry.backoff_jitter,
                maximum=retry.max_backoff,
            )
            if before_attempt is not None:
                await before_attempt()
            attempt += 1

        last = result.error
        exhausted = StepFailed(
            f"Step {step.id} failed after {attempt} attempts: {last.message if last else ''}",
            {"attempts": attempt, "last_error": last.model_dump() if last else None},
        )
        logger.error(exhausted.message)
        final = StepResult.failed(ErrorDetail.from_exception(exhausted), output=result.output)
        final.attempts = attempt
        return final
