"""External HTTP call steps."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from ..contracts import StepResult, Suspension, SuspensionReason
from ..errors import StepFailed, StepTransientError
from .base import StepContext, StepHandler

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]


def _decode(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ExternalCallHandler(StepHandler):
    """Performs the step's HTTP request.

    The request body is the step's ``body`` or, when unset, the execution
    variables. 429 and 5xx responses raise ``StepTransientError`` and are
    retried; other 4xx responses fail the step. Transport errors propagate
    as ``httpx.TransportError`` and are classified retryable by the executor.

    With ``async_callback`` the step suspends after the request is accepted
    and completes when the execution is resumed with the callback payload.
    """

    kind = "external_call"

    def __init__(self, client_factory: Optional[ClientFactory] = None) -> None:
        self._client_factory = client_factory or (lambda: httpx.AsyncClient())

    async def run(self, context: StepContext) -> StepResult:
        step = context.step
        if context.resuming and step.async_callback:
            return StepResult.completed(dict(context.resume_input or {}))

        body = step.body if step.body is not None else dict(context.variables)
        headers = {
            "X-Execution-Id": context.execution.id,
            "X-Tenant-Id": context.execution.tenant_id,
            **step.headers,
        }
        async with self._client_factory() as client:
            response = await client.request(step.method, step.url, json=body, headers=headers)

        details: Dict[str, Any] = {"status_code": response.status_code, "url": step.url}
        if response.status_code == 429 or response.status_code >= 500:
            raise StepTransientError(
                f"{step.method} {step.url} returned HTTP {response.status_code}",
                details,
            )
        if response.status_code >= 400:
            raise StepFailed(
                f"{step.method} {step.url} returned HTTP {response.status_code}",
                details,
                partial_output={"status_code": response.status_code, "body": _decode(response)},
            )

        output = {"status_code": response.status_code, "response": _decode(response)}
        if step.async_callback:
            logger.info(f"Execution {context.execution.id} awaiting callback for step {step.id}")
            return StepResult.suspend(
                Suspension(
                    reason=SuspensionReason.CALLBACK,
                    step_id=step.id,
                    details={"url": step.url, "status_code": response.status_code},
                ),
                output,
            )
        return StepResult.completed(output)
