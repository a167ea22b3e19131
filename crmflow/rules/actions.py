"""Rule actions and the registry that dispatches them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..contracts import BusinessRule, DomainEvent, EngineMessage, RuleAction
from ..errors import ActionError
from ..transports import ACTIONS_TOPIC, BaseTransport

logger = logging.getLogger(__name__)

# Actions forwarded to the CRUD layer as ``rule.action.<type>`` messages.
PUBLISHED_ACTIONS = (
    "set_field",
    "update_record",
    "send_email",
    "send_notification",
    "create_task",
)

# Required parameters per action type.
_REQUIRED: Dict[str, tuple[str, ...]] = {
    "set_field": ("field",),
    "update_record": ("updates",),
    "send_email": ("to",),
    "send_notification": ("message",),
    "create_task": ("title",),
    "call_webhook": ("url",),
    "trigger_workflow": ("workflow",),
}


@dataclass
class ActionContext:
    """Everything an action handler may look at."""

    rule: BusinessRule
    event: DomainEvent
    action: RuleAction

    @property
    def tenant_id(self) -> str:
        return self.event.tenant_id

    @property
    def params(self) -> Dict[str, Any]:
        return self.action.params


ActionHandler = Callable[[ActionContext], Awaitable[Dict[str, Any]]]
WorkflowStarter = Callable[..., Awaitable[Any]]


class ActionRegistry:
    """Maps action ``type`` names to async handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._handlers

    async def dispatch(self, context: ActionContext) -> Dict[str, Any]:
        action_type = context.action.type
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionError(
                f"Unknown action type: {action_type}", {"action": action_type}
            )
        missing = [p for p in _REQUIRED.get(action_type, ()) if p not in context.params]
        if missing:
            raise ActionError(
                f"Action {action_type} is missing parameters: {', '.join(missing)}",
                {"action": action_type, "missing": missing},
            )
        logger.debug(f"Dispatching {action_type} for rule {context.rule.name}")
        result = await handler(context)
        return result or {}


def _publishing_handler(transport: BaseTransport, action_type: str) -> ActionHandler:
    async def handle(context: ActionContext) -> Dict[str, Any]:
        message = EngineMessage(
            correlation_id=context.event.event_id,
            tenant_id=context.tenant_id,
            event=f"rule.action.{action_type}",
            payload={
                "rule_id": context.rule.id,
                "entity_type": context.event.entity_type,
                "entity_id": context.event.entity_id,
                "params": context.params,
            },
        )
        try:
            await transport.publish(ACTIONS_TOPIC, message)
        except Exception as exc:
            raise ActionError(
                f"Failed to publish {action_type}: {exc}", {"action": action_type}
            ) from exc
        return {"message_id": message.message_id}

    return handle


def _webhook_handler(client_factory: Callable[[], httpx.AsyncClient]) -> ActionHandler:
    async def handle(context: ActionContext) -> Dict[str, Any]:
        params = context.params
        payload = params.get("payload") or {
            "rule_id": context.rule.id,
            "event_id": context.event.event_id,
            "entity_type": context.event.entity_type,
            "entity_id": context.event.entity_id,
            "trigger": context.event.trigger,
            "data": context.event.data,
        }
        try:
            async with client_factory() as client:
                response = await client.request(
                    params.get("method", "POST"),
                    params["url"],
                    json=payload,
                    headers=params.get("headers"),
                )
        except httpx.HTTPError as exc:
            raise ActionError(
                f"Webhook call failed: {exc}", {"url": params["url"]}
            ) from exc
        if response.status_code >= 400:
            raise ActionError(
                f"Webhook returned HTTP {response.status_code}",
                {"url": params["url"], "status_code": response.status_code},
            )
        return {"status_code": response.status_code}

    return handle


def _trigger_workflow_handler(starter: WorkflowStarter) -> ActionHandler:
    async def handle(context: ActionContext) -> Dict[str, Any]:
        params = context.params
        variables = dict(params.get("variables") or {})
        variables.setdefault("entity_id", context.event.entity_id)
        started = await starter(
            context.tenant_id,
            params["workflow"],
            trigger_type="rule",
            trigger_data={
                "rule_id": context.rule.id,
                "event_id": context.event.event_id,
                "entity_type": context.event.entity_type,
                "entity_id": context.event.entity_id,
            },
            variables=variables,
            actor=context.event.actor,
            execution_key=f"{context.rule.id}:{context.event.event_id}",
        )
        return {"execution_id": started.execution_id}

    return handle


def default_registry(
    transport: BaseTransport,
    start_workflow: Optional[WorkflowStarter] = None,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
) -> ActionRegistry:
    """Registry with the built-in action types wired to their collaborators."""

    registry = ActionRegistry()
    for action_type in PUBLISHED_ACTIONS:
        registry.register(action_type, _publishing_handler(transport, action_type))
    registry.register(
        "call_webhook",
        _webhook_handler(client_factory or (lambda: httpx.AsyncClient(timeout=10.0))),
    )
    if start_workflow is not None:
        registry.register("trigger_workflow", _trigger_workflow_handler(start_workflow))
    return registry
