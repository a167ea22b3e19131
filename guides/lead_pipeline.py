"""Example: feed CRM events through rules and workflows in one process."""

import asyncio
import logging
from pathlib import Path

from crmflow import DomainEvent, build_engine, load_config


def classify_lead(variables, params):
    return {"branch": "hot" if variables.get("score", 0) >= 70 else "cold"}


async def main():
    logging.basicConfig(level=logging.INFO)
    engine = build_engine(
        load_config(),
        definitions_path=str(Path(__file__).with_name("flows.yaml")),
        functions={"classify_lead": classify_lead},
    )

    event = DomainEvent(
        tenant_id="acme",
        entity_type="lead",
        entity_id="lead-123",
        trigger="created",
        actor="web-form",
        data={"email": "cto@bigcorp.com", "source": "web", "score": 85},
    )
    outcome = await engine.handle_event(event)

    for record in outcome.rule_executions:
        print(f"Rule {record.rule_name}: {record.status.value} {record.actions_completed}")
    for handle in outcome.executions:
        view = await engine.get_execution("acme", handle.execution_id)
        print(f"Execution {handle.execution_id}: {view.status.value}")
        if view.execution.suspension:
            print(f"  waiting on {view.execution.suspension.reason.value}")
            view = await engine.resume(
                "acme", handle.execution_id, {"approved": True, "owner": "dana"}, actor="dana"
            )
            print(f"  after approval: {view.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
