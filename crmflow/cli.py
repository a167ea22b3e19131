"""Command line interface for crmflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from crmflow.config import load_config
from crmflow.contracts import ExecutionStatus
from crmflow.engine import WorkflowEngine, build_engine
from crmflow.errors import CrmflowError

app = typer.Typer(help="CLI for crmflow workflows and business rules")

# Command groups
execution_app = typer.Typer(help="Commands for managing workflow executions")
rules_app = typer.Typer(help="Commands for inspecting business rules")
worker_app = typer.Typer(help="Commands for running engine workers")

app.add_typer(execution_app, name="execution")
app.add_typer(rules_app, name="rules")
app.add_typer(worker_app, name="worker")

_state: Dict[str, Any] = {"config": None, "definitions": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to a config YAML file"),
    definitions: Optional[Path] = typer.Option(
        None, help="YAML file with workflow definitions and rules"
    ),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """crmflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config"] = str(config) if config else None
    _state["definitions"] = str(definitions) if definitions else None


def _engine() -> WorkflowEngine:
    return build_engine(load_config(_state["config"]), _state["definitions"])


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{option} must be a JSON object: {exc}")
    if not isinstance(data, dict):
        raise typer.BadParameter(f"{option} must be a JSON object")
    return data


def _run(coro):
    try:
        return asyncio.run(coro)
    except CrmflowError as exc:
        typer.secho(f"Error: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _show(view) -> None:
    execution = view.execution
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(
        f"Definition: {execution.definition_name or execution.definition_id}"
        f" v{execution.definition_version}"
    )
    typer.echo(f"Progress: {execution.progress_percentage}%")
    if execution.current_step_id:
        typer.echo(f"Current step: {execution.current_step_id}")
    if execution.suspension:
        typer.echo(f"Suspended: {execution.suspension.reason.value}")
    if execution.error:
        typer.echo(f"Error: {execution.error.type}: {execution.error.message}")
    if view.cancel_requested:
        typer.echo("Cancellation requested")
    if execution.variables:
        typer.echo(f"Variables: {json.dumps(execution.variables, default=str)}")
    for step in view.steps:
        typer.echo(
            f"- {step.step_name} (attempt {step.attempt}): {step.status.value}"
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
        )


@execution_app.command("list")
def execution_list(
    tenant: str = typer.Option(..., help="Tenant id"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    definition: Optional[str] = typer.Option(None, help="Filter by definition id"),
) -> None:
    """
    List executions of a tenant with their status and progress.

    Example:
        crmflow execution list --tenant acme
        # Output: 6f1c...    COMPLETED    100%    lead_qualification
    """
    engine = _engine()
    executions = _run(engine.list_executions(tenant, status=status, definition_id=definition))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.status.value}\t{execution.progress_percentage}%"
            f"\t{execution.definition_name or execution.definition_id}"
        )


@execution_app.command("show")
def execution_show(execution_id: str, tenant: str = typer.Option(..., help="Tenant id")) -> None:
    """Show status, variables and step history of an execution."""
    engine = _engine()
    _show(_run(engine.get_execution(tenant, execution_id)))


@execution_app.command("start")
def execution_start(
    definition_id: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    variables: Optional[str] = typer.Option(None, help="Initial variables as JSON"),
    key: Optional[str] = typer.Option(None, help="Idempotency key"),
    actor: Optional[str] = typer.Option(None, help="User starting the execution"),
) -> None:
    """
    Start an execution of a published definition.

    Example:
        crmflow --definitions flows.yaml execution start lead_qualification \\
            --tenant acme --variables '{"lead_id": "L-1"}'
    """
    engine = _engine()
    handle = _run(
        engine.start_execution(
            tenant,
            definition_id,
            variables=_parse_json(variables, "--variables"),
            actor=actor,
            execution_key=key,
        )
    )
    verb = "Started" if handle.created else "Already started"
    typer.echo(f"{verb} execution {handle.execution_id}: {handle.status.value}")


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    actor: Optional[str] = typer.Option(None, help="User cancelling the execution"),
) -> None:
    """Cancel a running, pending or suspended execution."""
    engine = _engine()
    view = _run(engine.cancel(tenant, execution_id, actor))
    if view.cancel_requested:
        typer.echo(f"Cancellation of {execution_id} requested")
    else:
        typer.echo(f"Execution {execution_id}: {view.status.value}")


@execution_app.command("resume")
def execution_resume(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    input: Optional[str] = typer.Option(None, "--input", help="Resume input as JSON"),
    actor: Optional[str] = typer.Option(None, help="User resuming the execution"),
) -> None:
    """Resume a suspended execution, e.g. completing a human task."""
    engine = _engine()
    view = _run(engine.resume(tenant, execution_id, _parse_json(input, "--input"), actor))
    typer.echo(f"Execution {execution_id}: {view.status.value}")


@execution_app.command("retry")
def execution_retry(
    execution_id: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    actor: Optional[str] = typer.Option(None, help="User retrying the execution"),
) -> None:
    """Re-run a failed execution from the step that failed."""
    engine = _engine()
    view = _run(engine.retry(tenant, execution_id, actor))
    typer.echo(f"Execution {execution_id}: {view.status.value}")


@rules_app.command("stats")
def rules_stats(tenant: str = typer.Option(..., help="Tenant id")) -> None:
    """Show rule counts and per-rule execution counters."""
    engine = _engine()
    stats = _run(engine.rule_statistics(tenant))
    typer.echo(f"Rules: {stats.total_rules} ({stats.active_rules} active)")
    for rule_type, count in sorted(stats.by_rule_type.items()):
        typer.echo(f"  {rule_type}: {count}")
    for rule in stats.rules:
        flag = " FLAGGED" if rule.flagged else ""
        typer.echo(
            f"{rule.rule_id}\truns={rule.execution_count}\tok={rule.success_count}"
            f"\tfailed={rule.failure_count}{flag}"
        )


@rules_app.command("test")
def rules_test(
    rule_id: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    data: Optional[str] = typer.Option(None, help="Entity snapshot as JSON"),
) -> None:
    """Dry-run a rule's condition against sample data."""
    engine = _engine()
    result = _run(engine.test_rule(tenant, rule_id, _parse_json(data, "--data")))
    if result.error:
        typer.secho(f"Condition error: {result.error.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if result.conditions_met:
        typer.echo(f"Conditions met; would run: {', '.join(result.actions) or '(no actions)'}")
    else:
        typer.echo("Conditions not met")


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
    poll_interval: float = typer.Option(1.0, help="Seconds between timer/pending sweeps"),
) -> None:
    """
    Run a worker that consumes domain events and advances executions.

    Example:
        crmflow --definitions flows.yaml worker run --lifespan 300
    """
    engine = _engine()
    typer.echo(f"Starting worker {engine.coordinator.worker_id}")
    asyncio.run(engine.run_worker(poll_interval=poll_interval, lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
