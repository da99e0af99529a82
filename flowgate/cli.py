"""Command line interface for operating flowgate workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from flowgate import WorkflowEngine, load_config
from flowgate.contracts import RunStatus
from flowgate.definitions import load_definitions
from flowgate.exceptions import FlowgateError
from flowgate.templates import instantiate_template, list_templates

T = TypeVar("T")

app = typer.Typer(help="CLI for flowgate workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
event_app = typer.Typer(help="Commands for firing business events")
run_app = typer.Typer(help="Commands for inspecting and cancelling runs")
approval_app = typer.Typer(help="Commands for pending approvals")
delays_app = typer.Typer(help="Commands for delayed steps")

app.add_typer(definition_app, name="definition")
app.add_typer(event_app, name="event")
app.add_typer(run_app, name="run")
app.add_typer(approval_app, name="approval")
app.add_typer(delays_app, name="delays")

_state: dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for engine output"),
    config: Optional[Path] = typer.Option(None, help="Path to a flowgate YAML config"),
) -> None:
    """Flowgate CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config else None


def _run(action: Callable[[WorkflowEngine], Awaitable[T]]) -> T:
    """Build an engine, run ``action`` against it and map engine errors to exit 1."""

    async def _main() -> T:
        engine = WorkflowEngine(config=load_config(_state["config_path"]))
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except (FlowgateError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _dump(model: Any) -> str:
    return json.dumps(model.model_dump(mode="json"), indent=2, sort_keys=True)


@definition_app.command("load")
def definition_load(
    file: Path,
    tenant: Optional[str] = typer.Option(None, help="Tenant owning the definitions"),
) -> None:
    """
    Validate and save the workflow definitions in a YAML file.

    Example:
        flowgate definition load ./workflows/onboarding.yaml --tenant acme
    """
    if not file.exists():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _load(engine: WorkflowEngine) -> list:
        definitions = load_definitions(file, tenant_id=tenant)
        for definition in definitions:
            await engine.save_definition(definition)
        return definitions

    for definition in _run(_load):
        typer.echo(
            f"{definition.id}\tv{definition.version}\t{definition.trigger_type}\t"
            f"{len(definition.steps)} step(s)"
        )


@definition_app.command("list")
def definition_list(tenant: str = typer.Option(..., help="Tenant id")) -> None:
    """List the latest version of every workflow of a tenant."""
    definitions = _run(lambda engine: engine.list_definitions(tenant))
    if not definitions:
        typer.echo("No workflows found")
        return
    for d in definitions:
        state = "active" if d.is_active else "inactive"
        typer.echo(f"{d.id}\tv{d.version}\t{d.trigger_type}\t{state}\t{d.name}")


@definition_app.command("templates")
def definition_templates(
    category: Optional[str] = typer.Option(None, help="Only templates of this category"),
    popular: bool = typer.Option(False, help="Only popular templates"),
) -> None:
    """List the built-in workflow templates."""
    templates = list_templates(category=category, popular_only=popular)
    if not templates:
        typer.echo("No templates found")
        return
    for t in templates:
        typer.echo(f"{t.id}\t{t.category}\t{t.trigger_type}\t{t.name}")


@definition_app.command("install")
def definition_install(
    template_id: str,
    tenant: str = typer.Option(..., help="Tenant installing the template"),
    workflow_id: Optional[str] = typer.Option(None, "--id", help="Workflow id to save as"),
) -> None:
    """
    Save a built-in template as one of the tenant's workflows.

    Example:
        flowgate definition install project-kickoff --tenant acme
    """

    async def _install(engine: WorkflowEngine):
        definition = instantiate_template(template_id, tenant, workflow_id=workflow_id)
        return await engine.save_definition(definition)

    definition = _run(_install)
    typer.echo(f"Installed {template_id} as {definition.id} v{definition.version}")


@event_app.command("fire")
def event_fire(
    event: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    actor: Optional[str] = typer.Option(None, help="User who caused the event"),
    payload: str = typer.Option("{}", help="Event payload as a JSON object"),
    event_id: Optional[str] = typer.Option(None, help="Stable id used to suppress replays"),
) -> None:
    """
    Fire a business event and start every matching workflow.

    Example:
        flowgate event fire project_created --tenant acme --actor u1 \\
            --payload '{"project_name": "Website"}'
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid payload JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    run_ids = _run(
        lambda engine: engine.check_triggers(event, data, tenant, actor, event_id=event_id)
    )
    if not run_ids:
        typer.echo("No workflows matched")
        return
    for run_id in run_ids:
        typer.echo(run_id)


@run_app.command("list")
def run_list(
    tenant: str = typer.Option(..., help="Tenant id"),
    workflow: Optional[str] = typer.Option(None, help="Only runs of this workflow"),
    status: Optional[RunStatus] = typer.Option(None, help="Only runs in this status"),
) -> None:
    """List runs of a tenant, newest first."""
    runs = _run(lambda engine: engine.list_runs(tenant, workflow_id=workflow, status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for r in runs:
        typer.echo(f"{r.id}\t{r.workflow_id}\tv{r.workflow_version}\t{r.status.value}")


@run_app.command("show")
def run_show(run_id: str, tenant: str = typer.Option(..., help="Tenant id")) -> None:
    """
    Show a run and the status of each of its step executions.

    Example:
        flowgate run show 3f1c... --tenant acme
        # Output: Run 3f1c...: running
        #         - 1 action: completed
        #         - 2 approval: waiting_approval
    """

    async def _show(engine: WorkflowEngine):
        run = await engine.get_run(run_id, tenant)
        return run, await engine.list_step_executions(run_id, tenant)

    run, steps = _run(_show)
    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Workflow: {run.workflow_id} v{run.workflow_version}")
    if run.trigger_data:
        typer.echo(f"Trigger data: {json.dumps(run.trigger_data, sort_keys=True)}")
    for step in steps:
        line = f"- {step.position} {step.step_kind.value}: {step.status.value}"
        if step.error_message:
            line += f" ({step.error_message})"
        typer.echo(line)


@run_app.command("cancel")
def run_cancel(
    run_id: str,
    tenant: str = typer.Option(..., help="Tenant id"),
    actor: Optional[str] = typer.Option(None, help="User cancelling the run"),
) -> None:
    """Cancel a running run; steps after the current one are never dispatched."""
    if _run(lambda engine: engine.cancel_run(run_id, tenant, actor)):
        typer.echo(f"Run {run_id} cancelled")
    else:
        typer.echo(f"Run {run_id} is not running")
        raise typer.Exit(code=1)


@approval_app.command("list")
def approval_list(
    tenant: str = typer.Option(..., help="Tenant id"),
    user: Optional[str] = typer.Option(None, help="Only approvals addressed to this user"),
) -> None:
    """List pending approvals."""
    approvals = _run(lambda engine: engine.list_pending_approvals(tenant, user_id=user))
    if not approvals:
        typer.echo("No pending approvals")
        return
    for a in approvals:
        typer.echo(f"{a.id}\t{a.run_id}\t{a.requested_from}\t{a.instructions or ''}")


@approval_app.command("resolve")
def approval_resolve(
    approval_id: str,
    decision: str = typer.Argument(..., help="approved or rejected"),
    tenant: str = typer.Option(..., help="Tenant id"),
    actor: str = typer.Option(..., help="Approver user id"),
    comment: Optional[str] = typer.Option(None, help="Optional comment"),
) -> None:
    """Approve or reject a pending approval and resume its run."""
    approval = _run(
        lambda engine: engine.resolve_approval(approval_id, decision, comment, actor, tenant)
    )
    typer.echo(_dump(approval))


@delays_app.command("resume")
def delays_resume() -> None:
    """
    Resume every run whose delay step is due.

    Meant to be called periodically, e.g. from cron:
        */5 * * * * flowgate delays resume
    """
    run_ids = _run(lambda engine: engine.resume_due_delays())
    typer.echo(f"Resumed {len(run_ids)} run(s)")
    for run_id in run_ids:
        typer.echo(run_id)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
