"""Command line interface for inspecting and operating payflow."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from payflow.cli_utils.definition import _format_definition, _load_definition_file
from payflow.config import load_config
from payflow.emitter import EventEmitter
from payflow.errors import GraphInvalidError
from payflow.persistence import InstanceStatus, get_repository
from payflow.transports import get_transport

app = typer.Typer(help="CLI for payflow approval workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
workflow_app = typer.Typer(help="Commands for inspecting workflow instances")
events_app = typer.Typer(help="Commands for the event outbox")

app.add_typer(definition_app, name="definition")
app.add_typer(workflow_app, name="workflow")
app.add_typer(events_app, name="events")


@app.callback()
def main() -> None:
    """Payflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_definition(path: Path):
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return _load_definition_file(path)
    except ValidationError as exc:
        typer.secho(f"Malformed definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Check a workflow definition file without storing it.

    Example:
        payflow definition validate ./workflows/acme.yaml
    """
    definition = _read_definition(path)
    try:
        definition.validate_graph()
    except GraphInvalidError as exc:
        typer.secho(f"{definition.id} is invalid:", fg=typer.colors.RED)
        for problem in exc.problems:
            typer.echo(f"  - {problem}")
        raise typer.Exit(code=1)
    typer.echo(f"{definition.id} is valid")
    for line in _format_definition(definition):
        typer.echo(line)


@definition_app.command("import")
def definition_import(path: Path) -> None:
    """
    Validate and store a workflow definition in the configured repository.

    Definitions already used by a workflow are never overwritten; the edit
    is stored as a new version.
    """
    definition = _read_definition(path)
    try:
        definition.validate_graph()
    except GraphInvalidError as exc:
        typer.secho(f"Refusing invalid definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    repo = get_repository()
    stored = asyncio.run(repo.save_definition(definition))
    typer.echo(f"Stored {stored.id} version {stored.version} for {stored.org_id}")


@workflow_app.command("list")
def workflow_list(
    org: Optional[str] = typer.Option(None, help="Only this organization"),
    status: Optional[InstanceStatus] = typer.Option(None, help="Only this status"),
) -> None:
    """
    List workflow instances with their status and current step.

    Example:
        payflow workflow list --status RUNNING
        # Output: wfi-1234    RUNNING    approval-2
    """
    repo = get_repository()
    instances = asyncio.run(repo.list_instances(org_id=org, status=status))
    if not instances:
        typer.echo("No workflows found")
        return
    for wf in instances:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.current_node_id or '-'}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """
    Show an instance with the state of every node.

    Example:
        payflow workflow show wfi-1234
        # Output: Workflow wfi-1234: RUNNING (payment request pr-1)
        #         - start: COMPLETED
        #         - approval-1: RUNNING (2024-01-01 10:00 -> )
    """
    repo = get_repository()
    wf = asyncio.run(repo.get_instance(instance_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Workflow {wf.id}: {wf.status.value} (payment request {wf.payment_request_id})"
    )
    typer.echo(f"Definition: {wf.definition_id} v{wf.definition_version}")
    for node_id, state in wf.node_states.items():
        marker = " <- current" if node_id == wf.current_node_id else ""
        timing = (
            f" ({state.started_at or ''} -> {state.completed_at or ''})"
            if state.started_at or state.completed_at
            else ""
        )
        actor = f" by {state.acted_by}" if state.acted_by else ""
        typer.echo(f"- {node_id}: {state.status.value}{actor}{timing}{marker}")


@workflow_app.command("history")
def workflow_history(instance_id: str) -> None:
    """Print the audit trail of an instance in order."""
    repo = get_repository()
    records = asyncio.run(repo.list_audit_records(instance_id))
    if not records:
        typer.echo("No history found")
        raise typer.Exit(code=1)
    for r in records:
        transition = (
            f"{r.from_status.value if r.from_status else '-'} -> "
            f"{r.to_status.value if r.to_status else '-'}"
        )
        actor = f" by {r.actor}" if r.actor else ""
        typer.echo(
            f"#{r.sequence} {r.timestamp.isoformat()} {r.event.value} {r.node_id} {transition}{actor}"
        )


@events_app.command("flush")
def events_flush() -> None:
    """Publish audit records that have not reached the transport yet."""
    config = load_config()
    emitter = EventEmitter(
        get_repository(config=config), get_transport(config=config), config.transport.topic
    )
    count = asyncio.run(emitter.flush())
    typer.echo(f"Published {count} events")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
