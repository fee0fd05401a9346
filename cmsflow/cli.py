"""Command line interface for inspecting cmsflow definitions and instances."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError as PydanticValidationError

from cmsflow.cli_utils.fs import _iter_definition_files, _load_definition_file
from cmsflow.config import configure_logging, load_config
from cmsflow.contracts import InstanceStatus, WorkflowDefinition
from cmsflow.errors import CmsFlowError, NotFound
from cmsflow.persistence import WorkflowStore, get_repository
from cmsflow.service import WorkflowService
from cmsflow.transitions import available_actions
from cmsflow.validation import validate_definition

app = typer.Typer(help="CLI for cmsflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting workflow instances")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")


@app.callback()
def main() -> None:
    """cmsflow CLI entry point."""
    configure_logging(load_config())


def _service() -> WorkflowService:
    return WorkflowService(WorkflowStore(get_repository()))


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Check workflow definition files without storing them.

    Accepts a single YAML/JSON file or a directory, which is searched
    recursively. Exits with code 1 if any definition is invalid.

    Example:
        cmsflow definition validate ./workflows
        # Output: OK ./workflows/review.yaml
        #         INVALID ./workflows/loop.yaml: CycleDetected: ...
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    files = list(_iter_definition_files(path))
    if not files:
        typer.echo("No definition files found.")
        return

    failures = 0
    for file in files:
        try:
            definition = WorkflowDefinition.model_validate(_load_definition_file(file))
            validate_definition(definition)
        except CmsFlowError as exc:
            failures += 1
            typer.secho(f"INVALID {file}: {exc.reason}: {exc}", fg=typer.colors.RED)
        except (PydanticValidationError, ValueError) as exc:
            failures += 1
            typer.secho(f"INVALID {file}: {exc}", fg=typer.colors.RED)
        else:
            typer.echo(f"OK {file}")

    if failures:
        raise typer.Exit(code=1)


@definition_app.command("create")
def definition_create(path: Path, actor: Optional[str] = None) -> None:
    """
    Validate a definition file and store it in the configured repository.

    Example:
        cmsflow definition create ./workflows/review.yaml --actor alice
        # Output: Created workflow 3f2c... (Article review)
    """
    if not path.is_file():
        typer.secho("Specified file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        data = _load_definition_file(path)
        stored = asyncio.run(_service().create_workflow(data, actor=actor))
    except CmsFlowError as exc:
        typer.secho(f"{exc.reason}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except (PydanticValidationError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Created workflow {stored.id} ({stored.name})")


@definition_app.command("list")
def definition_list() -> None:
    """
    List stored workflow definitions.

    Example:
        cmsflow definition list
        # Output: 3f2c...    Article review    1.0.0    active
    """
    definitions = asyncio.run(_service().list_workflows())
    if not definitions:
        typer.echo("No workflows found")
        return
    for definition in definitions:
        typer.echo(
            f"{definition.id}\t{definition.name}\t{definition.semver}\t{definition.status.value}"
        )


@instance_app.command("list")
def instance_list(
    workflow_id: Optional[str] = typer.Option(None, help="Only instances of this workflow"),
    status: Optional[str] = typer.Option(None, help="active, completed or failed"),
) -> None:
    """
    List workflow instances with their status and position.

    Example:
        cmsflow instance list --status active
        # Output: 9ab1...    3f2c...    active    review
    """
    if status is not None and status not in {s.value for s in InstanceStatus}:
        typer.secho(f"Unknown status: {status}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    instances = asyncio.run(_service().list_instances(workflow_id=workflow_id, status=status))
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        position = instance.current_stage or instance.current_step or "-"
        typer.echo(
            f"{instance.id}\t{instance.workflow_id}\t{instance.status.value}\t{position}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its full history.

    Example:
        cmsflow instance show 9ab1...
        # Output: Instance 9ab1...: failed
        #         Workflow: 3f2c...
        #         Error: Step 'send' failed: timeout (StepError)
        #         - 2024-01-01T10:00:00+00:00 execute step=fetch attempts=1
    """
    service = _service()
    try:
        instance = asyncio.run(service.get_instance(instance_id))
    except NotFound:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)

    typer.echo(f"Instance {instance.id}: {instance.status.value}")
    typer.echo(f"Workflow: {instance.workflow_id}")
    if instance.subject_id:
        typer.echo(f"Subject: {instance.subject_id}")
    if instance.current_stage:
        typer.echo(f"Stage: {instance.current_stage}")
        if not instance.is_terminal:
            definition = asyncio.run(service.store.get_definition(instance.workflow_id))
            if definition is not None:
                actions = available_actions(definition, instance.current_stage)
                typer.echo(f"Actions: {', '.join(actions) or '(none)'}")
    if instance.current_step:
        typer.echo(f"Step: {instance.current_step} ({instance.sub_state.value})")
    if instance.error:
        typer.echo(f"Error: {instance.error} ({instance.error_reason})")
    for entry in instance.history:
        where = f"step={entry.step_id}" if entry.step_id else f"stage={entry.stage_id}"
        line = f"- {entry.timestamp.isoformat()} {entry.action} {where} attempts={entry.attempts}"
        if entry.result is not None:
            line += f" result={json.dumps(entry.result, default=str)}"
        typer.echo(line)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
