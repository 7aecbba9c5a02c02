"""Command line interface for inspecting and editing workflow templates."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError

from .config import load_config
from .contracts import Condition, Workflow
from .engine import apply_operations, validate_workflow
from .exceptions import DuplicateStepIdError
from .resolution.conditions import evaluate_condition, resolve_source
from .resolution.tokens import EvaluationContext, resolve

app = typer.Typer(help="CLI for stepwise workflow templates")

# Command groups
workflow_app = typer.Typer(help="Commands for validating and patching workflows")
token_app = typer.Typer(help="Commands for resolving {Source / Field} tokens")
condition_app = typer.Typer(help="Commands for evaluating branch conditions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(token_app, name="token")
app.add_typer(condition_app, name="condition")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for stepwise loggers"),
) -> None:
    """Stepwise CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _read_document(path: Path) -> Any:
    """Load a JSON or YAML file; YAML is a superset so one parser covers both."""
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with path.open() as f:
        try:
            return yaml.safe_load(f)
        except yaml.YAMLError as exc:
            typer.secho(f"Could not parse {path}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)


def _load_workflow(path: Path) -> Workflow:
    try:
        return Workflow.model_validate(_read_document(path))
    except ValidationError as exc:
        typer.secho(
            f"Invalid workflow {path}: {exc.error_count()} error(s)", fg=typer.colors.RED
        )
        typer.echo(str(exc))
        raise typer.Exit(code=1)


def _load_context(path: Optional[Path]) -> EvaluationContext:
    if path is None:
        return EvaluationContext()
    try:
        return EvaluationContext.model_validate(_read_document(path) or {})
    except ValidationError as exc:
        typer.secho(
            f"Invalid context {path}: {exc.error_count()} error(s)", fg=typer.colors.RED
        )
        raise typer.Exit(code=1)


@workflow_app.command("validate")
def workflow_validate(workflow_path: Path) -> None:
    """
    Check a workflow template against its structural rules.

    Prints one line per issue and exits with code 1 when any are found.

    Example:
        stepwise workflow validate ./onboarding.yaml
        # Output: UNKNOWN_ROLE  step-3  Step step-3 uses undefined role Reviewer
    """
    workflow = _load_workflow(workflow_path)
    limits = load_config().structure
    report = validate_workflow(workflow, limits)
    if report.valid:
        typer.echo(f"Workflow {workflow.workflow_id} is valid")
        return
    for issue in report.issues:
        typer.echo(f"{issue.code}\t{issue.step_id or '-'}\t{issue.message}")
    raise typer.Exit(code=1)


@workflow_app.command("patch")
def workflow_patch(
    workflow_path: Path,
    operations_path: Path,
    output: Optional[Path] = typer.Option(
        None, help="Write the patched workflow here instead of stdout"
    ),
) -> None:
    """
    Apply a list of patch operations to a workflow template.

    Each operation is applied on its own; failures are reported and the rest
    of the batch still runs. Exits with code 1 if any operation failed.

    Example:
        stepwise workflow patch ./onboarding.yaml ./ops.json --output patched.json
    """
    workflow = _load_workflow(workflow_path)
    operations = _read_document(operations_path)
    if not isinstance(operations, list):
        typer.secho("Operations file must contain a list", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        result = apply_operations(workflow, operations, load_config().structure)
    except DuplicateStepIdError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)

    patched = json.dumps(result.workflow.model_dump(mode="json", by_alias=True), indent=2)
    if output is not None:
        output.write_text(patched)
        typer.echo(f"Wrote patched workflow to {output}")
    else:
        typer.echo(patched)

    for failure in result.failures:
        typer.secho(
            f"Operation {failure.index} ({failure.op}) failed: {failure.error}",
            fg=typer.colors.RED,
            err=True,
        )
    if not result.success:
        raise typer.Exit(code=1)


@token_app.command("resolve")
def token_resolve(
    text: str,
    context: Optional[Path] = typer.Option(None, help="JSON/YAML evaluation context"),
) -> None:
    """
    Substitute ``{Source / Field}`` tokens in TEXT.

    Example:
        stepwise token resolve "Hi {Kickoff / Client Name}" --context ctx.json
        # Output: Hi Acme
    """
    typer.echo(resolve(text, _load_context(context)))


@condition_app.command("evaluate")
def condition_evaluate(
    source: str = typer.Option(..., help="Token or literal on the left-hand side"),
    operator: str = typer.Option(..., help="Comparison operator, e.g. equals"),
    value: Optional[str] = typer.Option(None, help="Right-hand side value"),
    context: Optional[Path] = typer.Option(None, help="JSON/YAML evaluation context"),
) -> None:
    """
    Evaluate a single branch condition and print true or false.

    Example:
        stepwise condition evaluate --source "{Kickoff / Amount}" \\
            --operator greater_than --value 100 --context ctx.json
        # Output: true (resolved source: '250')
    """
    ctx = _load_context(context)
    condition = Condition(source=source, operator=operator, value=value)
    outcome = evaluate_condition(condition, ctx)
    resolved = resolve_source(source, ctx)
    typer.echo(f"{'true' if outcome else 'false'} (resolved source: {resolved!r})")
