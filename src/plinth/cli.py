# src/plinth/cli.py
"""Plinth Command Line Interface.

Operator commands for the run store: initialize the database, register
project inputs, inspect runs and recover stuck steps.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
from pydantic import ValidationError

from plinth import __version__
from plinth.contracts import InputStatus, OrchestratorFailure, Run, SchemaMismatchError
from plinth.core.config import LoggingSettings, PlinthSettings, load_settings

if TYPE_CHECKING:
    from plinth.core.runstore import RunStoreDB
    from plinth.engine.orchestrator import Orchestrator

__all__ = ["app"]

DEFAULT_SETTINGS_FILE = Path("settings.yaml")

app = typer.Typer(
    name="plinth",
    help="Plinth: resilient run/step execution for multi-stage pipelines.",
    no_args_is_help=True,
)

db_app = typer.Typer(help="Run store database commands.", no_args_is_help=True)
inputs_app = typer.Typer(help="Project input commands.", no_args_is_help=True)
runs_app = typer.Typer(help="Run inspection and recovery commands.", no_args_is_help=True)
app.add_typer(db_app, name="db")
app.add_typer(inputs_app, name="inputs")
app.add_typer(runs_app, name="runs")


@dataclass
class _CliState:
    settings_path: Path | None
    database_url: str | None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"plinth version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML (default: ./settings.yaml if present).",
    ),
    database: str | None = typer.Option(
        None,
        "--database",
        "-d",
        help="Database URL, overrides database.url from settings.",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Skip loading .env file."),
    env_file: Path | None = typer.Option(None, "--env-file", help="Path to .env file (skips automatic search)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose/debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Output structured JSON logs."),
) -> None:
    """Plinth: resilient run/step execution for multi-stage pipelines."""
    from plinth.core.logging import configure_logging

    configure_logging(LoggingSettings(level="DEBUG" if verbose else "WARNING", json_output=json_logs))

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)

    ctx.obj = _CliState(settings_path=settings, database_url=database)


# === Helpers ===


def _resolve_settings(state: _CliState) -> PlinthSettings:
    path = state.settings_path
    if path is None and DEFAULT_SETTINGS_FILE.exists():
        path = DEFAULT_SETTINGS_FILE
    try:
        loaded = load_settings(path) if path is not None else PlinthSettings()
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(part) for part in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None
    if state.database_url is not None:
        loaded = loaded.model_copy(update={"database": loaded.database.model_copy(update={"url": state.database_url})})
    return loaded


def _open_db(settings: PlinthSettings) -> RunStoreDB:
    from plinth.core.runstore import RunStoreDB

    try:
        return RunStoreDB.from_url(settings.database.url, echo=settings.database.echo)
    except SchemaMismatchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def _orchestrator(db: RunStoreDB, settings: PlinthSettings) -> Orchestrator:
    from plinth.core.runstore import ProjectInputRepository, RunRepository
    from plinth.engine.orchestrator import Orchestrator

    return Orchestrator(RunRepository(db), ProjectInputRepository(db), settings.pipeline)


def _run_to_dict(run: Run) -> dict[str, Any]:
    return {
        "run_id": run.run_id,
        "project_id": run.project_id,
        "input_version": run.input_version,
        "idempotency_key": run.idempotency_key,
        "status": run.status.value,
        "version": run.version,
        "created_at": run.created_at.isoformat(),
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "error": run.error.to_dict() if run.error else None,
        "output": run.output,
        "metrics": run.metrics,
    }


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, indent=2, sort_keys=True))


def _fail(failure: OrchestratorFailure) -> None:
    typer.echo(f"Error [{failure.code}]: {failure.message}", err=True)
    raise typer.Exit(1)


# === db ===


@db_app.command("init")
def db_init(ctx: typer.Context) -> None:
    """Create the run store tables (no-op if they exist)."""
    settings = _resolve_settings(ctx.obj)
    with _open_db(settings):
        typer.echo(f"Run store ready: {settings.database.url}")


# === inputs ===


@inputs_app.command("add")
def inputs_add(
    ctx: typer.Context,
    project_id: str = typer.Argument(..., help="Project identifier."),
    payload_file: Path = typer.Argument(..., help="JSON file holding the input payload (an object)."),
    final: bool = typer.Option(False, "--final", help="Store as final instead of draft."),
) -> None:
    """Store a new input version for a project."""
    from plinth.core.runstore import ProjectInputRepository

    try:
        payload = json.loads(payload_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        typer.echo(f"Error: File not found: {payload_file}", err=True)
        raise typer.Exit(1) from None
    except json.JSONDecodeError as e:
        typer.echo(f"Error: {payload_file} is not valid JSON: {e}", err=True)
        raise typer.Exit(1) from None
    if not isinstance(payload, dict):
        typer.echo("Error: input payload must be a JSON object", err=True)
        raise typer.Exit(1)

    settings = _resolve_settings(ctx.obj)
    with _open_db(settings) as db:
        stored = ProjectInputRepository(db).add(
            project_id,
            payload,
            InputStatus.FINAL if final else InputStatus.DRAFT,
        )
    _echo_json({"project_id": stored.project_id, "version": stored.version, "status": stored.status.value})


# === runs ===


@runs_app.command("latest")
def runs_latest(
    ctx: typer.Context,
    project_id: str = typer.Argument(..., help="Project identifier."),
) -> None:
    """Show the most recently created run for a project."""
    from plinth.core.runstore import RunRepository

    settings = _resolve_settings(ctx.obj)
    with _open_db(settings) as db:
        try:
            run = RunRepository(db).get_latest_for_project(project_id)
        except SchemaMismatchError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
    if run is None:
        typer.echo(f"No runs for project {project_id}", err=True)
        raise typer.Exit(1)
    _echo_json(_run_to_dict(run))


@runs_app.command("status")
def runs_status(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
) -> None:
    """Show a run's status and its decoded step map as JSON."""
    from plinth.core.runstore import serialize_step_status

    settings = _resolve_settings(ctx.obj)
    with _open_db(settings) as db:
        result = _orchestrator(db, settings).get_step_status(run_id)
    if isinstance(result, OrchestratorFailure):
        _fail(result)
        return
    run, steps = result
    _echo_json(
        {
            "run_id": run.run_id,
            "project_id": run.project_id,
            "status": run.status.value,
            "error": run.error.to_dict() if run.error else None,
            "steps": serialize_step_status(steps),
        }
    )


@runs_app.command("reset-step")
def runs_reset_step(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Run identifier."),
    step: str = typer.Argument(..., help="Step name."),
) -> None:
    """Return a running or failed step to pending (recovery after a crash)."""
    from plinth.core.runstore import step_status_of

    settings = _resolve_settings(ctx.obj)
    with _open_db(settings) as db:
        result = _orchestrator(db, settings).reset_step(run_id, step)
    if isinstance(result, OrchestratorFailure):
        _fail(result)
        return
    entry = step_status_of(result.run).get(step)
    typer.echo(f"Step {step} of run {run_id} is now {entry.status if entry else 'pending'}")


if __name__ == "__main__":
    app()
