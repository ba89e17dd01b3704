"""Typer CLI for the stage pipeline.

Exit codes: 0 on success, 1 when a stage is blocked or failed, 2 on
configuration or client errors.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from src.pipeline_shared import __version__
from src.pipeline_shared.logging import setup_logging
from src.stage_pipeline.budget import BudgetLedger
from src.stage_pipeline.config import (
    PipelineConfig,
    PipelineSettings,
    apply_settings,
    load_pipeline_config,
)
from src.stage_pipeline.display import (
    print_budget_summary,
    print_error_panel,
    print_manifest_table,
    print_run_header,
    print_stage_outcome,
)
from src.stage_pipeline.exceptions import (
    ClientNotFoundError,
    ConfigurationError,
    PipelineError,
)
from src.stage_pipeline.manifest import ManifestStore
from src.stage_pipeline.pipeline import StagePipelineDriver

EXIT_OK = 0
EXIT_NOT_SUCCESS = 1
EXIT_CONFIG_ERROR = 2

_DEFAULT_CONFIG_TEMPLATE = """\
# Stage pipeline configuration
paths:
  clients_dir: clients
  output_root: outputs

budget:
  per_run_usd: 1.00
  per_stage_usd: 2.50
  per_client_total_usd: 25.00
  per_client_day_usd: 5.00

gates:
  unknown_stage_policy: allow  # allow | deny
  presales_terminal_stage: PS5

executor:
  max_concurrent: 3
  task_timeout_s: 300

alerts:
  enabled: true
  webhook_url: ""

metered:
  base_url: ""
  model: claude-sonnet-4
  max_retries: 3
  backoff_base: 1.0
  max_tokens: 1024
  # estimate_usd: 0.50

# stage -> tasks (more than one task runs as a parallel group)
stages:
  S2: [designer-agent, frontend-agent, backend-agent]

pipelines:
  presales: [PS0, PS1, PS2, PS3, PS4, PS5]
  delivery: [S2, S3]
"""


app = typer.Typer(
    name="stage-pipeline",
    help="Gate-checked, budgeted stage runs for client engagements.",
    no_args_is_help=True,
)

ConfigOption = typer.Option(
    None, "--config", "-c", help="Path to pipeline config YAML."
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"stage-pipeline {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """Stage pipeline control plane."""


def _load(config_path: Optional[Path]) -> tuple[PipelineConfig, PipelineSettings]:
    settings = PipelineSettings()
    setup_logging("stage-pipeline", settings.log_level)
    path = config_path or (Path(settings.config_path) if settings.config_path else None)
    try:
        cfg = load_pipeline_config(path)
    except ConfigurationError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    return apply_settings(cfg, settings), settings


@app.command()
def run(
    client: str = typer.Argument(..., help="Client slug."),
    stage: str = typer.Argument(..., help="Stage token, e.g. S2."),
    config: Optional[Path] = ConfigOption,
    run_id: Optional[str] = typer.Option(None, "--run-id", help="Explicit run id."),
) -> None:
    """Run one stage for a client."""
    cfg, settings = _load(config)
    driver = StagePipelineDriver.from_config(cfg, settings)
    print_run_header(client, stage, run_id)
    try:
        outcome = asyncio.run(driver.run_stage(client, stage, run_id=run_id))
    except (ClientNotFoundError, ConfigurationError) as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    except PipelineError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_NOT_SUCCESS)
    print_stage_outcome(outcome)
    raise typer.Exit(code=EXIT_OK if outcome.ok else EXIT_NOT_SUCCESS)


@app.command()
def pipeline(
    client: str = typer.Argument(..., help="Client slug."),
    name: str = typer.Argument(..., help="Pipeline name, e.g. presales or delivery."),
    config: Optional[Path] = ConfigOption,
) -> None:
    """Run a named multi-stage pipeline, stopping at the first non-success."""
    cfg, settings = _load(config)
    driver = StagePipelineDriver.from_config(cfg, settings)
    try:
        outcomes = asyncio.run(driver.run_pipeline(client, name))
    except (ClientNotFoundError, ConfigurationError) as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    except PipelineError as exc:
        print_error_panel(exc)
        raise typer.Exit(code=EXIT_NOT_SUCCESS)
    for outcome in outcomes:
        print_stage_outcome(outcome)
    ok = bool(outcomes) and all(o.ok for o in outcomes)
    raise typer.Exit(code=EXIT_OK if ok else EXIT_NOT_SUCCESS)


@app.command()
def status(
    client: str = typer.Argument(..., help="Client slug."),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show."),
    config: Optional[Path] = ConfigOption,
) -> None:
    """Show a client's most recent run manifests."""
    cfg, _ = _load(config)
    store = ManifestStore(cfg.paths.output_root)
    print_manifest_table(client, store.recent(client, limit=limit))


@app.command()
def budget(
    client: str = typer.Argument(..., help="Client slug."),
    config: Optional[Path] = ConfigOption,
) -> None:
    """Show a client's spend against the configured ceilings."""
    cfg, _ = _load(config)
    store = ManifestStore(cfg.paths.output_root)
    ledger = BudgetLedger.from_history(store, client, cfg.budget)
    print_budget_summary(ledger.summary(client))


@app.command("init-config")
def init_config(
    path: Path = typer.Argument(Path("pipeline.yaml"), help="Where to write the template."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write a commented config template."""
    if path.exists() and not force:
        print_error_panel(f"{path} already exists (use --force to overwrite)")
        raise typer.Exit(code=EXIT_CONFIG_ERROR)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    typer.echo(f"Wrote {path}")


if __name__ == "__main__":
    app()
