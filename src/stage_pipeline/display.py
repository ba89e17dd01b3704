"""Rich-based terminal display for stage runs.

All functions share the module-level ``_console`` so formatting is
consistent across a session.  Each function is standalone and stateless.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.pipeline_shared.models import RunManifest, TaskStatus

_console = Console()

_STATUS_STYLES = {
    TaskStatus.SUCCESS.value: "green",
    TaskStatus.BLOCKED.value: "yellow",
    TaskStatus.FAILED.value: "red",
}


def _status_text(status: Any) -> Text:
    value = getattr(status, "value", str(status))
    return Text(value.upper(), style=f"bold {_STATUS_STYLES.get(value, 'white')}")


def print_run_header(client: str, stage: str, run_id: str | None = None) -> None:
    header = Text()
    header.append("Stage Pipeline\n", style="bold white")
    header.append("Client: ", style="bold")
    header.append(f"{client}\n", style="cyan")
    header.append("Stage: ", style="bold")
    header.append(stage, style="green")
    if run_id:
        header.append("\nRun: ", style="bold")
        header.append(run_id, style="dim")
    _console.print(Panel(header, title="[bold]Run[/bold]", border_style="blue", expand=False))


def print_stage_outcome(outcome: Any) -> None:
    """Print the task table and the verdict panel for a stage outcome."""
    results = getattr(outcome, "results", []) or []
    if results:
        table = Table(title=f"Tasks - {outcome.stage}", show_lines=False)
        table.add_column("Task", style="cyan")
        table.add_column("Status")
        table.add_column("Deliverables", justify="right")
        table.add_column("Issues", justify="right")
        for r in results:
            table.add_row(r.task, _status_text(r.status), str(len(r.deliverables)), str(len(r.issues)))
        consolidated = getattr(outcome, "consolidated", None)
        if consolidated is not None:
            table.add_row(
                "coordinator",
                _status_text(consolidated.status),
                str(consolidated.total_deliverables),
                str(consolidated.total_issues),
            )
        _console.print(table)

    body = Text()
    body.append("Status: ", style="bold")
    body.append_text(_status_text(outcome.status))
    body.append(f"\nRun: {outcome.run_id}")
    reason = getattr(outcome, "reason", "") or getattr(outcome, "error", "")
    if reason:
        body.append(f"\nReason: {reason}")
    missing = getattr(outcome, "missing_preconditions", None)
    if missing:
        body.append(f"\nMissing: {', '.join(missing)}", style="yellow")
    if outcome.manifest_path:
        body.append(f"\nManifest: {outcome.manifest_path}", style="dim")
    border = _STATUS_STYLES.get(outcome.status.value, "white")
    _console.print(Panel(body, title=f"[bold]{outcome.stage}[/bold]", border_style=border, expand=False))


def print_manifest_table(client: str, manifests: list[RunManifest]) -> None:
    if not manifests:
        _console.print(f"[dim]No runs recorded for {client}[/dim]")
        return
    table = Table(title=f"Recent runs - {client}")
    table.add_column("Run ID", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Artifacts", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Reason")
    for m in manifests:
        cost = f"${m.metrics.cost_usd:.4f}" if m.metrics.cost_usd is not None else "-"
        table.add_row(m.run_id, m.stage, _status_text(m.status), str(len(m.artifacts)), cost, m.reason)
    _console.print(table)


def print_budget_summary(summary: dict[str, Any]) -> None:
    limits = summary.get("limits", {})

    def _fmt(value: float | None) -> str:
        return "unbounded" if value is None else f"${value:.2f}"

    table = Table(title=f"Budget - {summary.get('client', '')}")
    table.add_column("Scope", style="cyan")
    table.add_column("Spent", justify="right")
    table.add_column("Limit", justify="right")
    table.add_row("client total", f"${summary.get('total_usd', 0.0):.4f}", _fmt(limits.get("per_client_total_usd")))
    table.add_row("today", f"${summary.get('today_usd', 0.0):.4f}", _fmt(limits.get("per_client_day_usd")))
    for stage, cost in summary.get("stages", {}).items():
        table.add_row(f"stage {stage}", f"${cost:.4f}", _fmt(limits.get("per_stage_usd")))
    _console.print(table)


def print_error_panel(error: Exception | str) -> None:
    _console.print(Panel(Text(str(error), style="red"), title="[bold red]Error[/bold red]", border_style="red", expand=False))
