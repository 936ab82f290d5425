"""``patchkit admit CANDIDATES.json`` -- nightly admission of scored changes.

The file holds a JSON list of ``{"id", "score", "intent", "diff_locator",
"title"}`` objects produced by an external scorer.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.table import Table

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError
from patchkit.models.admission import AdmissionDecision, ScoredChange

console = Console()

_DECISION_STYLES: dict[AdmissionDecision, str] = {
    AdmissionDecision.ADMITTED: "[green]admitted[/green]",
    AdmissionDecision.MANUAL_REVIEW: "[yellow]manual review[/yellow]",
    AdmissionDecision.REJECTED: "[red]rejected[/red]",
    AdmissionDecision.SKIPPED: "[dim]skipped[/dim]",
}


def admit_cmd(
    candidates_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON list of scored candidate changes.",
    ),
    no_monitor: bool = typer.Option(
        False,
        "--no-monitor",
        help="Skip health monitoring after the rebuild.",
    ),
) -> None:
    """Gate candidates, append admitted ones, rebuild, and sweep merged patches."""
    try:
        candidates = TypeAdapter(list[ScoredChange]).validate_json(
            candidates_file.read_text(encoding="utf-8")
        )
    except ValidationError as exc:
        console.print(f"[bold red]Invalid candidates file:[/bold red] {exc}")
        raise typer.Exit(code=2)

    pipeline = runtime.open_pipeline()
    try:
        report, summary = pipeline.admit(candidates, monitor=not no_monitor)
    except PatchkitError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=2)
    finally:
        pipeline.close()

    if summary.verdicts:
        table = Table(title="Admission", show_header=True, header_style="bold cyan")
        table.add_column("Candidate")
        table.add_column("Score", justify="right")
        table.add_column("Intent")
        table.add_column("Decision", justify="center")
        table.add_column("Reason")
        for verdict in summary.verdicts:
            table.add_row(
                verdict.candidate.id,
                f"{verdict.candidate.score:g}",
                verdict.candidate.intent,
                _DECISION_STYLES.get(verdict.decision, verdict.decision.value),
                verdict.reason,
            )
        console.print(table)
    if summary.build_failed:
        console.print("[bold red]Rebuild failed; auto-added entries were retired.[/bold red]")

    runtime.finish(report, console)
