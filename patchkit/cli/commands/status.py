"""``patchkit status`` -- active artifact, last run, patch counts, audit trail.

A pure read: the status view re-reads every source on each call and
never changes anything (apart from ``--export-audit``, which writes the
requested file).
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.monitor.renderer import StatusRenderer

console = Console()


def status_cmd(
    export_audit: Path = typer.Option(
        None,
        "--export-audit",
        "-e",
        help="Also write the full audit log as JSON lines to this path.",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the snapshot as JSON instead of a panel.",
    ),
) -> None:
    """Show the current deployment state."""
    pipeline = runtime.open_pipeline()
    try:
        snapshot = pipeline.status()
        if export_audit is not None:
            count = pipeline.audit.export_jsonl(export_audit)
            console.print(f"[dim]Exported {count} audit entries to {export_audit}[/dim]")
    finally:
        pipeline.close()

    if as_json:
        console.print_json(snapshot.model_dump_json())
    else:
        console.print(StatusRenderer(console=console).render_status(snapshot))
    if not snapshot.audit_valid:
        console.print("[bold red]Audit log failed verification.[/bold red]")
        raise typer.Exit(code=1)
