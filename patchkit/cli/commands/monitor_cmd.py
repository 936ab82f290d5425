"""``patchkit monitor`` -- watch the active artifact and remediate if unhealthy.

This is what ``upgrade --detach`` spawns.  It can also be run from cron
or a service manager after any restart.  The pipeline lock is taken only
for the remediation step, so monitoring never blocks other runs.
"""

from __future__ import annotations

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError

console = Console()


def monitor_cmd(
    auto_added: str = typer.Option(
        "",
        "--auto-added",
        "-a",
        help="Comma-separated patch ids to disable if the window is not STABLE.",
    ),
) -> None:
    """Run one monitoring window against the active artifact."""
    ids = [pid.strip() for pid in auto_added.split(",") if pid.strip()]
    pipeline = runtime.open_pipeline()
    try:
        report = pipeline.monitor(auto_added=ids or None)
    except PatchkitError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=2)
    finally:
        pipeline.close()

    runtime.finish(report, console)
