"""``patchkit ensure-patched`` -- post-update hook.

Compares the installed upstream version with the version marker and runs
a full upgrade only when they differ, so it is cheap to call after every
package update.
"""

from __future__ import annotations

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError

console = Console()


def ensure_patched_cmd(
    version: str = typer.Option(
        None,
        "--version",
        "-v",
        help="Installed version (default: read PATCHKIT_INSTALLED_VERSION_FILE).",
    ),
    no_monitor: bool = typer.Option(
        False,
        "--no-monitor",
        help="Skip post-activation health monitoring.",
    ),
) -> None:
    """Patch the installed version unless it is already patched."""
    pipeline = runtime.open_pipeline()
    try:
        report = pipeline.ensure_patched(version, monitor=not no_monitor)
    except PatchkitError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=2)
    finally:
        pipeline.close()

    if report is None:
        console.print("[green]Already patched.[/green]")
        return
    runtime.finish(report, console)
