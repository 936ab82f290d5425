"""``patchkit rollback`` -- point the active pointer back at an earlier artifact."""

from __future__ import annotations

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError

console = Console()


def rollback_cmd(
    to: str = typer.Option(
        None,
        "--to",
        "-t",
        help="Artifact name to activate (default: newest non-active artifact).",
    ),
) -> None:
    """Roll back to a previously built artifact and restart the service."""
    pipeline = runtime.open_pipeline()
    try:
        report = pipeline.rollback(to)
    except PatchkitError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=2)
    finally:
        pipeline.close()

    runtime.finish(report, console)
