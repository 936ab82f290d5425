"""``patchkit analyze TAG`` -- pre-flight report for an upgrade, no side effects."""

from __future__ import annotations

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError

console = Console()


def analyze_cmd(
    tag: str = typer.Argument(
        ...,
        help="Upstream release tag to analyze.",
    ),
) -> None:
    """Classify the patch set against TAG and dry-run every patch."""
    pipeline = runtime.open_pipeline()
    try:
        report = pipeline.analyze(tag)
    except PatchkitError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=2)
    finally:
        pipeline.close()

    runtime.finish(report, console)
