"""``patchkit versions`` -- list built artifacts available as rollback targets."""

from __future__ import annotations

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError
from patchkit.monitor.renderer import StatusRenderer

console = Console()


def versions_cmd(
    remote: bool = typer.Option(
        False,
        "--remote",
        "-r",
        help="Also look up the latest upstream release.",
    ),
) -> None:
    """List available artifacts, newest first; the active one is starred."""
    pipeline = runtime.open_pipeline()
    latest = None
    try:
        artifacts = pipeline.list_versions()
        active = pipeline.store.active()
        if remote:
            try:
                latest = pipeline.latest_release()
            except PatchkitError as exc:
                console.print(f"[yellow]Could not query upstream:[/yellow] {exc}")
    finally:
        pipeline.close()

    if not artifacts:
        console.print("[dim]No artifacts built yet.[/dim]")
        if latest:
            console.print(f"Latest upstream release: {latest}")
        return
    console.print(StatusRenderer(console=console).render_versions(artifacts, active, latest=latest))
