"""``patchkit upgrade TAG`` -- build, activate, and monitor a patched release.

With ``--dry-run`` nothing is built or activated: the run only classifies
the patch set and dry-runs the cascade (same as ``patchkit analyze``).
"""

from __future__ import annotations

import typer
from rich.console import Console

from patchkit.cli import runtime
from patchkit.core.errors import PatchkitError

console = Console()


def upgrade_cmd(
    tag: str = typer.Argument(
        ...,
        help="Upstream release tag to upgrade to, e.g. v2026.2.27.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        "-n",
        help="Analyze only: classify and dry-run the cascade, change nothing.",
    ),
    no_monitor: bool = typer.Option(
        False,
        "--no-monitor",
        help="Skip post-activation health monitoring.",
    ),
    detach: bool = typer.Option(
        False,
        "--detach",
        "-d",
        help="Return after activation; monitor in a detached process.",
    ),
) -> None:
    """Upgrade to TAG with the full patch set.

    Exits non-zero unless the run ends with the new artifact active and,
    when monitored, STABLE.
    """
    pipeline = runtime.open_pipeline()
    try:
        if dry_run:
            report = pipeline.analyze(tag)
        else:
            report = pipeline.upgrade(tag, monitor=not (no_monitor or detach))
            if detach and report.ok:
                pid = pipeline.spawn_detached_monitor()
                console.print(f"[dim]Health monitor detached (pid {pid}).[/dim]")
    except PatchkitError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(code=2)
    finally:
        pipeline.close()

    runtime.finish(report, console)
