"""Shared CLI plumbing: logging set-up and pipeline construction."""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from patchkit.config import PatchkitSettings
from patchkit.core.pipeline import UpgradePipeline
from patchkit.models.run import RunReport
from patchkit.monitor.renderer import StatusRenderer


def configure_logging(level: str = "INFO") -> None:
    """Route stdlib logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                show_path=False,
            )
        ],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def open_pipeline() -> UpgradePipeline:
    """Build the pipeline from ``PATCHKIT_*`` settings."""
    return UpgradePipeline(PatchkitSettings())


def finish(report: RunReport, console: Console) -> None:
    """Print *report* and exit non-zero unless the run succeeded."""
    console.print(StatusRenderer(console=console).render_report(report))
    if not report.ok:
        raise typer.Exit(code=1)
