"""Main Typer application: imports and registers all CLI commands.

Entry point: ``patchkit`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from patchkit.cli.commands.admit import admit_cmd
from patchkit.cli.commands.analyze import analyze_cmd
from patchkit.cli.commands.ensure_patched import ensure_patched_cmd
from patchkit.cli.commands.monitor_cmd import monitor_cmd
from patchkit.cli.commands.rollback import rollback_cmd
from patchkit.cli.commands.status import status_cmd
from patchkit.cli.commands.upgrade import upgrade_cmd
from patchkit.cli.commands.versions import versions_cmd
from patchkit.cli.runtime import configure_logging
from patchkit.config import settings

app = typer.Typer(
    name="patchkit",
    help="patchkit: keep a patched build of an upstream project deployed, healthy, and reversible.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        settings.log_level,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    ),
) -> None:
    configure_logging(log_level)


# Register subcommands
app.command(name="upgrade", help="Build, activate, and monitor a patched release.")(upgrade_cmd)
app.command(name="analyze", help="Dry-run: classify and check the patch set.")(analyze_cmd)
app.command(name="rollback", help="Re-activate a previous artifact.")(rollback_cmd)
app.command(name="status", help="Show active artifact, last run, and audit trail.")(status_cmd)
app.command(name="versions", help="List available artifacts (rollback targets).")(versions_cmd)
app.command(name="admit", help="Nightly admission of scored candidate changes.")(admit_cmd)
app.command(
    name="ensure-patched", help="Patch the installed version if not done yet."
)(ensure_patched_cmd)
app.command(name="monitor", help="Monitor the active artifact and remediate.")(monitor_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
