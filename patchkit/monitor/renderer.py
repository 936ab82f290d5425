"""Rich terminal renderer for patchkit status, run reports, and versions.

Color scheme
------------
- green     : STABLE, applied, active
- yellow    : UNSTABLE, low-confidence (three-way) applications
- bold red  : CRITICAL, failed patches, failed phases
- dim       : retired entries, absent values
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from patchkit.models.artifacts import Artifact
from patchkit.models.health import HealthState
from patchkit.models.run import RunReport
from patchkit.monitor.projection import StatusSnapshot

# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_HEALTH_LABELS: dict[HealthState, str] = {
    HealthState.MONITORING: "[cyan]MONITORING[/cyan]",
    HealthState.STABLE: "[green]STABLE[/green]",
    HealthState.UNSTABLE: "[yellow]UNSTABLE[/yellow]",
    HealthState.CRITICAL: "[bold red]CRITICAL[/bold red]",
}


def health_label(state: HealthState | None) -> str:
    if state is None:
        return "[dim]not monitored[/dim]"
    return _HEALTH_LABELS.get(state, state.value)


class StatusRenderer:
    """Renders snapshots and reports as Rich renderables.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Run report
    # ------------------------------------------------------------------

    def render_report(self, report: RunReport) -> Panel:
        """One finished run: outcome line plus the per-patch table."""
        if report.ok:
            outcome = "[bold green]OK[/bold green]"
            border = "green"
        else:
            outcome = "[bold red]FAILED[/bold red]"
            border = "red"

        lines = [
            f"[bold]Run:[/bold] {report.run_id}  |  [bold]Action:[/bold] {report.action}"
            f"  |  [bold]Outcome:[/bold] {outcome}",
            f"[bold]Target:[/bold] {report.target or '-'}"
            f"  |  [bold]From:[/bold] {report.from_version or '-'}"
            f"  |  [bold]Health:[/bold] {health_label(report.health)}"
            + (f" ({report.crash_count} crash(es))" if report.crash_count else ""),
            f"[bold]Artifact:[/bold] {report.artifact or '-'}"
            f"  |  [bold]Previous good:[/bold] {report.previous_good_artifact or '-'}",
        ]
        if report.phase_failed:
            lines.append(
                f"[bold red]Failed during {report.phase_failed}:[/bold red] {report.error}"
            )
        if report.rollback_scope and report.rollback_scope != "none":
            lines.append(f"[yellow][bold]Rollback:[/bold] {report.rollback_scope}[/yellow]")
        if report.conflicting:
            lines.append(f"[yellow]Conflicting:[/yellow] {', '.join(report.conflicting)}")
        if report.retired:
            lines.append(f"[dim]Merged upstream:[/dim] {', '.join(report.retired)}")

        parts: list = [Text.from_markup("\n".join(lines))]
        if report.applied or report.failed:
            parts += [Text(""), self._patch_table(report)]

        return Panel(
            Group(*parts),
            title="[bold]patchkit run report[/bold]",
            subtitle=f"{report.duration_seconds:.1f}s, "
            f"finished {report.finished_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style=border,
            padding=(1, 2),
        )

    def _patch_table(self, report: RunReport) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Patch", min_width=12)
        table.add_column("Result", justify="center", min_width=10)
        table.add_column("Note")

        low = set(report.low_confidence)
        for pid in report.applied:
            if pid in low:
                table.add_row(pid, "[yellow]applied[/yellow]", "[yellow]three-way, review[/yellow]")
            else:
                table.add_row(pid, "[green]applied[/green]", "")
        for pid in report.failed:
            table.add_row(pid, "[bold red]failed[/bold red]", "all strategies failed")
        if report.strategies:
            summary = ", ".join(f"{k}={v}" for k, v in sorted(report.strategies.items()))
            table.caption = f"strategies: {summary}"
        return table

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def render_status(self, snapshot: StatusSnapshot) -> Panel:
        active = snapshot.active.name if snapshot.active else "[dim]none[/dim]"
        previous = snapshot.previous.name if snapshot.previous else "[dim]none[/dim]"
        chain = "[green]valid[/green]" if snapshot.audit_valid else "[bold red]BROKEN[/bold red]"

        summary = [
            f"[bold]Active:[/bold] {active}  |  [bold]Rollback target:[/bold] {previous}",
            f"[bold]Patched version:[/bold] {snapshot.patched_version or '[dim]none[/dim]'}"
            + ("  [yellow](differs from active)[/yellow]" if snapshot.version_drift else ""),
            f"[bold]Patches:[/bold] {len(snapshot.active_patch_ids)} active, "
            f"{len(snapshot.retired_patches)} retired  |  "
            f"[bold]Artifacts:[/bold] {snapshot.artifact_count}  |  [bold]Audit:[/bold] {chain}",
        ]
        last = snapshot.last_run
        if last is not None:
            outcome = "[green]ok[/green]" if last.ok else "[bold red]failed[/bold red]"
            summary.append(
                f"[bold]Last run:[/bold] {last.action} {last.target or ''} {outcome}, "
                f"health {health_label(last.health)}"
            )

        parts: list = [Text.from_markup("\n".join(summary))]
        if snapshot.recent_entries:
            table = Table(show_header=True, header_style="bold cyan", expand=True)
            table.add_column("When", style="dim", width=19)
            table.add_column("Run", min_width=12)
            table.add_column("Action")
            table.add_column("Phase")
            table.add_column("Outcome")
            for entry in snapshot.recent_entries:
                table.add_row(
                    entry.timestamp_utc.strftime("%Y-%m-%d %H:%M:%S"),
                    entry.run_id,
                    entry.action,
                    entry.phase or "-",
                    entry.outcome or "-",
                )
            parts += [Text(""), table]

        return Panel(
            Group(*parts),
            title="[bold]patchkit status[/bold]",
            subtitle=f"as of {snapshot.taken_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="green" if snapshot.healthy else "yellow",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def render_versions(
        self, artifacts: list[Artifact], active: Artifact | None, *, latest: str | None = None
    ) -> Table:
        table = Table(
            title="Available artifacts (rollback targets)",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("", width=2)
        table.add_column("Artifact", min_width=20)
        table.add_column("Version")
        table.add_column("Build", justify="right")
        table.add_column("Created", style="dim")
        table.add_column("Applied", justify="right")
        table.add_column("Failed", justify="right")

        active_name = active.name if active else None
        for artifact in artifacts:
            is_active = artifact.name == active_name
            table.add_row(
                "[green]*[/green]" if is_active else "",
                f"[bold green]{artifact.name}[/bold green]" if is_active else artifact.name,
                artifact.version_tag,
                str(artifact.build_id),
                artifact.created_at.strftime("%Y-%m-%d %H:%M"),
                str(len(artifact.applied_patch_ids)),
                str(len(artifact.failed_patch_ids)) if artifact.failed_patch_ids else "[dim]0[/dim]",
            )
        if latest:
            table.caption = f"latest upstream release: {latest}"
        return table
