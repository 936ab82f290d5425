"""UpgradePipeline: wires every component into the operator-facing runs.

upgrade
    classify -> checkout -> cascade -> build -> verify -> publish
    -> activate -> restart -> monitor -> (remediate)
analyze
    classify -> check-only cascade on a fresh checkout; nothing is written
    outside the temp dir except the run report
rollback
    point ``active`` back at an earlier artifact and restart
ensure-patched
    upgrade only when the installed version differs from the marker
admit
    nightly admission cycle followed by a merged-upstream sweep

Each invocation is a ``PipelineRun``.  Its frozen ``RunReport`` is written
to ``last-run.json`` and the audit log whatever the outcome.  Runs that
mutate the patch set or the active pointer hold the ``PipelineLock``.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx

from patchkit.config import PatchkitSettings
from patchkit.core.admission_gate import AdmissionGate, NightlyAdmission
from patchkit.core.artifact_store import VersionedArtifactStore
from patchkit.core.audit_log import AuditLog
from patchkit.core.build_sandbox import BuildSandbox
from patchkit.core.cascade import PatchStrategyCascade
from patchkit.core.conflict_classifier import ConflictClassifier, GitTreeDiffer, retire_merged
from patchkit.core.diff_source import DiffFetcher
from patchkit.core.errors import (
    ActivationFailure,
    BuildFailure,
    ConfigError,
    HealthCheckFailure,
    PatchkitError,
    RollbackFailure,
)
from patchkit.core.health_supervisor import (
    CommandProbe,
    EndpointProbe,
    HealthSupervisor,
    HttpEndpointProbe,
    MonitorTask,
    PidFileProbe,
    ProcessProbe,
    Ticker,
    spawn_monitor_process,
)
from patchkit.core.patch_set import PatchSetStore
from patchkit.core.patches import build_patch
from patchkit.core.procedures import ProcedureRegistry
from patchkit.core.remediation import RollbackExecutor
from patchkit.core.run_lock import PipelineLock
from patchkit.core.service import ServiceController, ServiceControlError, controller_for
from patchkit.core.upstream import UpstreamClient
from patchkit.core.version_marker import VersionMarker, read_installed_version
from patchkit.core.working_tree import GitError, WorkingTree
from patchkit.models.admission import AdmissionSummary, ScoredChange
from patchkit.models.artifacts import Artifact
from patchkit.models.conflicts import ConflictReport, VersionDelta
from patchkit.models.health import HealthReport, HealthState, RollbackScope
from patchkit.models.notifications import Severity
from patchkit.models.run import PipelineRun, RunKind, RunPhase, RunReport
from patchkit.monitor.projection import StatusProjection, StatusSnapshot
from patchkit.routing.dispatcher import NotificationDispatcher
from patchkit.routing.sinks.discord import DiscordWebhookSink
from patchkit.routing.sinks.local_file import LocalFileSink

logger = logging.getLogger(__name__)

Checkout = Callable[[str, Path], WorkingTree]

# Detached monitors wait this long for a foreground run to release the lock.
_REMEDIATION_LOCK_WAIT = 600.0


def _replace_file(path: Path, text: str) -> None:
    """Write *text* to *path* via a unique sibling temp file.

    A background monitor and the foreground run may both finish at once.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def default_dispatcher(cfg: PatchkitSettings) -> NotificationDispatcher:
    """Local JSON files always; the webhook when one is configured."""
    dispatcher = NotificationDispatcher()
    dispatcher.register_sink(LocalFileSink(cfg.notifications_dir))
    if cfg.webhook_url:
        dispatcher.register_sink(DiscordWebhookSink(cfg.webhook_url))
    return dispatcher


def default_process_probe(cfg: PatchkitSettings) -> ProcessProbe:
    if cfg.pid_file is not None:
        return PidFileProbe(cfg.pid_file)
    if cfg.process_name:
        return CommandProbe(["pgrep", "-x", cfg.process_name])
    raise ConfigError(
        "Health monitoring needs PATCHKIT_PID_FILE or PATCHKIT_PROCESS_NAME"
    )


class UpgradePipeline:
    """Central coordinator for patchkit runs.

    Every collaborator with an outside effect can be injected; anything
    left out is built from *cfg*.

    Parameters
    ----------
    cfg:
        Settings.  A fresh ``PatchkitSettings()`` when omitted.
    upstream:
        Remote API client.  Built from ``upstream_repo`` when omitted;
        classification is skipped when neither is available.
    checkout:
        ``(tag, dest) -> WorkingTree``.  Defaults to a shallow clone.
    process_probe, endpoint_probe:
        Health probes.  Built from ``pid_file`` / ``process_name`` and
        ``health_endpoint`` on first use.
    service:
        Restarted after every pointer change.
    dispatcher:
        Notification fan-out.
    """

    def __init__(
        self,
        cfg: PatchkitSettings | None = None,
        *,
        upstream: UpstreamClient | None = None,
        tree_differ: Callable[[str, str], frozenset[str]] | None = None,
        checkout: Checkout | None = None,
        process_probe: ProcessProbe | None = None,
        endpoint_probe: EndpointProbe | None = None,
        service: ServiceController | None = None,
        dispatcher: NotificationDispatcher | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.cfg = cfg or PatchkitSettings()
        self.cfg.state_dir.mkdir(parents=True, exist_ok=True)

        self.audit = AuditLog(self.cfg.audit_db_path)
        self.store = VersionedArtifactStore(self.cfg.artifact_root)
        self.procedures = ProcedureRegistry(self.cfg.procedures_dir)
        self.patch_set = PatchSetStore(
            self.cfg.patch_conf,
            is_procedural=self.procedures.has,
            retired_log=self.cfg.retired_log,
        )
        self.fetcher = DiffFetcher(
            self.cfg.diff_cache_dir,
            upstream_repo=self.cfg.upstream_repo,
            client=http_client,
            retry_attempts=self.cfg.retry_attempts,
            retry_base_delay=self.cfg.retry_base_delay,
        )
        self.cascade = PatchStrategyCascade()
        self.marker = VersionMarker(self.cfg.version_marker_path)
        self.lock = PipelineLock(self.cfg.lock_path)
        self.service = service or controller_for(self.cfg.restart_command)
        self.dispatcher = dispatcher or default_dispatcher(self.cfg)

        self._upstream = upstream
        self._owns_upstream = upstream is None
        self._tree_differ = tree_differ
        self._checkout = checkout or self._clone
        self._process_probe = process_probe
        self._endpoint_probe = endpoint_probe
        self._http_client = http_client
        self._supervisor: HealthSupervisor | None = None

        self.sandbox = BuildSandbox(
            self._checkout,
            self.store,
            procedures=self.procedures,
            fetcher=self.fetcher,
            cascade=self.cascade,
            install_command=self.cfg.install_command,
            build_command=self.cfg.build_command,
            entry_artifact=self.cfg.entry_artifact,
            output_dir=self.cfg.output_dir,
            timeout=self.cfg.build_timeout_seconds,
        )
        self.remediation = RollbackExecutor(
            self.store,
            self.patch_set,
            self.sandbox,
            audit=self.audit,
            dispatcher=self.dispatcher,
            service=self.service,
        )
        self.monitor_task: MonitorTask | None = None

    # ------------------------------------------------------------------
    # Lazily built collaborators
    # ------------------------------------------------------------------

    @property
    def upstream(self) -> UpstreamClient | None:
        if self._upstream is None and self.cfg.upstream_repo:
            self._upstream = UpstreamClient(
                self.cfg.upstream_repo,
                api_url=self.cfg.github_api_url,
                token=self.cfg.github_token,
                compare_file_cap=self.cfg.compare_file_cap,
                retry_attempts=self.cfg.retry_attempts,
                retry_base_delay=self.cfg.retry_base_delay,
                client=self._http_client,
            )
        return self._upstream

    @property
    def classifier(self) -> ConflictClassifier | None:
        upstream = self.upstream
        if upstream is None:
            return None
        differ = self._tree_differ
        if differ is None and self.cfg.clone_url:
            differ = GitTreeDiffer(self.cfg.clone_url)
        return ConflictClassifier(upstream, differ)

    @property
    def supervisor(self) -> HealthSupervisor:
        if self._supervisor is None:
            probe = self._process_probe or default_process_probe(self.cfg)
            endpoint = self._endpoint_probe
            if endpoint is None and self.cfg.health_endpoint:
                endpoint = HttpEndpointProbe(self.cfg.health_endpoint, client=self._http_client)
            self._supervisor = HealthSupervisor(
                probe,
                endpoint,
                interval=self.cfg.health_interval_seconds,
                window=self.cfg.health_window_seconds,
                grace=self.cfg.health_grace_seconds,
                critical_threshold=self.cfg.critical_threshold,
                restart_grace=self.cfg.restart_grace_seconds,
            )
        return self._supervisor

    def _clone(self, tag: str, dest: Path) -> WorkingTree:
        if not self.cfg.clone_url:
            raise ConfigError("Set PATCHKIT_UPSTREAM_REPO or PATCHKIT_UPSTREAM_CLONE_URL")
        return WorkingTree.clone(self.cfg.clone_url, tag, dest, depth=self.cfg.clone_depth)

    def close(self) -> None:
        self.fetcher.close()
        if self._owns_upstream and self._upstream is not None:
            self._upstream.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_version(self) -> str | None:
        """Last fully patched version, else the active artifact's version."""
        recorded = self.marker.recorded()
        if recorded:
            return recorded
        active = self.store.active()
        return active.version_tag if active else None

    def tag_for(self, version: str) -> str:
        prefix = self.cfg.tag_prefix
        return version if not prefix or version.startswith(prefix) else prefix + version

    def list_versions(self) -> list[Artifact]:
        """Published artifacts (rollback targets), newest first."""
        return self.store.list_artifacts()

    def latest_release(self) -> str | None:
        upstream = self.upstream
        return upstream.latest_release() if upstream is not None else None

    def status(self) -> StatusSnapshot:
        return StatusProjection(
            self.store,
            self.audit,
            self.patch_set,
            self.marker,
            last_run_path=self.cfg.last_run_path,
        ).snapshot()

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def _start(self, run: PipelineRun) -> None:
        self.audit.record(
            run.run_id, run.kind.value,
            phase="start",
            outcome="running",
            target=run.target_tag,
            from_version=run.from_version,
        )
        logger.info("Run %s (%s) started", run.run_id, run.kind.value)

    def _record_failure(self, run: PipelineRun, exc: BaseException) -> None:
        if isinstance(exc, BuildFailure) and run.cascade is None and exc.cascade is not None:
            run.cascade = exc.cascade
        run.fail(exc)
        self.audit.record(
            run.run_id, run.kind.value,
            phase=run.phase.value,
            outcome="error",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        previous = run.previous_artifact or "none"
        self.dispatcher.notify(
            f"{run.kind.value.capitalize()} failed during {run.phase.value}",
            f"{exc}\nTarget: {run.target_tag or '-'}; previous good artifact: {previous}",
            Severity.CRITICAL,
            run_id=run.run_id,
        )
        logger.error("Run %s failed during %s: %s", run.run_id, run.phase.value, exc)

    def _finish(self, run: PipelineRun) -> RunReport:
        run.enter(RunPhase.DONE)
        report = run.to_report()
        self._write_report(report)
        self.audit.record(
            run.run_id, run.kind.value,
            phase="finish",
            outcome="ok" if report.ok else "failed",
            phase_failed=report.phase_failed,
            health=report.health.value if report.health else None,
            applied=report.applied,
            failed=report.failed,
            artifact=report.artifact,
        )
        logger.info(
            "Run %s finished %s in %.1fs",
            run.run_id, "ok" if report.ok else "FAILED", report.duration_seconds,
        )
        return report

    def _write_report(self, report: RunReport) -> None:
        _replace_file(self.cfg.last_run_path, report.model_dump_json(indent=2))

    def _execute(self, run: PipelineRun, body: Callable[[], object]) -> RunReport:
        self._start(run)
        try:
            body()
        except RollbackFailure as exc:
            # Already audited and escalated by the executor.
            if run.failed_phase is None:
                self._record_failure(run, exc)
        except PatchkitError as exc:
            self._record_failure(run, exc)
        except Exception as exc:
            self._record_failure(run, exc)
            self._finish(run)
            raise
        return self._finish(run)

    # ------------------------------------------------------------------
    # Stable snapshot
    # ------------------------------------------------------------------

    def _stable_ids(self) -> set[str] | None:
        path = self.cfg.stable_snapshot_path
        if not path.is_file():
            return None
        return set(json.loads(path.read_text(encoding="utf-8")))

    def _record_stable(self, ids: Sequence[str]) -> None:
        _replace_file(self.cfg.stable_snapshot_path, json.dumps(sorted(ids)))

    def recent_patch_ids(self, auto_added: Sequence[str] | None = None) -> list[str]:
        """Patches suspected after an unhealthy window.

        Explicit auto-added ids win.  Otherwise: patches in the active
        artifact that were not in the last build known to be STABLE.
        """
        if auto_added:
            return list(auto_added)
        stable = self._stable_ids()
        if stable is None:
            return []
        active = self.store.active()
        applied = active.applied_patch_ids if active else [s.id for s in self.patch_set.active()]
        return [pid for pid in applied if pid not in stable]

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _classify(self, run: PipelineRun) -> ConflictReport | None:
        run.enter(RunPhase.CLASSIFY)
        specs = self.patch_set.load()
        run.patches = specs
        classifier = self.classifier
        if classifier is None or not run.from_version or run.from_version == run.target_tag:
            logger.info("Skipping conflict classification")
            return None
        try:
            report = classifier.classify(run.from_version, run.target_tag, specs)
        except (PatchkitError, GitError) as exc:
            logger.warning("Conflict classification unavailable: %s", exc)
            self.audit.record(
                run.run_id, "classify", phase="classify", outcome="skipped", error=str(exc)
            )
            return None
        run.conflicts = report
        self.audit.record(
            run.run_id, "classify",
            phase="classify",
            outcome="ok",
            source=report.delta.source.value,
            delta_files=len(report.delta.files),
            clean=report.clean,
            conflicting=report.conflicting,
            retired=report.retired,
        )
        return report

    def _deploy(
        self,
        run: PipelineRun,
        *,
        monitor: bool = True,
        background: bool = False,
        auto_added: Sequence[str] | None = None,
        ticker: Ticker | None = None,
    ) -> None:
        """Build, activate, restart, prune, then monitor (lock already held)."""
        previous = self.store.active()
        run.previous_artifact = previous.name if previous else None

        result = self.sandbox.build(run.target_tag, self.patch_set.active(), run=run)
        self.audit.record(
            run.run_id, "build",
            phase="publish",
            outcome="ok",
            artifact=result.artifact.name,
            applied=result.applied_ids,
            failed=result.failed_ids,
            low_confidence=result.cascade.low_confidence_ids,
            strategies=result.cascade.strategy_counts(),
            duration_seconds=round(result.duration_seconds, 3),
        )

        run.enter(RunPhase.ACTIVATE)
        artifact = self.store.activate(result.artifact)
        try:
            self.service.restart()
        except ServiceControlError as exc:
            if previous is not None:
                self.store.activate(previous)
            raise ActivationFailure(
                f"Service restart failed; active reverted to {run.previous_artifact}: {exc}"
            ) from exc
        self.audit.record(
            run.run_id, "activate",
            phase="activate",
            outcome="ok",
            active=artifact.name,
            previous=run.previous_artifact,
        )
        removed = self.store.prune(keep=self.cfg.retention)
        if removed:
            self.audit.record(run.run_id, "prune", phase="activate", outcome="ok", removed=removed)

        failed = result.failed_ids
        self.dispatcher.notify(
            f"{run.target_tag} patched and active",
            f"{artifact.name}: {len(result.applied_ids)} applied, {len(failed)} failed"
            + (f" ({', '.join(failed)})" if failed else ""),
            Severity.WARNING if failed else Severity.SUCCESS,
            run_id=run.run_id,
        )

        if not monitor:
            self.marker.record(run.target_tag)
            return
        if background:
            ids = list(auto_added or [])
            self.monitor_task = MonitorTask(
                lambda t: self.monitor(auto_added=ids, ticker=t)
            ).start()
            logger.info("Health monitoring continues in the background")
            return
        self._supervise(run, auto_added=auto_added, ticker=ticker)

    def _supervise(
        self,
        run: PipelineRun,
        *,
        auto_added: Sequence[str] | None = None,
        ticker: Ticker | None = None,
        lock_remediation: bool = False,
    ) -> HealthReport:
        run.enter(RunPhase.HEALTH)
        report = self.supervisor.monitor(ticker)
        run.health = report
        self.audit.record(
            run.run_id, "health",
            phase="monitor",
            outcome=report.state.value,
            crash_count=report.crash_count,
            samples=len(report.observations),
            stopped_early=report.stopped_early,
            cancelled=report.cancelled,
        )
        if report.cancelled:
            logger.warning("Monitoring cancelled after %d sample(s)", len(report.observations))
            return report

        if report.state == HealthState.STABLE:
            active = self.store.active()
            self._record_stable(active.applied_patch_ids if active else [])
            if run.target_tag:
                self.marker.record(run.target_tag)
            self.dispatcher.notify(
                "Health check passed",
                f"{run.target_tag or 'active artifact'} stable over "
                f"{len(report.observations)} sample(s)",
                Severity.SUCCESS,
                run_id=run.run_id,
            )
            return report

        run.fail(HealthCheckFailure(report.state.value, report.crash_count))
        decision = self.supervisor.decide(
            report.state,
            crash_count=report.crash_count,
            recent_patch_ids=self.recent_patch_ids(auto_added),
            previous_artifact=run.previous_artifact,
        )
        self.dispatcher.notify(
            f"Health check {report.state.value.upper()}",
            f"{report.crash_count} crash(es); starting {decision.scope.value} rollback",
            Severity.CRITICAL if report.state == HealthState.CRITICAL else Severity.WARNING,
            run_id=run.run_id,
        )
        if lock_remediation:
            lock = PipelineLock(self.cfg.lock_path)
            lock.acquire(wait=_REMEDIATION_LOCK_WAIT)
            try:
                restored = self.remediation.execute(decision, run)
            finally:
                lock.release()
        else:
            restored = self.remediation.execute(decision, run)
        if decision.scope == RollbackScope.FULL_ARTIFACT and restored is not None:
            # Unmonitored and detached deploys record the marker before any
            # verdict; it must name the version that is actually running.
            self.marker.record(restored.version_tag)
        return report

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def analyze(self, target_tag: str) -> RunReport:
        """Classify and dry-run the cascade for *target_tag*.  No side effects."""
        run = PipelineRun(
            kind=RunKind.ANALYZE,
            target_tag=target_tag,
            from_version=self.current_version() or "",
        )
        active = self.store.active()
        run.previous_artifact = active.name if active else None

        def body() -> None:
            self._classify(run)
            run.enter(RunPhase.CHECKOUT)
            tmp = Path(tempfile.mkdtemp(prefix="patchkit-analyze-"))
            try:
                try:
                    tree = self._checkout(target_tag, tmp / "src")
                except (GitError, OSError) as exc:
                    raise BuildFailure("checkout", str(exc)) from exc
                run.enter(RunPhase.CASCADE)
                bound = [
                    build_patch(spec, self.procedures, self.fetcher)
                    for spec in self.patch_set.active()
                ]
                run.cascade = self.cascade.apply_all(bound, tree, check_only=True)
            finally:
                shutil.rmtree(tmp, ignore_errors=True)

        return self._execute(run, body)

    def upgrade(
        self,
        target_tag: str,
        *,
        monitor: bool = True,
        background: bool = False,
        ticker: Ticker | None = None,
        kind: RunKind = RunKind.UPGRADE,
    ) -> RunReport:
        """Full upgrade to *target_tag*.

        Raises
        ------
        PipelineBusyError
            When another run holds the lock.  Every other failure is
            recorded in the returned report.
        """
        run = PipelineRun(
            kind=kind,
            target_tag=target_tag,
            from_version=self.current_version() or "",
        )

        def body() -> None:
            report = self._classify(run)
            if report is not None and self.cfg.retire_merged and report.retired:
                retired = retire_merged(self.patch_set, report)
                self.audit.record(
                    run.run_id, "classify", phase="retire", outcome="ok", retired=retired
                )
            self._deploy(run, monitor=monitor, background=background, ticker=ticker)

        with self.lock:
            return self._execute(run, body)

    def rollback(self, to: str | None = None) -> RunReport:
        """Point ``active`` at *to*, or at the newest other artifact."""
        run = PipelineRun(kind=RunKind.ROLLBACK)

        def body() -> None:
            run.enter(RunPhase.ACTIVATE)
            current = self.store.active()
            run.previous_artifact = current.name if current else None
            try:
                artifact = self.store.rollback(to)
                self.service.restart()
            except PatchkitError as exc:
                failure = exc if isinstance(exc, RollbackFailure) else RollbackFailure(str(exc))
                self._record_failure(run, failure)
                raise failure from exc
            run.artifact = artifact
            run.target_tag = artifact.version_tag
            self.audit.record(
                run.run_id, "rollback",
                phase="swap",
                outcome="ok",
                active=artifact.name,
                previous=run.previous_artifact,
            )
            self.dispatcher.notify(
                "Rolled back",
                f"Active artifact is now {artifact.name} (was {run.previous_artifact or 'none'})",
                Severity.WARNING,
                run_id=run.run_id,
            )

        with self.lock:
            return self._execute(run, body)

    def ensure_patched(
        self, version: str | None = None, *, monitor: bool = True
    ) -> RunReport | None:
        """Upgrade only when the installed version has not been patched yet.

        Returns ``None`` when the version marker already matches.
        """
        installed = version
        if installed is None and self.cfg.installed_version_file is not None:
            installed = read_installed_version(self.cfg.installed_version_file)
        if not installed:
            raise ConfigError(
                "Cannot determine the installed version; pass one or set "
                "PATCHKIT_INSTALLED_VERSION_FILE"
            )
        tag = self.tag_for(installed)
        if self.marker.is_current(tag):
            logger.info("%s already patched, nothing to do", tag)
            return None
        logger.info("Installed %s differs from marker %r", tag, self.marker.recorded())
        return self.upgrade(tag, monitor=monitor, kind=RunKind.ENSURE_PATCHED)

    def monitor(
        self,
        *,
        auto_added: Sequence[str] | None = None,
        ticker: Ticker | None = None,
    ) -> RunReport:
        """Monitor the active artifact and remediate if needed.

        Used by detached monitors: the lock is taken only for remediation.
        """
        active = self.store.active()
        run = PipelineRun(kind=RunKind.MONITOR, target_tag=active.version_tag if active else "")
        run.artifact = active
        previous = self.store.previous()
        run.previous_artifact = previous.name if previous else None
        return self._execute(
            run,
            lambda: self._supervise(
                run, auto_added=auto_added, ticker=ticker, lock_remediation=True
            ),
        )

    def spawn_detached_monitor(self, auto_added: Sequence[str] = ()) -> int:
        """Start ``patchkit monitor`` as its own session; returns the pid."""
        argv = [sys.executable, "-m", "patchkit.cli.app", "monitor"]
        if auto_added:
            argv += ["--auto-added", ",".join(auto_added)]
        return spawn_monitor_process(argv, self.cfg.monitor_log_path)

    def admit(
        self,
        candidates: Sequence[ScoredChange],
        *,
        monitor: bool = True,
    ) -> tuple[RunReport, AdmissionSummary]:
        """Nightly admission against the current version, then a merge sweep."""
        current = self.current_version() or ""
        run = PipelineRun(kind=RunKind.ADMISSION, target_tag=current, from_version=current)
        summary = AdmissionSummary()

        gate = AdmissionGate(
            self.fetcher,
            min_score=self.cfg.admission_min_score,
            intents=self.cfg.stability_intents,
            cascade=self.cascade,
        )

        def rebuild(added: Sequence[str]) -> None:
            if not current:
                raise BuildFailure("checkout", "no current version to rebuild")
            self._deploy(run, monitor=monitor, auto_added=added)

        nightly = NightlyAdmission(
            gate,
            self.patch_set,
            rebuild=rebuild,
            audit=self.audit,
            dispatcher=self.dispatcher,
            notify_score=self.cfg.admission_notify_score,
        )

        def body() -> None:
            nonlocal summary
            tmp = Path(tempfile.mkdtemp(prefix="patchkit-admit-"))
            try:
                tree = None
                if current:
                    try:
                        tree = self._checkout(current, tmp / "ref")
                    except (GitError, OSError, ConfigError) as exc:
                        logger.warning("No reference checkout for the apply check: %s", exc)
                summary = nightly.run(candidates, tree, run=run)
            finally:
                shutil.rmtree(tmp, ignore_errors=True)
            self._sweep_merged(run, current)

        with self.lock:
            report = self._execute(run, body)
        return report, summary

    def _sweep_merged(self, run: PipelineRun, version: str) -> list[str]:
        classifier = self.classifier
        if classifier is None:
            return []
        empty = VersionDelta(old_tag=version, new_tag=version, files=frozenset())
        report = classifier.classify_against(empty, self.patch_set.active())
        retired = retire_merged(self.patch_set, report)
        if retired:
            self.audit.record(run.run_id, "admission", phase="sweep", outcome="ok", retired=retired)
            self.dispatcher.notify(
                "Patches merged upstream",
                f"Retired: {', '.join(retired)}",
                Severity.INFO,
                run_id=run.run_id,
            )
        return retired
