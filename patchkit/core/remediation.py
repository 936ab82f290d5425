"""RollbackExecutor: carries out a ``RollbackDecision``.

patchset-only
    Retire the suspect patches (``ROLLBACK`` marker), rebuild the current
    version from the remaining patch set, activate it, restart.  With no
    suspect patches there is nothing to change: the step is audited as a
    no-op and production is left alone.
full-artifact
    Point ``active`` back at the previous artifact, restart, then retire
    the suspect patches so the next build does not reintroduce them.

Every step is written to the audit log and announced to the operator.
Any failure is wrapped in ``RollbackFailure``, audited, notified at
critical severity, and re-raised: a failed rollback is never silent.
"""

from __future__ import annotations

import logging

from patchkit.core.artifact_store import VersionedArtifactStore
from patchkit.core.audit_log import AuditLog
from patchkit.core.build_sandbox import BuildSandbox
from patchkit.core.errors import RollbackFailure
from patchkit.core.patch_set import ROLLBACK, PatchSetStore
from patchkit.core.service import ServiceController
from patchkit.models.artifacts import Artifact
from patchkit.models.health import RollbackDecision, RollbackScope
from patchkit.models.notifications import Severity
from patchkit.models.run import PipelineRun, RunPhase
from patchkit.routing.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

_ACTION = "rollback"


class RollbackExecutor:
    """Applies rollback decisions against the store and the patch set.

    Parameters
    ----------
    store:
        Artifact store holding the active pointer.
    patch_set:
        Patch set whose suspect entries get retired.
    sandbox:
        Used to rebuild the current version for patchset-only rollbacks.
    audit, dispatcher:
        Every step is recorded in *audit* and announced via *dispatcher*.
    service:
        Restarted after every pointer change.
    """

    def __init__(
        self,
        store: VersionedArtifactStore,
        patch_set: PatchSetStore,
        sandbox: BuildSandbox,
        *,
        audit: AuditLog,
        dispatcher: NotificationDispatcher,
        service: ServiceController,
    ) -> None:
        self._store = store
        self._patch_set = patch_set
        self._sandbox = sandbox
        self._audit = audit
        self._dispatcher = dispatcher
        self._service = service

    def execute(self, decision: RollbackDecision, run: PipelineRun) -> Artifact | None:
        """Carry out *decision*; returns the artifact left active.

        Raises
        ------
        RollbackFailure
            When any step fails.  The failure has already been audited
            and escalated when it propagates.
        """
        if not decision.requires_action:
            return None

        run.enter(RunPhase.REMEDIATE)
        run.decision = decision
        if decision.scope == RollbackScope.PATCHSET_ONLY and not decision.patches_to_disable:
            return self._nothing_to_disable(decision, run)
        self._audit.record(
            run.run_id, _ACTION,
            phase="start",
            outcome=decision.scope.value,
            state=decision.state.value,
            crash_count=decision.crash_count,
            patches=decision.patches_to_disable,
            target=decision.target_artifact,
        )
        try:
            if decision.scope == RollbackScope.PATCHSET_ONLY:
                artifact = self._patchset_only(decision, run)
            else:
                artifact = self._full_artifact(decision, run)
        except Exception as exc:
            failure = exc if isinstance(exc, RollbackFailure) else RollbackFailure(
                f"{decision.scope.value} rollback failed: {exc}"
            )
            run.fail(failure)
            self._audit.record(
                run.run_id, _ACTION,
                phase="failed",
                outcome="error",
                scope=decision.scope.value,
                error=str(exc),
            )
            self._dispatcher.notify(
                "Rollback FAILED, manual intervention required",
                f"{decision.scope.value} rollback after {decision.state.value} "
                f"({decision.crash_count} crash(es)) failed: {exc}",
                Severity.CRITICAL,
                run_id=run.run_id,
            )
            logger.error("Rollback failed: %s", exc)
            if failure is exc:
                raise
            raise failure from exc

        self._audit.record(
            run.run_id, _ACTION,
            phase="done",
            outcome="ok",
            scope=decision.scope.value,
            active=artifact.name,
        )
        return artifact

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    def _retire(self, decision: RollbackDecision, run: PipelineRun) -> list[str]:
        reason = f"{decision.state.value}, {decision.crash_count} crash(es) in run {run.run_id}"
        retired = self._patch_set.retire(
            decision.patches_to_disable, marker=ROLLBACK, reason=reason
        )
        self._audit.record(
            run.run_id, _ACTION, phase="retire", outcome="ok", retired=retired
        )
        if retired:
            self._dispatcher.notify(
                "Patches disabled",
                f"Retired after {decision.state.value}: {', '.join(retired)}",
                Severity.WARNING,
                run_id=run.run_id,
            )
        return retired

    def _restart(self, run: PipelineRun, artifact: Artifact) -> None:
        self._service.restart()
        self._audit.record(
            run.run_id, _ACTION, phase="restart", outcome="ok", active=artifact.name
        )

    def _current_tag(self, run: PipelineRun) -> str:
        if run.target_tag:
            return run.target_tag
        active = self._store.active()
        if active is None:
            raise RollbackFailure("No active artifact and no target version to rebuild")
        return active.version_tag

    def _nothing_to_disable(self, decision: RollbackDecision, run: PipelineRun) -> Artifact | None:
        # A rebuild without changes would only restart the same patch set.
        active = self._store.active()
        self._audit.record(
            run.run_id, _ACTION,
            phase="skip",
            outcome="no-op",
            scope=decision.scope.value,
            state=decision.state.value,
            crash_count=decision.crash_count,
            active=active.name if active else None,
        )
        self._dispatcher.notify(
            "No patches to roll back",
            f"{decision.state.value.upper()} after {decision.crash_count} crash(es), but no "
            "recently added patch is known; the active artifact was left in place.",
            Severity.WARNING,
            run_id=run.run_id,
        )
        logger.warning("Patch-set rollback skipped: no patches to disable")
        return active

    def _patchset_only(self, decision: RollbackDecision, run: PipelineRun) -> Artifact:
        self._retire(decision, run)
        tag = self._current_tag(run)
        logger.info("Rebuilding %s without the disabled patches", tag)
        result = self._sandbox.build(tag, self._patch_set.active())
        artifact = self._store.activate(result.artifact)
        self._audit.record(
            run.run_id, _ACTION,
            phase="rebuild",
            outcome="ok",
            artifact=artifact.name,
            applied=result.applied_ids,
            failed=result.failed_ids,
        )
        self._restart(run, artifact)
        self._dispatcher.notify(
            "Patch-set rollback complete",
            f"Rebuilt {tag} as {artifact.name} without "
            f"{', '.join(decision.patches_to_disable) or 'any patch changes'}",
            Severity.WARNING,
            run_id=run.run_id,
        )
        return artifact

    def _full_artifact(self, decision: RollbackDecision, run: PipelineRun) -> Artifact:
        artifact = self._store.rollback(decision.target_artifact)
        self._audit.record(
            run.run_id, _ACTION, phase="swap", outcome="ok", active=artifact.name
        )
        self._restart(run, artifact)
        self._retire(decision, run)
        self._dispatcher.notify(
            "Full rollback complete",
            f"CRITICAL after {decision.crash_count} crash(es); "
            f"reverted to {artifact.name}",
            Severity.CRITICAL,
            run_id=run.run_id,
        )
        return artifact
