"""AdmissionGate: policy boundary for externally scored candidate changes.

A candidate is auto-admitted only when all three hold:

1. its score meets the threshold (85 by default);
2. its intent is in the stability allow-set (bugfix, security, ...);
3. its diff passes a check-only run of the strategy cascade against a
   reference checkout.

High-scoring candidates with any other intent go to manual review.
Scores and intents are supplied by a collaborator; the gate never
computes them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone

from patchkit.config import DEFAULT_STABILITY_INTENTS
from patchkit.core.audit_log import AuditLog
from patchkit.core.cascade import PatchStrategyCascade
from patchkit.core.diff_source import DiffFetcher
from patchkit.core.errors import ActivationFailure, BuildFailure
from patchkit.core.patch_set import BUILD_FAIL, PatchSetStore
from patchkit.core.patches import DiffPatch
from patchkit.core.working_tree import WorkingTree
from patchkit.models.admission import (
    AdmissionDecision,
    AdmissionSummary,
    AdmissionVerdict,
    ScoredChange,
)
from patchkit.models.notifications import Severity
from patchkit.models.patches import PatchKind, PatchSpec, StrategyName
from patchkit.models.run import PipelineRun
from patchkit.routing.dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


def normalize_intent(intent: str) -> str:
    return (intent or "unknown").strip().lower()


class AdmissionGate:
    """Decides whether a ``ScoredChange`` may join the patch set.

    Parameters
    ----------
    fetcher:
        Downloads candidate diffs for the apply check.
    min_score:
        Inclusive score threshold for automatic admission.
    intents:
        Stability intents eligible for automatic admission.  Matched
        case-insensitively.
    cascade:
        Cascade used in check-only mode.
    """

    def __init__(
        self,
        fetcher: DiffFetcher,
        *,
        min_score: float = 85,
        intents: Iterable[str] = DEFAULT_STABILITY_INTENTS,
        cascade: PatchStrategyCascade | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._min_score = min_score
        self._intents = frozenset(normalize_intent(i) for i in intents)
        self._cascade = cascade or PatchStrategyCascade()

    @property
    def min_score(self) -> float:
        return self._min_score

    def is_stability(self, intent: str) -> bool:
        return normalize_intent(intent) in self._intents

    def spec_for(self, candidate: ScoredChange, *, strategy: StrategyName | None = None) -> PatchSpec:
        """The patch-set entry a candidate becomes once admitted."""
        description = f"{normalize_intent(candidate.intent)}: {candidate.title}".rstrip(": ")
        if strategy is not None and strategy != StrategyName.EXACT:
            description += f" [{strategy.value}]"
        return PatchSpec(
            id=candidate.id,
            kind=PatchKind.DIFF,
            description=description,
            diff_locator=candidate.diff_locator,
            auto_added=True,
            added_on=datetime.now(timezone.utc).date(),
        )

    def policy(
        self, candidate: ScoredChange, *, existing_ids: Iterable[str] = ()
    ) -> AdmissionVerdict | None:
        """Score and intent checks only.  ``None`` means eligible for the apply check."""
        if candidate.id in set(existing_ids):
            return AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.SKIPPED,
                reason="already in the patch set",
            )
        if candidate.score < self._min_score:
            return AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.REJECTED,
                reason=f"score {candidate.score:g} below {self._min_score:g}",
            )
        if not self.is_stability(candidate.intent):
            return AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.MANUAL_REVIEW,
                reason=f"intent {normalize_intent(candidate.intent)!r} is not stability-oriented",
            )
        return None

    def admit(
        self,
        candidate: ScoredChange,
        tree: WorkingTree | None,
        *,
        existing_ids: Iterable[str] = (),
    ) -> AdmissionVerdict:
        """Full gate: policy, then a check-only cascade against *tree*.

        Without a reference tree the apply check cannot pass, so an
        otherwise eligible candidate is rejected.
        """
        verdict = self.policy(candidate, existing_ids=existing_ids)
        if verdict is not None:
            logger.info("Candidate %s: %s (%s)", candidate.id, verdict.decision.value, verdict.reason)
            return verdict
        if tree is None:
            return AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.REJECTED,
                reason="no reference tree for the apply check",
            )

        patch = DiffPatch(self.spec_for(candidate), self._fetcher)
        outcome = self._cascade.apply(patch, tree, check_only=True)
        if not outcome.applied:
            verdict = AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.REJECTED,
                reason=f"apply check failed: {outcome.reason}",
            )
        elif outcome.no_op:
            verdict = AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.SKIPPED,
                reason="already present in the reference tree",
            )
        else:
            verdict = AdmissionVerdict(
                candidate=candidate,
                decision=AdmissionDecision.ADMITTED,
                reason=f"apply check passed via {outcome.strategy_used.value}",
                strategy=outcome.strategy_used,
            )
        logger.info("Candidate %s: %s (%s)", candidate.id, verdict.decision.value, verdict.reason)
        return verdict


# ---------------------------------------------------------------------------
# Nightly cycle
# ---------------------------------------------------------------------------

Rebuild = Callable[[Sequence[str]], object]


class NightlyAdmission:
    """One admission cycle: gate, append, rebuild, and undo on build failure.

    ``rebuild`` receives the auto-added ids and is expected to rebuild and
    activate the current version with monitoring that tracks them.  It
    signals failure by raising; the auto-added entries are then retired
    with the ``BUILD-FAIL`` marker.
    """

    def __init__(
        self,
        gate: AdmissionGate,
        patch_set: PatchSetStore,
        *,
        rebuild: Rebuild,
        audit: AuditLog,
        dispatcher: NotificationDispatcher,
        notify_score: float = 67,
    ) -> None:
        self._gate = gate
        self._patch_set = patch_set
        self._rebuild = rebuild
        self._audit = audit
        self._dispatcher = dispatcher
        self._notify_score = notify_score

    def _announce_notable(self, candidates: Sequence[ScoredChange], run: PipelineRun) -> None:
        notable = sorted(
            (c for c in candidates if c.score >= self._notify_score),
            key=lambda c: c.score,
            reverse=True,
        )
        if not notable:
            return
        lines = []
        for c in notable:
            tag = "STABILITY" if self._gate.is_stability(c.intent) else "FEATURE"
            lines.append(f"[{tag}] #{c.id} ({c.score:g}) {c.title}")
        self._dispatcher.notify(
            f"Nightly scan: {len(notable)} notable candidate(s)",
            "\n".join(lines),
            Severity.INFO,
            run_id=run.run_id,
        )

    def run(
        self,
        candidates: Sequence[ScoredChange],
        tree: WorkingTree | None,
        *,
        run: PipelineRun,
    ) -> AdmissionSummary:
        self._announce_notable(candidates, run)

        existing = self._patch_set.ids()
        verdicts = [
            self._gate.admit(c, tree, existing_ids=existing)
            for c in sorted(candidates, key=lambda c: c.score, reverse=True)
        ]
        for verdict in verdicts:
            self._audit.record(
                run.run_id, "admission",
                phase="gate",
                outcome=verdict.decision.value,
                candidate=verdict.candidate.id,
                score=verdict.candidate.score,
                intent=verdict.candidate.intent,
                reason=verdict.reason,
            )

        deferred = [v for v in verdicts if v.decision == AdmissionDecision.MANUAL_REVIEW]
        if deferred:
            self._dispatcher.notify(
                f"{len(deferred)} candidate(s) need manual review",
                "\n".join(
                    f"#{v.candidate.id} ({v.candidate.score:g}) "
                    f"{normalize_intent(v.candidate.intent)}: {v.candidate.title}"
                    for v in deferred
                ),
                Severity.WARNING,
                run_id=run.run_id,
            )

        admitted = [v for v in verdicts if v.admitted]
        if not admitted:
            return AdmissionSummary(verdicts=verdicts)

        stamp = datetime.now(timezone.utc).date().isoformat()
        added = self._patch_set.append(
            [self._gate.spec_for(v.candidate, strategy=v.strategy) for v in admitted],
            header=f"Auto-added: {stamp} (score >= {self._gate.min_score:g}, apply-check passed)",
        )
        self._audit.record(run.run_id, "admission", phase="append", outcome="ok", added=added)

        try:
            self._rebuild(added)
        except (BuildFailure, ActivationFailure) as exc:
            # A failed restart reverts the pointer but would leave the
            # entries in the patch set for the next build.
            stage = "build" if isinstance(exc, BuildFailure) else "activation"
            retired = self._patch_set.retire(
                added, marker=BUILD_FAIL, reason=f"{stage} failed in run {run.run_id}: {exc}"
            )
            self._audit.record(
                run.run_id, "admission",
                phase="rebuild",
                outcome=f"{stage}-failed",
                retired=retired,
                error=str(exc),
            )
            self._dispatcher.notify(
                f"Auto-add {stage} failed",
                f"{stage.capitalize()} failed after adding {', '.join(added)}; entries retired. "
                "Manual review needed.",
                Severity.CRITICAL,
                run_id=run.run_id,
            )
            return AdmissionSummary(verdicts=verdicts, rebuilt=False, build_failed=True)

        self._audit.record(run.run_id, "admission", phase="rebuild", outcome="ok", added=added)
        self._dispatcher.notify(
            "Auto-add success",
            f"{len(added)} change(s) auto-added and built: {', '.join(added)}",
            Severity.SUCCESS,
            run_id=run.run_id,
        )
        return AdmissionSummary(verdicts=verdicts, rebuilt=True)
