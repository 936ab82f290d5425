"""PatchStrategyCascade: applies one patch at a time, best strategy first.

For each patch:

1. If the tree already has the patch's effect, record a no-op success.
2. Otherwise walk the patch's strategies in order.  A strategy is only
   executed after its dry run passed; if the real apply still fails, the
   tree is reset to the last checkpoint before the next one is tried.
3. The first strategy that applies wins and the tree is checkpointed.
   If none does, the patch is recorded failed and the cascade moves on.

A single patch failing never aborts the cascade.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from patchkit.core.diff_source import DiffFetchError
from patchkit.core.errors import TransientFetchError
from patchkit.core.patches import Patch
from patchkit.core.procedures import ProcedureError
from patchkit.core.working_tree import GitError, WorkingTree
from patchkit.models.patches import CascadeResult, StrategyName, StrategyOutcome

logger = logging.getLogger(__name__)

_APPLY_ERRORS = (GitError, ProcedureError, OSError)
_FETCH_ERRORS = (DiffFetchError, TransientFetchError)


class PatchStrategyCascade:
    """Runs the strategy cascade over an ordered list of patches."""

    # ------------------------------------------------------------------
    # Single patch
    # ------------------------------------------------------------------

    def apply(self, patch: Patch, tree: WorkingTree, *, check_only: bool = False) -> StrategyOutcome:
        """Apply *patch* to *tree* and return its immutable outcome.

        With ``check_only`` nothing is written: the outcome reports the
        first strategy whose dry run passes.
        """
        try:
            present = patch.present_via(tree)
            if present is not None:
                logger.info("Patch %s already present (%s), skipping", patch.id, present.value)
                return StrategyOutcome(
                    patch_id=patch.id,
                    applied=True,
                    strategy_used=present,
                    reason="target state already present",
                    no_op=True,
                )
        except _FETCH_ERRORS as exc:
            logger.error("Patch %s: fetch failed: %s", patch.id, exc)
            return StrategyOutcome(
                patch_id=patch.id, applied=False, reason=f"all strategies failed: fetch: {exc}"
            )
        except _APPLY_ERRORS as exc:
            logger.warning("Patch %s: presence check failed: %s", patch.id, exc)

        errors: list[str] = []
        for strategy in patch.strategies:
            try:
                if not patch.check(tree, strategy):
                    errors.append(f"{strategy.value}: check failed")
                    continue
            except _FETCH_ERRORS as exc:
                logger.error("Patch %s: fetch failed: %s", patch.id, exc)
                return StrategyOutcome(
                    patch_id=patch.id, applied=False, reason=f"all strategies failed: fetch: {exc}"
                )
            except _APPLY_ERRORS as exc:
                errors.append(f"{strategy.value}: {exc}")
                continue

            if check_only:
                return self._success(patch, strategy, changed=True, reason="dry run passed")

            try:
                changed = patch.apply(tree, strategy)
                tree.checkpoint(f"patchkit: {patch.id} via {strategy.value}")
            except _APPLY_ERRORS as exc:
                logger.warning(
                    "Patch %s: %s passed its check but failed to apply: %s",
                    patch.id, strategy.value, exc,
                )
                errors.append(f"{strategy.value}: {exc}")
                tree.discard()
                continue
            return self._success(patch, strategy, changed=changed)

        logger.warning("Patch %s: all strategies failed", patch.id)
        return StrategyOutcome(
            patch_id=patch.id,
            applied=False,
            reason="all strategies failed: " + "; ".join(errors),
        )

    @staticmethod
    def _success(
        patch: Patch, strategy: StrategyName, *, changed: bool, reason: str = ""
    ) -> StrategyOutcome:
        low_confidence = strategy == StrategyName.THREE_WAY
        if low_confidence:
            logger.warning("Patch %s applied via three-way merge (low confidence)", patch.id)
        else:
            logger.info("Patch %s applied via %s", patch.id, strategy.value)
        return StrategyOutcome(
            patch_id=patch.id,
            applied=True,
            strategy_used=strategy,
            reason=reason,
            low_confidence=low_confidence,
            no_op=not changed,
        )

    # ------------------------------------------------------------------
    # Whole patch set
    # ------------------------------------------------------------------

    def apply_all(
        self, patches: Iterable[Patch], tree: WorkingTree, *, check_only: bool = False
    ) -> CascadeResult:
        """Apply every non-retired patch in order and collect the ledger."""
        outcomes: list[StrategyOutcome] = []
        for patch in patches:
            if patch.spec.is_retired:
                logger.debug("Skipping retired patch %s", patch.id)
                continue
            outcomes.append(self.apply(patch, tree, check_only=check_only))

        result = CascadeResult(outcomes=outcomes)
        logger.info(
            "Cascade finished: %d applied, %d failed %s",
            len(result.applied_ids),
            len(result.failed_ids),
            result.strategy_counts(),
        )
        return result
