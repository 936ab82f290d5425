"""Patch-set models: entries, strategies, and per-patch outcomes."""

from __future__ import annotations

from collections import Counter
from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, computed_field


class PatchKind(str, Enum):
    """How a patch is applied, or that it is no longer applied at all."""

    PROCEDURAL = "procedural"
    DIFF = "diff"
    RETIRED = "retired"


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PatchOrigin(str, Enum):
    """Upstream patches carry a change number the remote API knows about."""

    UPSTREAM = "upstream"
    LOCAL = "local"


class StrategyName(str, Enum):
    """Application strategies, in cascade order."""

    PROCEDURAL = "procedural"
    EXACT = "exact"
    EXCLUDE_TESTS = "exclude-tests"
    EXCLUDE_TESTS_CHANGELOG = "exclude-tests-changelog"
    THREE_WAY = "three-way"


# Diff strategies tried in order after the procedural check.
DIFF_STRATEGY_ORDER: tuple[StrategyName, ...] = (
    StrategyName.EXACT,
    StrategyName.EXCLUDE_TESTS,
    StrategyName.EXCLUDE_TESTS_CHANGELOG,
    StrategyName.THREE_WAY,
)


class PatchSpec(BaseModel):
    """One entry of the ordered patch set.

    Retirement is a state, not a deletion: a retired entry stays in the
    patch set file behind a marker and parses back as ``RETIRED``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: PatchKind = PatchKind.DIFF
    description: str = ""
    risk_tier: RiskTier = RiskTier.LOW
    touched_files: frozenset[str] = frozenset()
    diff_locator: str = ""  # URL or path; derived from the upstream change when empty
    auto_added: bool = False
    added_on: date | None = None
    retired_reason: str = ""  # marker keyword, e.g. "RETIRED", "ROLLBACK"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def origin(self) -> PatchOrigin:
        return PatchOrigin.UPSTREAM if self.id.isdigit() else PatchOrigin.LOCAL

    @property
    def is_retired(self) -> bool:
        return self.kind == PatchKind.RETIRED


class StrategyOutcome(BaseModel):
    """Result of running the cascade for one patch.  Immutable once built."""

    model_config = ConfigDict(frozen=True)

    patch_id: str
    applied: bool
    strategy_used: StrategyName | None = None
    reason: str = ""
    low_confidence: bool = False  # three-way merges are flagged
    no_op: bool = False  # target state was already present


class CascadeResult(BaseModel):
    """Ordered ledger of outcomes for one cascade run."""

    model_config = ConfigDict(frozen=True)

    outcomes: list[StrategyOutcome] = []

    @property
    def applied_ids(self) -> list[str]:
        return [o.patch_id for o in self.outcomes if o.applied]

    @property
    def failed_ids(self) -> list[str]:
        return [o.patch_id for o in self.outcomes if not o.applied]

    @property
    def low_confidence_ids(self) -> list[str]:
        return [o.patch_id for o in self.outcomes if o.applied and o.low_confidence]

    def outcome_for(self, patch_id: str) -> StrategyOutcome | None:
        for outcome in self.outcomes:
            if outcome.patch_id == patch_id:
                return outcome
        return None

    def strategy_counts(self) -> dict[str, int]:
        """Count applied patches per strategy name."""
        counts = Counter(
            o.strategy_used.value for o in self.outcomes if o.applied and o.strategy_used
        )
        return dict(counts)
