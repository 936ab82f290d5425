"""Polymorphic patch interface.

The cascade only talks to ``Patch``; each variant decides which
strategies it offers and what "check" and "apply" mean for it.  New
patch kinds are added by subclassing, not by branching in the cascade.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from patchkit.core.diff_source import DiffFetcher
from patchkit.core.procedures import ProcedureError, ProcedureRegistry, RepairProcedure
from patchkit.core.working_tree import WorkingTree
from patchkit.models.patches import DIFF_STRATEGY_ORDER, PatchKind, PatchSpec, StrategyName

logger = logging.getLogger(__name__)


TEST_EXCLUDES: tuple[str, ...] = (
    "*.test.*",
    "*.spec.*",
    "*.e2e.*",
    "test/*",
    "*/test/*",
    "tests/*",
    "*/tests/*",
    "__tests__/*",
    "*/__tests__/*",
)

CHANGELOG_EXCLUDES: tuple[str, ...] = (
    "CHANGELOG*",
    "*/CHANGELOG*",
    "*.live.*",
)

STRATEGY_EXCLUDES: dict[StrategyName, tuple[str, ...]] = {
    StrategyName.EXACT: (),
    StrategyName.EXCLUDE_TESTS: TEST_EXCLUDES,
    StrategyName.EXCLUDE_TESTS_CHANGELOG: TEST_EXCLUDES + CHANGELOG_EXCLUDES,
    StrategyName.THREE_WAY: (),
}


class Patch(ABC):
    """A patch-set entry bound to the machinery that applies it."""

    def __init__(self, spec: PatchSpec) -> None:
        self.spec = spec

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    @abstractmethod
    def strategies(self) -> tuple[StrategyName, ...]:
        """Strategies this patch may be applied with, in priority order."""

    @abstractmethod
    def present_via(self, tree: WorkingTree) -> StrategyName | None:
        """Strategy whose effect the tree already contains, or ``None``."""

    @abstractmethod
    def check(self, tree: WorkingTree, strategy: StrategyName) -> bool:
        """Dry run: would *strategy* apply cleanly?  Never modifies the tree."""

    @abstractmethod
    def apply(self, tree: WorkingTree, strategy: StrategyName) -> bool:
        """Apply for real.  Returns ``False`` when nothing needed changing."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r})"


class ProceduralPatch(Patch):
    """Applied by a repair procedure.  Never falls through to diff strategies."""

    def __init__(self, spec: PatchSpec, procedure: RepairProcedure | None) -> None:
        super().__init__(spec)
        self.procedure = procedure

    @property
    def strategies(self) -> tuple[StrategyName, ...]:
        return (StrategyName.PROCEDURAL,)

    def present_via(self, tree: WorkingTree) -> StrategyName | None:
        if self.procedure is not None and self.procedure.is_applied(tree.root):
            return StrategyName.PROCEDURAL
        return None

    def check(self, tree: WorkingTree, strategy: StrategyName) -> bool:
        if self.procedure is None:
            logger.warning("No repair procedure registered for %s", self.id)
            return False
        can_apply = getattr(self.procedure, "can_apply", None)
        return bool(can_apply(tree.root)) if callable(can_apply) else True

    def apply(self, tree: WorkingTree, strategy: StrategyName) -> bool:
        if self.procedure is None:
            raise ProcedureError(f"No repair procedure registered for {self.id}")
        return self.procedure.apply(tree.root)


class DiffPatch(Patch):
    """Applied from a textual diff via the strategy chain."""

    def __init__(self, spec: PatchSpec, fetcher: DiffFetcher) -> None:
        super().__init__(spec)
        self._fetcher = fetcher

    @property
    def strategies(self) -> tuple[StrategyName, ...]:
        return DIFF_STRATEGY_ORDER

    def present_via(self, tree: WorkingTree) -> StrategyName | None:
        # Reverse applies cleanly only if every hunk the strategy touches is
        # already in place.  Three-way leaves no distinct footprint to test.
        diff = self._fetcher.fetch(self.spec)
        for strategy in self.strategies:
            if strategy == StrategyName.THREE_WAY:
                continue
            excludes = STRATEGY_EXCLUDES[strategy]
            if not tree.can_apply(diff, excludes=excludes, reverse=True):
                continue
            # When the excludes leave nothing to apply, both directions pass.
            if excludes and tree.can_apply(diff, excludes=excludes):
                continue
            return strategy
        return None

    def check(self, tree: WorkingTree, strategy: StrategyName) -> bool:
        return tree.can_apply(
            self._fetcher.fetch(self.spec),
            excludes=STRATEGY_EXCLUDES[strategy],
            three_way=strategy == StrategyName.THREE_WAY,
        )

    def apply(self, tree: WorkingTree, strategy: StrategyName) -> bool:
        tree.apply(
            self._fetcher.fetch(self.spec),
            excludes=STRATEGY_EXCLUDES[strategy],
            three_way=strategy == StrategyName.THREE_WAY,
        )
        return True


def build_patch(spec: PatchSpec, procedures: ProcedureRegistry, fetcher: DiffFetcher) -> Patch:
    """Bind a ``PatchSpec`` to its variant.

    A registered procedure always wins over a diff, whatever the record says.
    """
    procedure = procedures.get(spec.id)
    if procedure is not None or spec.kind == PatchKind.PROCEDURAL:
        return ProceduralPatch(spec, procedure)
    return DiffPatch(spec, fetcher)
