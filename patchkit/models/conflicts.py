"""Pre-flight conflict classification models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class ConflictLabel(str, Enum):
    CLEAN = "clean"
    CONFLICTING = "conflicting"
    RETIRED = "retired"


class DeltaSource(str, Enum):
    COMPARE_API = "compare-api"
    TREE_DIFF = "tree-diff"


class VersionDelta(BaseModel):
    """Files changed between two upstream versions.  Not persisted."""

    model_config = ConfigDict(frozen=True)

    old_tag: str
    new_tag: str
    files: frozenset[str] = frozenset()
    source: DeltaSource = DeltaSource.COMPARE_API


class ConflictReport(BaseModel):
    """Advisory classification of every non-retired patch against a delta.

    Overlap means "may conflict", not "will conflict".
    """

    model_config = ConfigDict(frozen=True)

    delta: VersionDelta
    labels: dict[str, ConflictLabel] = {}
    overlaps: dict[str, list[str]] = {}
    unknown_footprint: list[str] = []

    def ids_with(self, label: ConflictLabel) -> list[str]:
        return [pid for pid, lab in self.labels.items() if lab == label]

    @property
    def clean(self) -> list[str]:
        return self.ids_with(ConflictLabel.CLEAN)

    @property
    def conflicting(self) -> list[str]:
        return self.ids_with(ConflictLabel.CONFLICTING)

    @property
    def retired(self) -> list[str]:
        return self.ids_with(ConflictLabel.RETIRED)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicting)
