"""Admission control models for the nightly candidate path."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from patchkit.models.patches import StrategyName


class ScoredChange(BaseModel):
    """A candidate change scored by an external process."""

    model_config = ConfigDict(frozen=True)

    # Ids and locators end up verbatim in the patch-set file.
    id: str = Field(pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
    score: float = Field(ge=0, le=100)
    intent: str
    diff_locator: str = Field(default="", pattern=r"^\S*$")
    title: str = ""


class AdmissionDecision(str, Enum):
    ADMITTED = "admitted"
    MANUAL_REVIEW = "manual-review"
    REJECTED = "rejected"
    SKIPPED = "skipped"  # already in the patch set


class AdmissionVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: ScoredChange
    decision: AdmissionDecision
    reason: str = ""
    strategy: StrategyName | None = None  # first strategy whose dry run passed

    @property
    def admitted(self) -> bool:
        return self.decision == AdmissionDecision.ADMITTED

    def __bool__(self) -> bool:
        return self.admitted


class AdmissionSummary(BaseModel):
    """Result of one nightly admission cycle."""

    model_config = ConfigDict(frozen=True)

    verdicts: list[AdmissionVerdict] = []
    rebuilt: bool = False
    build_failed: bool = False

    def ids_with(self, decision: AdmissionDecision) -> list[str]:
        return [v.candidate.id for v in self.verdicts if v.decision == decision]

    @property
    def admitted_ids(self) -> list[str]:
        return self.ids_with(AdmissionDecision.ADMITTED)
