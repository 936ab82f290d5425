"""Per-run context and the persisted run report.

``PipelineRun`` is the single mutable object handed from phase to phase
during one invocation.  Components never keep run state of their own.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from patchkit.models.artifacts import Artifact
from patchkit.models.conflicts import ConflictReport
from patchkit.models.health import HealthReport, HealthState, RollbackDecision
from patchkit.models.patches import CascadeResult, PatchSpec


class RunKind(str, Enum):
    UPGRADE = "upgrade"
    ANALYZE = "analyze"
    ROLLBACK = "rollback"
    ADMISSION = "admission"
    ENSURE_PATCHED = "ensure-patched"
    MONITOR = "monitor"


class RunPhase(str, Enum):
    """Pipeline phases, in execution order."""

    PENDING = "pending"
    CLASSIFY = "classify"
    CHECKOUT = "checkout"
    CASCADE = "cascade"
    BUILD = "build"
    VERIFY = "verify"
    PUBLISH = "publish"
    ACTIVATE = "activate"
    HEALTH = "health"
    REMEDIATE = "remediate"
    DONE = "done"


def new_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"pk-{ts}-{uuid.uuid4().hex[:4]}"


class PipelineRun(BaseModel):
    """Explicit context for one pipeline invocation."""

    run_id: str = Field(default_factory=new_run_id)
    kind: RunKind
    target_tag: str = ""
    from_version: str = ""
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    phase: RunPhase = RunPhase.PENDING
    failed_phase: RunPhase | None = None
    error: str = ""
    patches: list[PatchSpec] = []
    conflicts: ConflictReport | None = None
    cascade: CascadeResult | None = None
    artifact: Artifact | None = None
    previous_artifact: str | None = None
    health: HealthReport | None = None
    decision: RollbackDecision | None = None

    def enter(self, phase: RunPhase) -> None:
        self.phase = phase

    def fail(self, error: Exception | str) -> None:
        self.failed_phase = self.phase
        self.error = str(error)

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def to_report(self) -> RunReport:
        """Freeze the run into a persistable report."""
        return RunReport(
            run_id=self.run_id,
            action=self.kind.value,
            from_version=self.from_version,
            target=self.target_tag,
            phase_failed=self.failed_phase.value if self.failed_phase else None,
            error=self.error,
            health=self.health.state if self.health else None,
            crash_count=self.health.crash_count if self.health else 0,
            applied=self.cascade.applied_ids if self.cascade else [],
            failed=self.cascade.failed_ids if self.cascade else [],
            low_confidence=self.cascade.low_confidence_ids if self.cascade else [],
            strategies=self.cascade.strategy_counts() if self.cascade else {},
            retired=self.conflicts.retired if self.conflicts else [],
            conflicting=self.conflicts.conflicting if self.conflicts else [],
            artifact=self.artifact.name if self.artifact else None,
            previous_good_artifact=self.previous_artifact,
            rollback_scope=self.decision.scope.value if self.decision else None,
            duration_seconds=round(self.elapsed_seconds, 3),
        )


class RunReport(BaseModel):
    """Frozen summary of a finished run, written to ``last-run.json``."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    action: str
    from_version: str = ""
    target: str = ""
    phase_failed: str | None = None
    error: str = ""
    health: HealthState | None = None
    crash_count: int = 0
    applied: list[str] = []
    failed: list[str] = []
    low_confidence: list[str] = []
    strategies: dict[str, int] = {}
    retired: list[str] = []
    conflicting: list[str] = []
    artifact: str | None = None
    previous_good_artifact: str | None = None
    rollback_scope: str | None = None
    duration_seconds: float = 0.0
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def ok(self) -> bool:
        """A run succeeds only without a failed phase and, when monitored, STABLE."""
        if self.phase_failed is not None:
            return False
        return self.health in (None, HealthState.STABLE)
