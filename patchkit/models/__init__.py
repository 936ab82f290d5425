"""patchkit data models: all Pydantic v2, frozen except the run context."""

from patchkit.models.admission import (
    AdmissionDecision,
    AdmissionSummary,
    AdmissionVerdict,
    ScoredChange,
)
from patchkit.models.artifacts import Artifact, BuildResult
from patchkit.models.conflicts import ConflictLabel, ConflictReport, DeltaSource, VersionDelta
from patchkit.models.health import (
    VALID_TRANSITIONS,
    HealthObservation,
    HealthReport,
    HealthState,
    RollbackDecision,
    RollbackScope,
)
from patchkit.models.ledger import AuditEntry
from patchkit.models.notifications import Notification, Severity
from patchkit.models.patches import (
    DIFF_STRATEGY_ORDER,
    CascadeResult,
    PatchKind,
    PatchOrigin,
    PatchSpec,
    RiskTier,
    StrategyName,
    StrategyOutcome,
)
from patchkit.models.run import PipelineRun, RunKind, RunPhase, RunReport

__all__ = [
    # patches
    "PatchKind",
    "PatchOrigin",
    "PatchSpec",
    "RiskTier",
    "StrategyName",
    "StrategyOutcome",
    "CascadeResult",
    "DIFF_STRATEGY_ORDER",
    # conflicts
    "ConflictLabel",
    "ConflictReport",
    "DeltaSource",
    "VersionDelta",
    # artifacts
    "Artifact",
    "BuildResult",
    # health
    "HealthState",
    "HealthObservation",
    "HealthReport",
    "RollbackDecision",
    "RollbackScope",
    "VALID_TRANSITIONS",
    # admission
    "ScoredChange",
    "AdmissionDecision",
    "AdmissionVerdict",
    "AdmissionSummary",
    # notifications
    "Notification",
    "Severity",
    # ledger
    "AuditEntry",
    # run
    "PipelineRun",
    "RunKind",
    "RunPhase",
    "RunReport",
]
