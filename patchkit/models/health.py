"""Health supervision models: states, observations, rollback decisions."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class HealthState(str, Enum):
    """Post-activation health classification."""

    MONITORING = "monitoring"
    STABLE = "stable"
    UNSTABLE = "unstable"
    CRITICAL = "critical"


# Terminal states have no outgoing transitions.
VALID_TRANSITIONS: dict[HealthState, set[HealthState]] = {
    HealthState.MONITORING: {HealthState.STABLE, HealthState.UNSTABLE, HealthState.CRITICAL},
    HealthState.STABLE: set(),
    HealthState.UNSTABLE: set(),
    HealthState.CRITICAL: set(),
}


class RollbackScope(str, Enum):
    NONE = "none"
    PATCHSET_ONLY = "patchset-only"
    FULL_ARTIFACT = "full-artifact"


class HealthObservation(BaseModel):
    """One probe sample."""

    model_config = ConfigDict(frozen=True)

    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    process_alive: bool
    endpoint_status: int | None = None  # None: connection refused or no endpoint

    @property
    def responding(self) -> bool:
        return self.endpoint_status is not None


class HealthReport(BaseModel):
    """Outcome of one monitoring window."""

    model_config = ConfigDict(frozen=True)

    state: HealthState
    crash_count: int = 0
    observations: list[HealthObservation] = []
    stopped_early: bool = False
    cancelled: bool = False


class RollbackDecision(BaseModel):
    """What to undo after a monitoring window, and how far."""

    model_config = ConfigDict(frozen=True)

    state: HealthState
    scope: RollbackScope
    crash_count: int = 0
    target_artifact: str | None = None  # artifact name, full-artifact scope only
    patches_to_disable: list[str] = []

    @property
    def requires_action(self) -> bool:
        return self.scope != RollbackScope.NONE
