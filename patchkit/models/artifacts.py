"""Built artifact models (immutable once published)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from patchkit.models.patches import CascadeResult


class Artifact(BaseModel):
    """A published, immutable build output.

    ``build_id`` disambiguates repeated builds of the same upstream
    version: the first build is 1, later ones get a monotonic suffix.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version_tag: str
    build_id: int = 1
    path: Path
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    applied_patch_ids: list[str] = []
    failed_patch_ids: list[str] = []


class BuildResult(BaseModel):
    """Artifact plus the cascade ledger that produced it."""

    model_config = ConfigDict(frozen=True)

    artifact: Artifact
    cascade: CascadeResult
    duration_seconds: float = 0.0

    @property
    def applied_ids(self) -> list[str]:
        return self.cascade.applied_ids

    @property
    def failed_ids(self) -> list[str]:
        return self.cascade.failed_ids
