"""StatusProjection: pure read-only view over persisted pipeline state.

The projection never stores anything.  Every ``snapshot()`` call re-reads
the artifact store, the patch set, the version marker, the last run
report, and the audit log.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from patchkit.core.artifact_store import VersionedArtifactStore
from patchkit.core.audit_log import AuditIntegrityError, AuditLog
from patchkit.core.patch_set import PatchSetStore
from patchkit.core.version_marker import VersionMarker
from patchkit.models.artifacts import Artifact
from patchkit.models.ledger import AuditEntry
from patchkit.models.run import RunReport

logger = logging.getLogger(__name__)


def read_run_report(path: Path) -> RunReport | None:
    """Load ``last-run.json``; ``None`` when missing or unreadable."""
    path = Path(path)
    if not path.is_file():
        return None
    try:
        return RunReport.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        logger.warning("Ignoring unreadable run report %s: %s", path, exc)
        return None


class RetiredPatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    patch_id: str
    marker: str
    description: str = ""


class StatusSnapshot(BaseModel):
    """A frozen, point-in-time view of the deployment.

    Computed fresh on every ``snapshot()`` call; never persisted.
    """

    model_config = ConfigDict(frozen=True)

    active: Artifact | None = None
    previous: Artifact | None = None
    artifacts: list[Artifact] = []
    patched_version: str | None = None
    last_run: RunReport | None = None
    active_patch_ids: list[str] = []
    retired_patches: list[RetiredPatch] = []
    recent_entries: list[AuditEntry] = []
    audit_valid: bool = True
    taken_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def artifact_count(self) -> int:
        return len(self.artifacts)

    @property
    def healthy(self) -> bool:
        """True when there is an active artifact and the last run succeeded."""
        if self.active is None:
            return False
        return self.last_run is None or self.last_run.ok

    @property
    def version_drift(self) -> bool:
        """The active artifact is not the recorded patched version."""
        if self.active is None or self.patched_version is None:
            return False
        return self.active.version_tag != self.patched_version


class StatusProjection:
    """Read-only projection over the store, patch set, marker, and audit log.

    Parameters
    ----------
    store, audit, patch_set, marker:
        Sources to project from.
    last_run_path:
        Location of the latest ``RunReport``.
    recent:
        How many audit entries to include.
    """

    def __init__(
        self,
        store: VersionedArtifactStore,
        audit: AuditLog,
        patch_set: PatchSetStore,
        marker: VersionMarker,
        *,
        last_run_path: Path,
        recent: int = 10,
    ) -> None:
        self._store = store
        self._audit = audit
        self._patch_set = patch_set
        self._marker = marker
        self._last_run_path = Path(last_run_path)
        self._recent = recent

    def _audit_valid(self) -> bool:
        try:
            return self._audit.verify_all()
        except AuditIntegrityError as exc:
            logger.error("Audit log failed verification: %s", exc)
            return False

    def snapshot(self) -> StatusSnapshot:
        specs = self._patch_set.load()
        return StatusSnapshot(
            active=self._store.active(),
            previous=self._store.previous(),
            artifacts=self._store.list_artifacts(),
            patched_version=self._marker.recorded(),
            last_run=read_run_report(self._last_run_path),
            active_patch_ids=[s.id for s in specs if not s.is_retired],
            retired_patches=[
                RetiredPatch(patch_id=s.id, marker=s.retired_reason, description=s.description)
                for s in specs
                if s.is_retired
            ],
            recent_entries=self._audit.recent(self._recent),
            audit_valid=self._audit_valid(),
        )
