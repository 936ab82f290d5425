"""Versioned, append-only artifact store with an atomic active pointer.

Storage layout::

    {root}/versions/{version_tag}-patched/          first build of a version
    {root}/versions/{version_tag}-patched-{n}/      later builds, n monotonic
    {root}/versions/*/manifest.json                 artifact metadata
    {root}/active -> versions/<name>                the active pointer

Published artifacts are never modified.  The only deletion path is
``prune``, which never touches the active artifact.  The pointer is
swapped by creating a temporary symlink and renaming it over ``active``,
so readers always see either the old or the new target.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from pathlib import Path

from patchkit.core.errors import ActivationFailure, RollbackFailure
from patchkit.core.hasher import canonical_json_bytes
from patchkit.models.artifacts import Artifact

logger = logging.getLogger(__name__)

MANIFEST = "manifest.json"
_COUNTERS = "build-ids.json"


class ArtifactStoreError(RuntimeError):
    """Raised when publishing cannot complete.  The store is left unchanged."""


class VersionedArtifactStore:
    """Append-only store of built artifacts plus the active pointer.

    Parameters
    ----------
    root:
        Store root directory.  Created if it does not exist.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._versions = self._root / "versions"
        self._active = self._root / "active"
        self._versions.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def active_link(self) -> Path:
        return self._active

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def _next_build_id(self, version_tag: str) -> int:
        counters_path = self._root / _COUNTERS
        counters: dict[str, int] = {}
        if counters_path.exists():
            counters = json.loads(counters_path.read_text(encoding="utf-8"))
        seen = max(
            [counters.get(version_tag, 0)]
            + [a.build_id for a in self.list_artifacts() if a.version_tag == version_tag]
        )
        counters[version_tag] = seen + 1
        tmp = counters_path.with_name(f".{_COUNTERS}.{uuid.uuid4().hex[:8]}")
        tmp.write_bytes(canonical_json_bytes(counters))
        os.replace(tmp, counters_path)
        return seen + 1

    @staticmethod
    def artifact_name(version_tag: str, build_id: int) -> str:
        base = f"{version_tag}-patched"
        return base if build_id == 1 else f"{base}-{build_id}"

    def publish(
        self,
        source_dir: Path,
        version_tag: str,
        *,
        applied: list[str] | None = None,
        failed: list[str] | None = None,
    ) -> Artifact:
        """Copy *source_dir* into the store as a new immutable artifact.

        Never overwrites: a name collision gets the next build suffix.
        A failure mid-copy removes the staging directory and leaves both
        the store contents and the active pointer untouched.
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise ArtifactStoreError(f"Build output not found: {source_dir}")

        staging = self._versions / f".staging-{uuid.uuid4().hex}"
        try:
            shutil.copytree(source_dir, staging, symlinks=True)
            while True:
                build_id = self._next_build_id(version_tag)
                name = self.artifact_name(version_tag, build_id)
                final = self._versions / name
                if not final.exists():
                    break
            artifact = Artifact(
                name=name,
                version_tag=version_tag,
                build_id=build_id,
                path=final,
                applied_patch_ids=list(applied or []),
                failed_patch_ids=list(failed or []),
            )
            manifest = artifact.model_dump(mode="json", exclude={"path"})
            (staging / MANIFEST).write_bytes(canonical_json_bytes(manifest))
            os.rename(staging, final)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ArtifactStoreError(f"Publishing {version_tag} failed: {exc}") from exc

        logger.info("Published artifact %s (%s)", artifact.name, final)
        return artifact

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> Artifact:
        manifest = path / MANIFEST
        if manifest.is_file():
            data = json.loads(manifest.read_text(encoding="utf-8"))
            return Artifact(path=path, **data)
        # Directories without a manifest were placed here by hand.
        return Artifact(
            name=path.name,
            version_tag=path.name.removesuffix("-patched"),
            path=path,
            created_at=path.stat().st_mtime,
        )

    def list_artifacts(self) -> list[Artifact]:
        """Every published artifact, newest first."""
        artifacts = [
            self._load(p)
            for p in self._versions.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        ]
        artifacts.sort(key=lambda a: (a.created_at, a.build_id, a.name), reverse=True)
        return artifacts

    def resolve(self, name: str) -> Artifact | None:
        path = self._versions / name
        if not name or "/" in name or name.startswith(".") or not path.is_dir():
            return None
        return self._load(path)

    def active(self) -> Artifact | None:
        """The artifact the pointer currently targets, or ``None``."""
        if not self._active.is_symlink():
            return None
        target = Path(os.readlink(self._active))
        return self.resolve(target.name)

    def previous(self) -> Artifact | None:
        """Newest artifact other than the active one."""
        active = self.active()
        for artifact in self.list_artifacts():
            if active is None or artifact.name != active.name:
                return artifact
        return None

    def verify(self, artifact: Artifact, entry: str) -> bool:
        """Check that *entry* (artifact-relative) exists inside *artifact*."""
        return (artifact.path / entry).is_file()

    # ------------------------------------------------------------------
    # Pointer swaps
    # ------------------------------------------------------------------

    def _swap_pointer(self, artifact: Artifact) -> None:
        relative_target = Path("versions") / artifact.name
        for attempt in (1, 2):
            tmp = self._root / f"active.tmp-{uuid.uuid4().hex[:8]}"
            try:
                os.symlink(relative_target, tmp)
                os.replace(tmp, self._active)
                return
            except OSError as exc:
                tmp.unlink(missing_ok=True)
                if attempt == 2:
                    raise ActivationFailure(
                        f"Could not point active at {artifact.name}: {exc}"
                    ) from exc
                logger.warning("Pointer swap to %s failed, retrying once: %s", artifact.name, exc)

    def activate(self, artifact: Artifact | str) -> Artifact:
        """Atomically point ``active`` at a published artifact."""
        name = artifact if isinstance(artifact, str) else artifact.name
        resolved = self.resolve(name)
        if resolved is None:
            raise ActivationFailure(f"Not a published artifact: {name!r}")
        self._swap_pointer(resolved)
        logger.info("Activated %s", resolved.name)
        return resolved

    def rollback(self, to: Artifact | str | None = None) -> Artifact:
        """Point ``active`` back at *to*, or at the previous artifact.

        Raises
        ------
        RollbackFailure
            When there is no target or the swap fails.
        """
        if to is None:
            target = self.previous()
            if target is None:
                raise RollbackFailure("No previous artifact to roll back to")
        else:
            name = to if isinstance(to, str) else to.name
            target = self.resolve(name)
            if target is None:
                raise RollbackFailure(f"Rollback target is not a published artifact: {name!r}")
        try:
            return self.activate(target)
        except ActivationFailure as exc:
            raise RollbackFailure(str(exc)) from exc

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune(self, keep: int = 3) -> list[str]:
        """Delete all but the *keep* newest artifacts.  Returns removed names.

        The active artifact is never eligible, so the store may hold
        ``keep + 1`` entries when the active one is older than the rest.
        """
        keep = max(1, keep)
        active = self.active()
        removed: list[str] = []
        for artifact in self.list_artifacts()[keep:]:
            if active is not None and artifact.name == active.name:
                continue
            shutil.rmtree(artifact.path)
            removed.append(artifact.name)
        if removed:
            logger.info("Pruned %d artifact(s): %s", len(removed), removed)
        return removed
