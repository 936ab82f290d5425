"""ConflictClassifier: pre-flight triage of the patch set against a new version.

Each non-retired patch is labelled:

- **retired**: the upstream change it carries has been merged upstream;
- **conflicting**: its footprint overlaps the files changed upstream;
- **clean**: neither.

The upstream delta comes from the compare API.  When that list is capped
or the API is unavailable, two shallow checkouts are diffed instead.
Classification is advisory: a "conflicting" patch may still apply.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol

from patchkit.core.errors import PatchkitError
from patchkit.core.hasher import tree_fingerprints
from patchkit.core.patch_set import MERGED, PatchSetStore
from patchkit.core.upstream import ChangeState
from patchkit.core.working_tree import WorkingTree
from patchkit.models.conflicts import ConflictLabel, ConflictReport, DeltaSource, VersionDelta
from patchkit.models.patches import PatchOrigin, PatchSpec

logger = logging.getLogger(__name__)


class UpstreamSource(Protocol):
    """The subset of ``UpstreamClient`` the classifier depends on."""

    def compare(self, old_tag: str, new_tag: str) -> VersionDelta: ...

    def change_state(self, number: str) -> ChangeState: ...

    def change_files(self, number: str) -> list[str]: ...


TreeDiffer = Callable[[str, str], frozenset[str]]


class GitTreeDiffer:
    """Fallback delta: clone both refs shallowly and compare file digests.

    Parameters
    ----------
    clone_url:
        Repository to clone.
    subdir:
        Restrict the comparison to this sub-directory (repo-relative).
    """

    def __init__(self, clone_url: str, *, subdir: str = "", workdir: Path | None = None) -> None:
        self._url = clone_url
        self._subdir = subdir.strip("/")
        self._workdir = workdir

    def __call__(self, old_tag: str, new_tag: str) -> frozenset[str]:
        tmp = Path(tempfile.mkdtemp(prefix="patchkit-delta-", dir=self._workdir))
        try:
            old = WorkingTree.clone(self._url, old_tag, tmp / "old")
            new = WorkingTree.clone(self._url, new_tag, tmp / "new")
            return diff_trees(old.root, new.root, subdir=self._subdir)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


def diff_trees(old_root: Path, new_root: Path, *, subdir: str = "") -> frozenset[str]:
    """Repo-relative paths added, removed, or changed between two trees."""
    old_base = old_root / subdir if subdir else old_root
    new_base = new_root / subdir if subdir else new_root
    old = tree_fingerprints(old_base) if old_base.exists() else {}
    new = tree_fingerprints(new_base) if new_base.exists() else {}
    prefix = f"{subdir}/" if subdir else ""
    changed = {path for path in old.keys() | new.keys() if old.get(path) != new.get(path)}
    return frozenset(prefix + path for path in changed)


class ConflictClassifier:
    """Labels patches clean / conflicting / retired for a version delta.

    Parameters
    ----------
    upstream:
        Source of compares, merge state, and change footprints.
    tree_differ:
        Fallback used when the compare API cannot give a complete list.
    """

    def __init__(self, upstream: UpstreamSource, tree_differ: TreeDiffer | None = None) -> None:
        self._upstream = upstream
        self._tree_differ = tree_differ

    # ------------------------------------------------------------------
    # Delta
    # ------------------------------------------------------------------

    def delta(self, old_tag: str, new_tag: str) -> VersionDelta:
        try:
            return self._upstream.compare(old_tag, new_tag)
        except PatchkitError as exc:
            if self._tree_differ is None:
                raise
            logger.warning("Compare API unusable (%s); diffing checkouts instead", exc)
        files = self._tree_differ(old_tag, new_tag)
        logger.info("Tree diff %s..%s: %d files changed", old_tag, new_tag, len(files))
        return VersionDelta(
            old_tag=old_tag, new_tag=new_tag, files=files, source=DeltaSource.TREE_DIFF
        )

    # ------------------------------------------------------------------
    # Per-patch
    # ------------------------------------------------------------------

    def _is_merged(self, spec: PatchSpec) -> bool:
        if spec.origin != PatchOrigin.UPSTREAM:
            return False
        try:
            return self._upstream.change_state(spec.id).merged
        except PatchkitError as exc:
            logger.warning("Could not read merge state of %s: %s", spec.id, exc)
            return False

    def _footprint(self, spec: PatchSpec) -> frozenset[str]:
        if spec.touched_files:
            return spec.touched_files
        if spec.origin != PatchOrigin.UPSTREAM:
            return frozenset()
        try:
            return frozenset(self._upstream.change_files(spec.id))
        except PatchkitError as exc:
            logger.warning("Could not read footprint of %s: %s", spec.id, exc)
            return frozenset()

    def classify(self, old_tag: str, new_tag: str, patches: Iterable[PatchSpec]) -> ConflictReport:
        """Classify every non-retired patch against the ``old..new`` delta."""
        return self.classify_against(self.delta(old_tag, new_tag), patches)

    def classify_against(self, delta: VersionDelta, patches: Iterable[PatchSpec]) -> ConflictReport:
        labels: dict[str, ConflictLabel] = {}
        overlaps: dict[str, list[str]] = {}
        unknown: list[str] = []

        for spec in patches:
            if spec.is_retired:
                continue
            if self._is_merged(spec):
                labels[spec.id] = ConflictLabel.RETIRED
                continue
            footprint = self._footprint(spec)
            if not footprint:
                unknown.append(spec.id)
            overlap = sorted(footprint & delta.files)
            if overlap:
                labels[spec.id] = ConflictLabel.CONFLICTING
                overlaps[spec.id] = overlap
            else:
                labels[spec.id] = ConflictLabel.CLEAN

        report = ConflictReport(
            delta=delta, labels=labels, overlaps=overlaps, unknown_footprint=unknown
        )
        logger.info(
            "Classified %d patch(es) against %s..%s: %d clean, %d conflicting, %d retired",
            len(labels), delta.old_tag, delta.new_tag,
            len(report.clean), len(report.conflicting), len(report.retired),
        )
        return report


def retire_merged(patch_set: PatchSetStore, report: ConflictReport) -> list[str]:
    """Comment out every patch the report found merged upstream."""
    if not report.retired:
        return []
    return patch_set.retire(
        report.retired,
        marker=MERGED,
        reason=f"merged upstream before {report.delta.new_tag}",
    )
