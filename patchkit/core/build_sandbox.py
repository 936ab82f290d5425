"""BuildSandbox: produces a patched artifact without touching production.

Steps, each a hard gate:

1. checkout   fresh clone of the target version in a private temp dir
2. cascade    every non-retired patch, in patch-set order
3. install    dependency install command
4. build      compile command
5. verify     the entry artifact exists
6. publish    copy the output directory into the artifact store

Publishing is the only effect outside the sandbox.  Activation is a
separate step owned by the pipeline.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path, PurePosixPath

from patchkit.core.artifact_store import ArtifactStoreError, VersionedArtifactStore
from patchkit.core.cascade import PatchStrategyCascade
from patchkit.core.diff_source import DiffFetcher
from patchkit.core.errors import BuildFailure
from patchkit.core.patches import build_patch
from patchkit.core.procedures import ProcedureRegistry
from patchkit.core.working_tree import GitError, WorkingTree
from patchkit.models.artifacts import BuildResult
from patchkit.models.patches import CascadeResult, PatchSpec
from patchkit.models.run import PipelineRun, RunPhase

logger = logging.getLogger(__name__)

Checkout = Callable[[str, Path], WorkingTree]


class BuildSandbox:
    """Isolated checkout, patch, compile, verify, publish.

    Parameters
    ----------
    checkout:
        ``(version_tag, dest) -> WorkingTree``; usually a shallow clone.
    store:
        Where successful builds are published.
    procedures, fetcher:
        Used to bind each ``PatchSpec`` to its ``Patch`` variant.
    install_command, build_command:
        Shell-style command lines run from the tree root.  Empty skips.
    entry_artifact:
        Tree-relative path that must exist after the build.
    output_dir:
        Tree-relative directory published as the artifact.
    require_any_applied:
        Abort when patches were requested but none applied.
    """

    def __init__(
        self,
        checkout: Checkout,
        store: VersionedArtifactStore,
        *,
        procedures: ProcedureRegistry,
        fetcher: DiffFetcher,
        cascade: PatchStrategyCascade | None = None,
        install_command: str = "",
        build_command: str = "",
        entry_artifact: str = "dist/index.js",
        output_dir: str = "dist",
        timeout: float = 1800,
        workdir: Path | None = None,
        keep_sandbox: bool = False,
        require_any_applied: bool = True,
    ) -> None:
        self._checkout = checkout
        self._store = store
        self._procedures = procedures
        self._fetcher = fetcher
        self._cascade = cascade or PatchStrategyCascade()
        self._install = install_command
        self._build = build_command
        self._entry = entry_artifact
        self._output_dir = output_dir
        self._timeout = timeout
        self._workdir = workdir
        self._keep = keep_sandbox
        self._require_any = require_any_applied

    @property
    def artifact_entry(self) -> str:
        """Entry path relative to the published artifact root."""
        entry = PurePosixPath(self._entry)
        try:
            return str(entry.relative_to(self._output_dir))
        except ValueError:
            return str(entry)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        version_tag: str,
        patches: Sequence[PatchSpec],
        *,
        run: PipelineRun | None = None,
    ) -> BuildResult:
        """Run every step for *version_tag*; raise ``BuildFailure`` on any gate."""
        started = time.monotonic()
        sandbox = Path(tempfile.mkdtemp(prefix="patchkit-build-", dir=self._workdir))
        cascade: CascadeResult | None = None
        try:
            self._enter(run, RunPhase.CHECKOUT)
            try:
                tree = self._checkout(version_tag, sandbox / "src")
            except (GitError, OSError) as exc:
                raise BuildFailure("checkout", str(exc)) from exc

            self._enter(run, RunPhase.CASCADE)
            bound = [
                build_patch(spec, self._procedures, self._fetcher)
                for spec in patches
                if not spec.is_retired
            ]
            cascade = self._cascade.apply_all(bound, tree)
            if run is not None:
                run.cascade = cascade
            if self._require_any and bound and not cascade.applied_ids:
                raise BuildFailure("cascade", "no patch could be applied", cascade=cascade)

            self._enter(run, RunPhase.BUILD)
            self._run_step("install", self._install, tree.root, cascade)
            self._run_step("build", self._build, tree.root, cascade)

            self._enter(run, RunPhase.VERIFY)
            entry = tree.root / self._entry
            if not entry.is_file():
                raise BuildFailure(
                    "verify", f"entry artifact missing: {self._entry}", cascade=cascade
                )

            self._enter(run, RunPhase.PUBLISH)
            try:
                artifact = self._store.publish(
                    tree.root / self._output_dir,
                    version_tag,
                    applied=cascade.applied_ids,
                    failed=cascade.failed_ids,
                )
            except ArtifactStoreError as exc:
                raise BuildFailure("publish", str(exc), cascade=cascade) from exc
            if run is not None:
                run.artifact = artifact
        finally:
            if self._keep:
                logger.info("Keeping sandbox %s", sandbox)
            else:
                shutil.rmtree(sandbox, ignore_errors=True)

        duration = time.monotonic() - started
        logger.info(
            "Built %s in %.1fs: %d applied, %d failed",
            artifact.name, duration, len(cascade.applied_ids), len(cascade.failed_ids),
        )
        return BuildResult(artifact=artifact, cascade=cascade, duration_seconds=duration)

    @staticmethod
    def _enter(run: PipelineRun | None, phase: RunPhase) -> None:
        if run is not None:
            run.enter(phase)

    def _run_step(self, phase: str, command: str, cwd: Path, cascade: CascadeResult) -> None:
        if not command.strip():
            return
        logger.info("Running %s: %s", phase, command)
        try:
            r = subprocess.run(
                shlex.split(command),
                cwd=str(cwd),
                capture_output=True,
                text=True,
                check=False,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise BuildFailure(phase, str(exc), cascade=cascade) from exc
        if r.returncode != 0:
            tail = (r.stderr or r.stdout or "").strip()[-1000:]
            raise BuildFailure(phase, f"exit {r.returncode}: {tail}", cascade=cascade)
