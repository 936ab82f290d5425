"""WorkingTree: a git checkout the cascade and the build run inside.

Every successful patch is sealed with a local checkpoint commit so that a
failed attempt can be discarded with ``reset --hard`` without touching
patches applied before it.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

_IDENTITY = ["-c", "user.name=patchkit", "-c", "user.email=patchkit@localhost"]


class GitError(RuntimeError):
    """Raised when a git command exits non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        super().__init__(
            f"git {' '.join(args)} failed (rc={returncode}): {stderr.strip()[:500]}"
        )
        self.returncode = returncode
        self.stderr = stderr


def _run_git(
    args: Sequence[str], *, cwd: Path | None = None, timeout: float | None = 600
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(args, -1, str(exc)) from exc


def _git(args: Sequence[str], *, cwd: Path | None = None) -> str:
    r = _run_git(args, cwd=cwd)
    if r.returncode != 0:
        raise GitError(args, r.returncode, r.stderr)
    return (r.stdout or "").strip()


class WorkingTree:
    """Handle on a git checkout at a known path.

    Parameters
    ----------
    root:
        Repository root.  Must already be a git work tree.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @classmethod
    def clone(cls, url: str, ref: str, dest: Path, *, depth: int | None = 1) -> WorkingTree:
        """Shallow-clone *url* at tag or branch *ref* into *dest*."""
        args = ["clone", "--quiet", "--branch", ref]
        if depth:
            args += ["--depth", str(depth)]
        args += [url, str(dest)]
        logger.info("Cloning %s@%s into %s", url, ref, dest)
        _git(args)
        return cls(dest)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def git(self, *args: str) -> str:
        return _git(args, cwd=self.root)

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def is_clean(self) -> bool:
        return self.git("status", "--porcelain") == ""

    def tracked_files(self) -> list[str]:
        out = self.git("ls-files")
        return [line for line in out.splitlines() if line]

    # ------------------------------------------------------------------
    # Diff application
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_args(
        diff_path: Path,
        *,
        excludes: Sequence[str] = (),
        three_way: bool = False,
        reverse: bool = False,
        check: bool = False,
    ) -> list[str]:
        args = ["apply", "--whitespace=nowarn"]
        if check:
            args.append("--check")
        if three_way:
            args.append("--3way")
        if reverse:
            args.append("--reverse")
        args += [f"--exclude={pattern}" for pattern in excludes]
        args.append(str(diff_path))
        return args

    def can_apply(
        self,
        diff_path: Path,
        *,
        excludes: Sequence[str] = (),
        three_way: bool = False,
        reverse: bool = False,
    ) -> bool:
        """Dry-run ``git apply --check``; never modifies the tree."""
        args = self._apply_args(
            diff_path, excludes=excludes, three_way=three_way, reverse=reverse, check=True
        )
        r = _run_git(args, cwd=self.root)
        if r.returncode != 0:
            logger.debug("apply --check failed: %s", r.stderr.strip()[:300])
        return r.returncode == 0

    def apply(
        self, diff_path: Path, *, excludes: Sequence[str] = (), three_way: bool = False
    ) -> None:
        """Apply a diff for real.  Raises GitError on failure."""
        _git(self._apply_args(diff_path, excludes=excludes, three_way=three_way), cwd=self.root)

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def checkpoint(self, message: str) -> str:
        """Commit every change in the tree and return the new HEAD."""
        _git(["add", "-A"], cwd=self.root)
        _git([*_IDENTITY, "commit", "--quiet", "--allow-empty", "--no-verify", "-m", message],
             cwd=self.root)
        return self.head()

    def discard(self) -> None:
        """Drop every uncommitted change, including untracked files."""
        _git(["reset", "--quiet", "--hard", "HEAD"], cwd=self.root)
        _git(["clean", "-fdq"], cwd=self.root)
