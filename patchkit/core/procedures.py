"""Repair procedures: patches expressed as code instead of diffs.

A procedure edits the tree directly and must be idempotent: if the target
state is already present it reports a no-op instead of failing.  Two
backends ship by default:

1. **TextSubstitution**: declarative find/replace edits loaded from
   ``<procedures_dir>/<id>.json``.
2. **ScriptProcedure**: an executable ``<procedures_dir>/<id>-*.sh`` run
   with the tree root as its only argument.  A script that prints
   ``SKIP`` on stdout reports the target state as already present.

Custom backends only need to satisfy the ``RepairProcedure`` protocol.
"""

from __future__ import annotations

import glob
import json
import logging
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class ProcedureError(RuntimeError):
    """Raised when a procedure cannot reach its target state."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RepairProcedure(Protocol):
    """Protocol every repair procedure must satisfy."""

    @property
    def procedure_id(self) -> str:
        ...

    def is_applied(self, root: Path) -> bool:
        """Return ``True`` if *root* already has the target state."""
        ...

    def apply(self, root: Path) -> bool:
        """Bring *root* to the target state.

        Returns
        -------
        bool
            ``True`` if files were modified, ``False`` for a no-op.

        Raises
        ------
        ProcedureError
            If the target state cannot be reached.
        """
        ...


# ---------------------------------------------------------------------------
# Declarative text substitution
# ---------------------------------------------------------------------------


class TextEdit(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    find: str
    replace: str
    count: int = Field(default=1, ge=1)


class SubstitutionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = ""
    edits: list[TextEdit]


class TextSubstitution:
    """Find/replace edits applied in order; all-or-nothing per procedure."""

    def __init__(self, procedure_id: str, edits: list[TextEdit]) -> None:
        if not edits:
            raise ValueError(f"Procedure {procedure_id} has no edits")
        self._id = procedure_id
        self._edits = list(edits)

    @classmethod
    def from_file(cls, procedure_id: str, path: Path) -> TextSubstitution:
        try:
            spec = SubstitutionSpec.model_validate(json.loads(Path(path).read_text("utf-8")))
        except (OSError, ValueError, ValidationError) as exc:
            raise ProcedureError(f"Invalid procedure file {path}: {exc}") from exc
        return cls(procedure_id, spec.edits)

    @property
    def procedure_id(self) -> str:
        return self._id

    def _edit_done(self, root: Path, edit: TextEdit) -> bool:
        target = root / edit.path
        if not target.is_file():
            return False
        return self._edit_done_in(target.read_text(encoding="utf-8"), edit)

    def is_applied(self, root: Path) -> bool:
        return all(self._edit_done(root, edit) for edit in self._edits)

    def can_apply(self, root: Path) -> bool:
        """Every edit is either done already or has its anchor in place."""
        for edit in self._edits:
            target = root / edit.path
            if not target.is_file():
                return False
            content = target.read_text(encoding="utf-8")
            if not (self._edit_done_in(content, edit) or edit.find in content):
                return False
        return True

    def apply(self, root: Path) -> bool:
        if self.is_applied(root):
            return False

        # Validate every edit before writing any file.
        pending: dict[Path, str] = {}
        for edit in self._edits:
            target = root / edit.path
            content = pending.get(target)
            if content is None:
                if not target.is_file():
                    raise ProcedureError(f"{self._id}: target file missing: {edit.path}")
                content = target.read_text(encoding="utf-8")
            if self._edit_done_in(content, edit):
                continue
            if edit.find not in content:
                raise ProcedureError(f"{self._id}: anchor not found in {edit.path}")
            pending[target] = content.replace(edit.find, edit.replace, edit.count)

        for target, content in pending.items():
            target.write_text(content, encoding="utf-8")
        return bool(pending)

    @staticmethod
    def _edit_done_in(content: str, edit: TextEdit) -> bool:
        return edit.replace in content and (edit.find not in content or edit.find in edit.replace)


# ---------------------------------------------------------------------------
# Executable scripts
# ---------------------------------------------------------------------------


class ScriptProcedure:
    """Runs an external repair script against the tree root."""

    def __init__(self, procedure_id: str, script: Path, *, timeout: float = 300) -> None:
        self._id = procedure_id
        self._script = Path(script)
        self._timeout = timeout

    @property
    def procedure_id(self) -> str:
        return self._id

    @property
    def script(self) -> Path:
        return self._script

    def is_applied(self, root: Path) -> bool:
        # Scripts self-check; the answer only comes from running them.
        return False

    def apply(self, root: Path) -> bool:
        try:
            r = subprocess.run(
                ["bash", str(self._script), str(root)],
                cwd=str(root),
                capture_output=True,
                text=True,
                check=False,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ProcedureError(f"{self._id}: could not run {self._script.name}: {exc}") from exc
        if r.returncode != 0:
            raise ProcedureError(
                f"{self._id}: {self._script.name} exited {r.returncode}: "
                f"{(r.stderr or r.stdout).strip()[:300]}"
            )
        if "SKIP" in (r.stdout or ""):
            logger.info("Procedure %s reported target state already present", self._id)
            return False
        return True


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProcedureRegistry:
    """Maps patch ids to repair procedures.

    Parameters
    ----------
    procedures_dir:
        Directory scanned for ``<id>.json`` and ``<id>-*.sh`` files.
        May be ``None`` or missing, in which case only explicitly
        registered procedures are known.
    """

    def __init__(self, procedures_dir: Path | None = None) -> None:
        self._procedures: dict[str, RepairProcedure] = {}
        self._dir = Path(procedures_dir) if procedures_dir else None
        if self._dir and self._dir.is_dir():
            self._discover(self._dir)

    def _discover(self, directory: Path) -> None:
        for path in sorted(directory.glob("*.json")):
            self.register(TextSubstitution.from_file(path.stem, path))
        logger.debug("Discovered %d procedure(s) in %s", len(self._procedures), directory)

    def _find_script(self, patch_id: str) -> Path | None:
        # Script names embed free text after the id, so they resolve per lookup.
        if self._dir is None or not self._dir.is_dir():
            return None
        matches = sorted(self._dir.glob(f"{glob.escape(patch_id)}-*.sh"))
        if len(matches) > 1:
            logger.warning("Several scripts for %s, using %s", patch_id, matches[0].name)
        return matches[0] if matches else None

    def register(self, procedure: RepairProcedure) -> None:
        self._procedures[procedure.procedure_id] = procedure

    def has(self, patch_id: str) -> bool:
        return self.get(patch_id) is not None

    def get(self, patch_id: str) -> RepairProcedure | None:
        procedure = self._procedures.get(patch_id)
        if procedure is None:
            script = self._find_script(patch_id)
            if script is not None:
                procedure = ScriptProcedure(patch_id, script)
                self._procedures[patch_id] = procedure
        return procedure

    @property
    def ids(self) -> list[str]:
        return sorted(self._procedures)
