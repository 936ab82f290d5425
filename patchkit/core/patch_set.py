"""PatchSetStore: the human-editable, ordered patch-set file.

File format, one record per line::

    # free-form comment
    12345 | fix reconnect loop                   # risk=high files=src/net.ts
    local-logger | bind logger methods
    23456 | guard: null config [three-way]        # auto-added=2026-10-17 score=91
    # RETIRED(2026-10-17): 11111 | merged upstream
    # ROLLBACK(2026-10-18): 22222 | crash loop after upgrade

Order in the file is application order.  Retiring a record comments it
out behind a marker instead of deleting it, so the history stays in the
file and parses back as a ``RETIRED`` ``PatchSpec``.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Callable, Iterable
from datetime import date, datetime, timezone
from pathlib import Path

from patchkit.models.patches import PatchKind, PatchSpec, RiskTier

logger = logging.getLogger(__name__)


# Marker keywords written in front of retired records.
RETIRED = "RETIRED"
ROLLBACK = "ROLLBACK"
BUILD_FAIL = "BUILD-FAIL"
MERGED = "MERGED"
RETIREMENT_MARKERS: tuple[str, ...] = (RETIRED, ROLLBACK, BUILD_FAIL, MERGED)

_RETIRED_LINE = re.compile(
    r"^#\s*(?P<marker>" + "|".join(re.escape(m) for m in RETIREMENT_MARKERS) + r")"
    r"(?:\((?P<date>\d{4}-\d{2}-\d{2})\))?:\s*(?P<rest>.+)$"
)
_ANNOTATION = re.compile(r"^[a-z][a-z0-9_-]*=\S*$")


class PatchSetError(RuntimeError):
    """Raised for a malformed or duplicate patch-set record."""


def _split_annotations(text: str) -> tuple[str, dict[str, str]]:
    """Split ``body  # k=v k=v`` into body and annotation dict.

    A trailing ``#`` section only counts as annotations when every token
    in it is ``key=value``; otherwise the ``#`` belongs to the description.
    """
    head, sep, tail = text.rpartition(" # ")
    if not sep:
        return text.strip(), {}
    tokens = tail.split()
    if not tokens or not all(_ANNOTATION.match(tok) for tok in tokens):
        return text.strip(), {}
    return head.strip(), dict(tok.split("=", 1) for tok in tokens)


def _parse_record(text: str) -> tuple[str, str, dict[str, str]]:
    body, annotations = _split_annotations(text)
    pid, _, description = body.partition("|")
    pid = pid.strip()
    if not pid or " " in pid:
        raise PatchSetError(f"Malformed patch id in record: {text!r}")
    return pid, description.strip(), annotations


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def format_record(spec: PatchSpec) -> str:
    """Render a live (non-retired) record line for *spec*."""
    annotations: list[str] = []
    if spec.kind == PatchKind.PROCEDURAL:
        annotations.append("kind=procedural")
    if spec.risk_tier != RiskTier.LOW:
        annotations.append(f"risk={spec.risk_tier.value}")
    if spec.touched_files:
        annotations.append("files=" + ",".join(sorted(spec.touched_files)))
    if spec.diff_locator:
        annotations.append(f"locator={spec.diff_locator}")
    if spec.auto_added:
        added = (spec.added_on or datetime.now(timezone.utc).date()).isoformat()
        annotations.append(f"auto-added={added}")
    # One physical line per record; a " # " inside the text would read back as annotations.
    description = " ".join(spec.description.split()).replace(" # ", " - ")
    line = f"{spec.id} | {description}" if description else spec.id
    if annotations:
        line += "  # " + " ".join(annotations)
    return line


class PatchSetStore:
    """Reads and mutates the ordered patch-set file.

    Parameters
    ----------
    conf_path:
        Path to the patch-set file.  A missing file reads as empty.
    is_procedural:
        Callable answering whether a repair procedure exists for an id.
        Entries with a procedure are loaded as ``PROCEDURAL``.
    retired_log:
        Optional append-only text log of retirements.
    """

    def __init__(
        self,
        conf_path: Path,
        *,
        is_procedural: Callable[[str], bool] | None = None,
        retired_log: Path | None = None,
    ) -> None:
        self._path = Path(conf_path)
        self._is_procedural = is_procedural or (lambda _pid: False)
        self._retired_log = Path(retired_log) if retired_log else None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def load(self) -> list[PatchSpec]:
        """Parse every record, retired ones included, in file order."""
        if not self._path.exists():
            return []
        specs: list[PatchSpec] = []
        seen: set[str] = set()
        for lineno, raw in enumerate(self._path.read_text(encoding="utf-8").splitlines(), 1):
            line = raw.strip()
            if not line:
                continue
            spec = self._parse_line(line)
            if spec is None:
                continue
            if spec.id in seen and not spec.is_retired:
                raise PatchSetError(f"{self._path}:{lineno}: duplicate patch id {spec.id!r}")
            seen.add(spec.id)
            specs.append(spec)
        return specs

    def active(self) -> list[PatchSpec]:
        """Non-retired records in application order."""
        return [s for s in self.load() if not s.is_retired]

    def ids(self) -> set[str]:
        """Every id mentioned in the file, retired or not."""
        return {s.id for s in self.load()}

    def get(self, patch_id: str) -> PatchSpec | None:
        for spec in self.load():
            if spec.id == patch_id and not spec.is_retired:
                return spec
        return None

    def _parse_line(self, line: str) -> PatchSpec | None:
        if line.startswith("#"):
            match = _RETIRED_LINE.match(line)
            if not match:
                return None
            pid, description, annotations = _parse_record(match.group("rest"))
            return PatchSpec(
                id=pid,
                kind=PatchKind.RETIRED,
                description=description,
                retired_reason=match.group("marker"),
                added_on=_parse_date(annotations.get("auto-added")),
                auto_added="auto-added" in annotations,
            )

        pid, description, annotations = _parse_record(line)
        procedural = annotations.get("kind") == "procedural" or self._is_procedural(pid)
        files = annotations.get("files", "")
        try:
            risk = RiskTier(annotations.get("risk", RiskTier.LOW.value))
        except ValueError as exc:
            raise PatchSetError(f"Unknown risk tier for {pid!r}: {annotations['risk']!r}") from exc
        return PatchSpec(
            id=pid,
            kind=PatchKind.PROCEDURAL if procedural else PatchKind.DIFF,
            description=description,
            risk_tier=risk,
            touched_files=frozenset(f for f in files.split(",") if f),
            diff_locator=annotations.get("locator", ""),
            auto_added="auto-added" in annotations,
            added_on=_parse_date(annotations.get("auto-added")),
        )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def append(self, specs: Iterable[PatchSpec], *, header: str = "") -> list[str]:
        """Append new records, skipping ids already present.

        Returns the ids actually written.
        """
        existing = self.ids()
        new_lines: list[str] = []
        written: list[str] = []
        for spec in specs:
            if spec.id in existing:
                logger.info("Patch %s already in %s, skipping", spec.id, self._path)
                continue
            new_lines.append(format_record(spec))
            written.append(spec.id)
            existing.add(spec.id)
        if not new_lines:
            return []

        lines = self._read_lines()
        if lines and lines[-1].strip():
            lines.append("")
        if header:
            lines.append(f"# {header}")
        lines.extend(new_lines)
        self._write_lines(lines)
        logger.info("Appended %d patch(es) to %s: %s", len(written), self._path, written)
        return written

    def retire(
        self,
        patch_ids: Iterable[str],
        *,
        marker: str = RETIRED,
        reason: str = "",
        on: date | None = None,
    ) -> list[str]:
        """Comment out live records behind *marker*.

        Unknown or already-retired ids are ignored.  Returns the ids
        actually retired, in file order.
        """
        if marker not in RETIREMENT_MARKERS:
            raise PatchSetError(f"Unknown retirement marker {marker!r}")
        targets = set(patch_ids)
        if not targets:
            return []
        stamp = (on or datetime.now(timezone.utc).date()).isoformat()

        lines = self._read_lines()
        retired: list[str] = []
        for idx, raw in enumerate(lines):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            pid, _, _ = _parse_record(line)
            if pid in targets:
                lines[idx] = f"# {marker}({stamp}): {line}"
                retired.append(pid)
        if retired:
            self._write_lines(lines)
            self._log_retirement(retired, marker, reason, stamp)
            logger.info("Retired %s with marker %s", retired, marker)
        return retired

    def _log_retirement(self, ids: list[str], marker: str, reason: str, stamp: str) -> None:
        if self._retired_log is None:
            return
        self._retired_log.parent.mkdir(parents=True, exist_ok=True)
        with open(self._retired_log, "a", encoding="utf-8") as fh:
            for pid in ids:
                fh.write(f"{stamp} {marker} {pid} {reason}".rstrip() + "\n")

    def _read_lines(self) -> list[str]:
        if not self._path.exists():
            return []
        return self._path.read_text(encoding="utf-8").splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        """Replace the file atomically via a sibling temp file."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write("\n".join(lines) + "\n")
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
