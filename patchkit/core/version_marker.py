"""Version marker: records which upstream version was last patched.

Lets ``ensure-patched`` hooks (run after every upstream update) return
immediately when the installed version has already been processed.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class VersionDriftError(RuntimeError):
    """Raised when the installed version differs from the recorded one."""


def read_installed_version(path: Path) -> str | None:
    """Read a version from a ``package.json``-style file or a plain text file."""
    path = Path(path)
    if not path.is_file():
        return None
    text = path.read_text(encoding="utf-8").strip()
    if path.suffix == ".json":
        try:
            return str(json.loads(text).get("version") or "") or None
        except (ValueError, AttributeError):
            return None
    return text or None


class VersionMarker:
    """Single-line marker file holding the last patched version.

    Parameters
    ----------
    path:
        Marker location.  A missing file means nothing was patched yet.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def recorded(self) -> str | None:
        if not self._path.is_file():
            return None
        return self._path.read_text(encoding="utf-8").strip() or None

    def record(self, version: str) -> None:
        """Atomically replace the marker with *version*."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(version + "\n", encoding="utf-8")
        os.replace(tmp, self._path)
        logger.info("Recorded patched version %s", version)

    def is_current(self, version: str) -> bool:
        return self.recorded() == version

    def check_drift(self, version: str, *, strict: bool = True) -> str | None:
        """Describe drift between *version* and the marker, or ``None``.

        Raises VersionDriftError when ``strict`` and drift is found.
        """
        recorded = self.recorded()
        if recorded == version:
            return None
        drift = f"recorded={recorded!r}, installed={version!r}"
        if strict:
            raise VersionDriftError(f"Version drift detected: {drift}")
        return drift
