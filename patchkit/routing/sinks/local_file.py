"""Local file sink: writes notifications to JSON files.

Layout: {base_path}/{run_id or _general}/{timestamp}-{notification_id}.json
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from patchkit.core.hasher import canonical_json_bytes
from patchkit.models.notifications import Notification

logger = logging.getLogger(__name__)


class LocalFileSink:
    """Writes notifications to local JSON files.

    Parameters
    ----------
    base_path:
        Root directory for notification files.
    """

    def __init__(self, base_path: Path | str) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def sink_name(self) -> str:
        return "local_file"

    def accept(self, notification: Notification) -> None:
        target_dir = self._base / (notification.run_id or "_general")
        target_dir.mkdir(parents=True, exist_ok=True)
        stamp = notification.timestamp_utc.strftime("%Y%m%dT%H%M%S%f")
        target_file = target_dir / f"{stamp}-{notification.notification_id}.json"
        target_file.write_bytes(canonical_json_bytes(notification.model_dump(mode="json")))
        logger.debug("LocalFileSink: wrote %s", target_file)

    def list_notifications(self, run_id: str | None = None) -> list[Path]:
        """Notification files for a run (or all runs), oldest first."""
        root = self._base / run_id if run_id else self._base
        if not root.exists():
            return []
        return sorted(root.rglob("*.json"), key=lambda p: p.name)

    def read(self, path: Path) -> dict:
        return json.loads(path.read_bytes())
