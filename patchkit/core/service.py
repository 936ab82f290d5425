"""Service controller seam: restarts the deployed process after a swap.

The pipeline only needs "restart"; how that happens (systemd, launchd,
a container runtime) is configured as a command line.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Protocol, runtime_checkable

from patchkit.core.errors import PatchkitError

logger = logging.getLogger(__name__)


class ServiceControlError(PatchkitError):
    """Raised when the restart command fails."""


@runtime_checkable
class ServiceController(Protocol):
    def restart(self) -> None:
        ...


class CommandServiceController:
    """Runs a configured restart command, e.g. ``systemctl restart app``."""

    def __init__(self, command: str, *, timeout: float = 120) -> None:
        self._argv = shlex.split(command)
        self._timeout = timeout

    def restart(self) -> None:
        logger.info("Restarting service: %s", " ".join(self._argv))
        try:
            r = subprocess.run(
                self._argv, capture_output=True, text=True, check=False, timeout=self._timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ServiceControlError(f"Restart command failed: {exc}") from exc
        if r.returncode != 0:
            raise ServiceControlError(
                f"Restart command exited {r.returncode}: {(r.stderr or r.stdout).strip()[:300]}"
            )


class NullServiceController:
    """Used when no restart command is configured; the swap alone suffices."""

    def restart(self) -> None:
        logger.info("No restart command configured, skipping restart")


def controller_for(command: str) -> ServiceController:
    return CommandServiceController(command) if command.strip() else NullServiceController()
