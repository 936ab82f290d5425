"""HealthSupervisor: post-activation monitoring and rollback decisions.

After activation the supervisor samples the deployed process on a fixed
interval for a bounded window::

    MONITORING --(window ends, 0 crashes)------> STABLE
    MONITORING --(window ends, 1..N-1 crashes)--> UNSTABLE
    MONITORING --(N-th crash, immediately)-----> CRITICAL

where N is the critical threshold (3 by default).  A "crash" is a sample
in which the process is not alive; the external service manager is
expected to restart it, so the supervisor waits a short grace period
after each crash before sampling again.

Monitoring can run inline or on a ``MonitorTask``: a non-daemon thread
with its own cancellation ticker that survives the invoking command.
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx

from patchkit.models.health import (
    VALID_TRANSITIONS,
    HealthObservation,
    HealthReport,
    HealthState,
    RollbackDecision,
    RollbackScope,
)

logger = logging.getLogger(__name__)


class InvalidHealthTransition(RuntimeError):
    """Raised when the health state machine is driven out of order."""


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


@runtime_checkable
class ProcessProbe(Protocol):
    """Answers whether the deployed process is currently alive."""

    def is_alive(self) -> bool:
        ...


@runtime_checkable
class EndpointProbe(Protocol):
    """Returns the HTTP status of the health endpoint, ``None`` if unreachable."""

    def status(self) -> int | None:
        ...


class PidFileProbe:
    """Alive when the pid in *pid_file* names a running process."""

    def __init__(self, pid_file: Path) -> None:
        self._pid_file = Path(pid_file)

    def is_alive(self) -> bool:
        try:
            pid = int(self._pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # exists, owned by someone else
        return True


class CommandProbe:
    """Alive when *argv* exits 0 (e.g. ``pgrep -x name``)."""

    def __init__(self, argv: Sequence[str], *, timeout: float = 10) -> None:
        self._argv = list(argv)
        self._timeout = timeout

    def is_alive(self) -> bool:
        try:
            r = subprocess.run(
                self._argv, capture_output=True, check=False, timeout=self._timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Process probe %s failed: %s", self._argv, exc)
            return False
        return r.returncode == 0


class CallableProbe:
    """Wraps a zero-argument callable; an exception counts as not alive."""

    def __init__(self, fn: Callable[[], bool]) -> None:
        self._fn = fn

    def is_alive(self) -> bool:
        try:
            return bool(self._fn())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Process probe raised: %s", exc)
            return False


class HttpEndpointProbe:
    """Any HTTP response counts as responding; a refused connection does not."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    def status(self) -> int | None:
        try:
            if self._client is not None:
                return self._client.get(self._url, timeout=self._timeout).status_code
            return httpx.get(self._url, timeout=self._timeout).status_code
        except httpx.HTTPError:
            return None


# ---------------------------------------------------------------------------
# Ticker
# ---------------------------------------------------------------------------


class Ticker:
    """Cancellable sleep shared between a monitor loop and its owner."""

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*.  Returns ``True`` if cancelled meanwhile."""
        if seconds <= 0:
            return self._cancelled.is_set()
        return self._cancelled.wait(seconds)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class HealthSupervisor:
    """Samples process health and classifies the monitoring window.

    Parameters
    ----------
    process_probe:
        Liveness check for the deployed process.
    endpoint_probe:
        Optional HTTP probe; recorded on every observation.
    interval, window, grace:
        Seconds between samples, total monitoring time, and the initial
        settle time before the first sample.
    critical_threshold:
        Crash count that ends monitoring immediately as CRITICAL.
    restart_grace:
        Extra wait after a crash sample, letting the service manager
        bring the process back.
    """

    def __init__(
        self,
        process_probe: ProcessProbe,
        endpoint_probe: EndpointProbe | None = None,
        *,
        interval: float = 30.0,
        window: float = 300.0,
        grace: float = 5.0,
        critical_threshold: int = 3,
        restart_grace: float = 5.0,
    ) -> None:
        if critical_threshold < 1:
            raise ValueError("critical_threshold must be >= 1")
        self._process = process_probe
        self._endpoint = endpoint_probe
        self._interval = interval
        self._window = window
        self._grace = grace
        self._threshold = critical_threshold
        self._restart_grace = restart_grace

    @property
    def critical_threshold(self) -> int:
        return self._threshold

    @property
    def sample_count(self) -> int:
        # A zero interval means "window" is a sample count.
        if self._interval <= 0:
            return max(1, int(self._window))
        return max(1, math.ceil(self._window / self._interval))

    def classify(self, crash_count: int) -> HealthState:
        """Map a crash count to its terminal state."""
        if crash_count <= 0:
            return HealthState.STABLE
        if crash_count < self._threshold:
            return HealthState.UNSTABLE
        return HealthState.CRITICAL

    @staticmethod
    def _transition(current: HealthState, target: HealthState) -> HealthState:
        if target not in VALID_TRANSITIONS.get(current, set()):
            raise InvalidHealthTransition(
                f"Cannot transition health from {current.value} to {target.value}"
            )
        logger.info("Health %s -> %s", current.value, target.value)
        return target

    def observe(self) -> HealthObservation:
        alive = self._process.is_alive()
        status = self._endpoint.status() if self._endpoint is not None else None
        return HealthObservation(process_alive=alive, endpoint_status=status)

    def monitor(self, ticker: Ticker | None = None) -> HealthReport:
        """Run one monitoring window and return its classification.

        Stops at the first sample that reaches the critical threshold.
        When *ticker* is cancelled, returns the classification so far
        with ``cancelled=True``.
        """
        ticker = ticker or Ticker()
        state = HealthState.MONITORING
        observations: list[HealthObservation] = []
        crashes = 0
        stopped_early = False

        logger.info(
            "Monitoring for %.0fs (every %.0fs, critical at %d crashes)",
            self._window, self._interval, self._threshold,
        )
        cancelled = ticker.wait(self._grace)
        if not cancelled:
            for index in range(self.sample_count):
                if index and ticker.wait(self._interval):
                    cancelled = True
                    break
                obs = self.observe()
                observations.append(obs)
                if obs.process_alive:
                    if not obs.responding and self._endpoint is not None:
                        logger.warning("Process alive but endpoint not responding")
                    continue
                crashes += 1
                logger.warning("Crash detected (#%d)", crashes)
                if crashes >= self._threshold:
                    stopped_early = True
                    break
                if ticker.wait(self._restart_grace):
                    cancelled = True
                    break

        state = self._transition(state, self.classify(crashes))
        return HealthReport(
            state=state,
            crash_count=crashes,
            observations=observations,
            stopped_early=stopped_early,
            cancelled=cancelled,
        )

    def decide(
        self,
        state: HealthState,
        *,
        crash_count: int = 0,
        recent_patch_ids: Sequence[str] = (),
        previous_artifact: str | None = None,
    ) -> RollbackDecision:
        """Choose the rollback scope for a terminal health state.

        UNSTABLE retires only the recently added patches and rebuilds;
        CRITICAL also reverts the whole artifact to *previous_artifact*.
        """
        if state == HealthState.MONITORING:
            raise InvalidHealthTransition("Cannot decide while still monitoring")
        if state == HealthState.STABLE:
            return RollbackDecision(state=state, scope=RollbackScope.NONE, crash_count=crash_count)
        if state == HealthState.UNSTABLE:
            return RollbackDecision(
                state=state,
                scope=RollbackScope.PATCHSET_ONLY,
                crash_count=crash_count,
                patches_to_disable=list(recent_patch_ids),
            )
        return RollbackDecision(
            state=state,
            scope=RollbackScope.FULL_ARTIFACT,
            crash_count=crash_count,
            target_artifact=previous_artifact,
            patches_to_disable=list(recent_patch_ids),
        )


# ---------------------------------------------------------------------------
# Detached monitoring
# ---------------------------------------------------------------------------


class MonitorTask:
    """Runs a monitoring job on its own non-daemon thread.

    The job receives the task's ``Ticker`` and owns everything it needs;
    the task keeps no reference to whoever started it, so the invoking
    command may return while monitoring continues.
    """

    def __init__(self, job: Callable[[Ticker], Any], *, name: str = "patchkit-monitor") -> None:
        self._job = job
        self._ticker = Ticker()
        self._result: Any = None
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=False)

    def _run(self) -> None:
        try:
            self._result = self._job(self._ticker)
        except BaseException as exc:  # noqa: BLE001
            logger.exception("Monitor task failed")
            self._error = exc

    def start(self) -> MonitorTask:
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._ticker.cancel()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the job.  Returns ``True`` once it has finished."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    @property
    def result(self) -> Any:
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error


def spawn_monitor_process(argv: Sequence[str], log_path: Path) -> int:
    """Launch *argv* in its own session, detached from the caller.

    Used when the invoking process must exit (cron, service hooks).
    Returns the child pid.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "ab") as log:
        proc = subprocess.Popen(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    logger.info("Spawned detached monitor pid=%d, log=%s", proc.pid, log_path)
    return proc.pid
