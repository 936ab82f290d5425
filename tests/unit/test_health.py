"""Unit tests for HealthSupervisor, probes, and MonitorTask."""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path

import httpx
import pytest

from patchkit.core.health_supervisor import (
    CallableProbe,
    CommandProbe,
    HealthSupervisor,
    HttpEndpointProbe,
    InvalidHealthTransition,
    MonitorTask,
    PidFileProbe,
    Ticker,
)
from patchkit.models.health import HealthState, RollbackScope


def _supervisor(probe, endpoint=None, **kw) -> HealthSupervisor:
    kw.setdefault("interval", 0)
    kw.setdefault("window", 10)
    kw.setdefault("grace", 0)
    kw.setdefault("restart_grace", 0)
    return HealthSupervisor(probe, endpoint, **kw)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestMonitor:
    def test_no_crashes_is_stable(self, scripted_probe):
        probe = scripted_probe()
        report = _supervisor(probe).monitor()
        assert report.state == HealthState.STABLE
        assert report.crash_count == 0
        assert len(report.observations) == 10
        assert not report.stopped_early

    def test_two_crashes_is_unstable(self, scripted_probe):
        probe = scripted_probe([True, False, True, False])
        report = _supervisor(probe).monitor()
        assert report.state == HealthState.UNSTABLE
        assert report.crash_count == 2
        assert len(report.observations) == 10

    def test_third_crash_stops_early(self, scripted_probe):
        probe = scripted_probe([False, False, False], default=True)
        report = _supervisor(probe).monitor()
        assert report.state == HealthState.CRITICAL
        assert report.crash_count == 3
        assert report.stopped_early
        assert probe.calls == 3
        assert len(report.observations) == 3

    def test_threshold_is_configurable(self, scripted_probe):
        probe = scripted_probe([False], default=True)
        report = _supervisor(probe, critical_threshold=1).monitor()
        assert report.state == HealthState.CRITICAL
        assert probe.calls == 1

    def test_invalid_threshold(self, scripted_probe):
        with pytest.raises(ValueError):
            HealthSupervisor(scripted_probe(), critical_threshold=0)

    def test_sample_count_from_interval(self, scripted_probe):
        assert HealthSupervisor(scripted_probe(), interval=30, window=300).sample_count == 10
        assert HealthSupervisor(scripted_probe(), interval=30, window=31).sample_count == 2

    def test_endpoint_status_recorded(self, scripted_probe):
        class _Endpoint:
            def status(self):
                return 503

        report = _supervisor(scripted_probe(), _Endpoint(), window=2).monitor()
        assert [o.endpoint_status for o in report.observations] == [503, 503]
        assert all(o.responding for o in report.observations)

    def test_cancelled_ticker(self, scripted_probe):
        ticker = Ticker()
        ticker.cancel()
        probe = scripted_probe()
        report = _supervisor(probe).monitor(ticker)
        assert report.cancelled
        assert report.state == HealthState.STABLE
        assert probe.calls == 0

    def test_classify(self, scripted_probe):
        sup = _supervisor(scripted_probe())
        assert sup.classify(0) == HealthState.STABLE
        assert sup.classify(1) == HealthState.UNSTABLE
        assert sup.classify(2) == HealthState.UNSTABLE
        assert sup.classify(3) == HealthState.CRITICAL
        assert sup.classify(7) == HealthState.CRITICAL


class TestDecide:
    def test_stable_needs_nothing(self, scripted_probe):
        decision = _supervisor(scripted_probe()).decide(HealthState.STABLE)
        assert decision.scope == RollbackScope.NONE
        assert not decision.requires_action

    def test_unstable_is_patchset_only(self, scripted_probe):
        decision = _supervisor(scripted_probe()).decide(
            HealthState.UNSTABLE,
            crash_count=2,
            recent_patch_ids=["9001"],
            previous_artifact="v1.0.0-patched",
        )
        assert decision.scope == RollbackScope.PATCHSET_ONLY
        assert decision.patches_to_disable == ["9001"]
        assert decision.target_artifact is None

    def test_critical_is_full_artifact(self, scripted_probe):
        decision = _supervisor(scripted_probe()).decide(
            HealthState.CRITICAL,
            crash_count=3,
            recent_patch_ids=["9001"],
            previous_artifact="v1.0.0-patched",
        )
        assert decision.scope == RollbackScope.FULL_ARTIFACT
        assert decision.target_artifact == "v1.0.0-patched"
        assert decision.patches_to_disable == ["9001"]

    def test_monitoring_is_not_decidable(self, scripted_probe):
        with pytest.raises(InvalidHealthTransition):
            _supervisor(scripted_probe()).decide(HealthState.MONITORING)


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


class TestProbes:
    def test_callable_probe_exception_is_dead(self):
        def boom() -> bool:
            raise RuntimeError("probe exploded")

        assert CallableProbe(boom).is_alive() is False
        assert CallableProbe(lambda: True).is_alive() is True

    def test_pid_file_probe(self, tmp_path: Path):
        pid_file = tmp_path / "app.pid"
        assert PidFileProbe(pid_file).is_alive() is False
        pid_file.write_text(str(os.getpid()))
        assert PidFileProbe(pid_file).is_alive() is True
        pid_file.write_text("not-a-pid")
        assert PidFileProbe(pid_file).is_alive() is False

    def test_command_probe(self):
        assert CommandProbe([sys.executable, "-c", "pass"]).is_alive() is True
        assert CommandProbe([sys.executable, "-c", "raise SystemExit(1)"]).is_alive() is False
        assert CommandProbe(["/nonexistent/probe-binary"]).is_alive() is False

    def test_http_probe_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(204))
        with httpx.Client(transport=transport) as client:
            probe = HttpEndpointProbe("http://app.local/health", client=client)
            assert probe.status() == 204

    def test_http_probe_refused_is_none(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with httpx.Client(transport=httpx.MockTransport(refuse)) as client:
            assert HttpEndpointProbe("http://app.local/health", client=client).status() is None


# ---------------------------------------------------------------------------
# MonitorTask
# ---------------------------------------------------------------------------


class TestMonitorTask:
    def test_runs_job_on_non_daemon_thread(self):
        seen: dict[str, object] = {}

        def job(ticker: Ticker) -> str:
            seen["daemon"] = threading.current_thread().daemon
            return "done"

        task = MonitorTask(job).start()
        assert task.join(timeout=5)
        assert task.done
        assert task.result == "done"
        assert task.error is None
        assert seen["daemon"] is False

    def test_cancel_reaches_job(self):
        started = threading.Event()

        def job(ticker: Ticker) -> bool:
            started.set()
            return ticker.wait(30)

        task = MonitorTask(job).start()
        assert started.wait(5)
        task.cancel()
        assert task.join(timeout=5)
        assert task.result is True

    def test_job_error_captured(self):
        def job(ticker: Ticker) -> None:
            raise RuntimeError("monitor crashed")

        task = MonitorTask(job).start()
        task.join(timeout=5)
        assert isinstance(task.error, RuntimeError)
        assert task.result is None
