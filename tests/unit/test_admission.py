"""Unit tests for AdmissionGate and the NightlyAdmission cycle."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from patchkit.core.admission_gate import AdmissionGate, NightlyAdmission
from patchkit.core.diff_source import DiffFetcher
from patchkit.core.errors import ActivationFailure, BuildFailure
from patchkit.models.admission import AdmissionDecision
from patchkit.models.notifications import Severity
from patchkit.models.patches import StrategyName, StrategyOutcome


class FakeCascade:
    """Check-only cascade whose verdict is scripted per patch id."""

    def __init__(self, passing=(), present=(), strategy=StrategyName.EXACT) -> None:
        self.passing = set(passing)
        self.present = set(present)
        self.strategy = strategy
        self.checked: list[tuple[str, bool]] = []

    def apply(self, patch, tree, *, check_only=False):
        pid = patch.spec.id
        self.checked.append((pid, check_only))
        if pid in self.present:
            return StrategyOutcome(patch_id=pid, applied=True, no_op=True,
                                   strategy_used=StrategyName.EXACT)
        if pid in self.passing:
            return StrategyOutcome(patch_id=pid, applied=True, strategy_used=self.strategy)
        return StrategyOutcome(patch_id=pid, applied=False, reason="all strategies failed")


# Stands in for a WorkingTree; FakeCascade never touches it.
TREE = object()


@pytest.fixture
def fetcher(tmp_path: Path) -> DiffFetcher:
    return DiffFetcher(tmp_path / "cache", retry_base_delay=0)


def _gate(fetcher, **cascade_kw) -> tuple[AdmissionGate, FakeCascade]:
    cascade = FakeCascade(**cascade_kw)
    return AdmissionGate(fetcher, cascade=cascade), cascade


class TestGate:
    def test_high_score_feature_goes_to_review(self, fetcher, make_scored_change):
        gate, cascade = _gate(fetcher, passing={"1"})
        verdict = gate.admit(make_scored_change("1", 95, "feature"), TREE)
        assert verdict.decision == AdmissionDecision.MANUAL_REVIEW
        assert not verdict.admitted
        assert cascade.checked == []

    def test_failing_check_is_rejected(self, fetcher, make_scored_change):
        gate, cascade = _gate(fetcher)
        verdict = gate.admit(make_scored_change("2", 85, "bugfix"), TREE)
        assert verdict.decision == AdmissionDecision.REJECTED
        assert "apply check failed" in verdict.reason
        assert cascade.checked == [("2", True)]

    def test_all_three_conditions_admit(self, fetcher, make_scored_change):
        gate, _ = _gate(fetcher, passing={"3"})
        verdict = gate.admit(make_scored_change("3", 90, "security"), TREE)
        assert verdict.decision == AdmissionDecision.ADMITTED
        assert verdict.admitted
        assert bool(verdict)
        assert verdict.strategy == StrategyName.EXACT

    def test_score_below_threshold(self, fetcher, make_scored_change):
        gate, cascade = _gate(fetcher, passing={"4"})
        verdict = gate.admit(make_scored_change("4", 84.9, "bugfix"), TREE)
        assert verdict.decision == AdmissionDecision.REJECTED
        assert cascade.checked == []

    def test_threshold_is_inclusive(self, fetcher, make_scored_change):
        gate, _ = _gate(fetcher, passing={"5"})
        assert gate.admit(make_scored_change("5", 85, "bugfix"), TREE).admitted

    def test_intent_match_is_case_insensitive(self, fetcher, make_scored_change):
        gate, _ = _gate(fetcher, passing={"6"})
        assert gate.admit(make_scored_change("6", 99, "  BugFix "), TREE).admitted

    def test_no_tree_rejects(self, fetcher, make_scored_change):
        gate, _ = _gate(fetcher, passing={"7"})
        verdict = gate.admit(make_scored_change("7", 99, "bugfix"), None)
        assert verdict.decision == AdmissionDecision.REJECTED

    def test_existing_id_skipped(self, fetcher, make_scored_change):
        gate, cascade = _gate(fetcher, passing={"8"})
        verdict = gate.admit(make_scored_change("8", 99, "bugfix"), TREE, existing_ids={"8"})
        assert verdict.decision == AdmissionDecision.SKIPPED
        assert cascade.checked == []

    def test_already_present_in_tree_skipped(self, fetcher, make_scored_change):
        gate, _ = _gate(fetcher, present={"9"})
        verdict = gate.admit(make_scored_change("9", 99, "bugfix"), TREE)
        assert verdict.decision == AdmissionDecision.SKIPPED

    def test_spec_marks_non_exact_strategy(self, fetcher, make_scored_change):
        gate, _ = _gate(fetcher)
        spec = gate.spec_for(
            make_scored_change("10", 90, "bugfix", title="guard null"),
            strategy=StrategyName.THREE_WAY,
        )
        assert spec.description == "bugfix: guard null [three-way]"
        assert spec.auto_added
        assert spec.added_on is not None


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestGateAgainstRealTree:
    def test_real_check_only_cascade(self, fetcher, make_tree, app_diff, make_scored_change):
        tree = make_tree()
        head = tree.head()
        gate = AdmissionGate(fetcher)
        verdict = gate.admit(
            make_scored_change("4242", 90, "bugfix", diff_locator=str(app_diff)), tree
        )
        assert verdict.admitted
        assert tree.head() == head
        assert tree.is_clean()


class TestNightlyAdmission:
    @pytest.fixture
    def rebuilds(self) -> list[list[str]]:
        return []

    def _cycle(self, gate, patch_set, audit, dispatcher, rebuilds, *, fail=None):
        def rebuild(ids):
            rebuilds.append(list(ids))
            if fail is not None:
                raise fail

        return NightlyAdmission(
            gate, patch_set, rebuild=rebuild, audit=audit, dispatcher=dispatcher
        )

    def test_success_appends_and_rebuilds(
        self, fetcher, patch_set, audit, dispatcher, recording_sink, rebuilds,
        run, make_scored_change,
    ):
        gate, _ = _gate(fetcher, passing={"100", "101"})
        cycle = self._cycle(gate, patch_set, audit, dispatcher, rebuilds)
        candidates = [
            make_scored_change("100", 88, "bugfix"),
            make_scored_change("101", 97, "security"),
            make_scored_change("102", 92, "feature"),
            make_scored_change("103", 40, "bugfix"),
        ]
        summary = cycle.run(candidates, TREE, run=run)

        assert summary.rebuilt
        assert not summary.build_failed
        # Highest score first.
        assert summary.admitted_ids == ["101", "100"]
        assert summary.ids_with(AdmissionDecision.MANUAL_REVIEW) == ["102"]
        assert summary.ids_with(AdmissionDecision.REJECTED) == ["103"]
        assert rebuilds == [["101", "100"]]

        added = [s for s in patch_set.active() if s.auto_added]
        assert [s.id for s in added] == ["101", "100"]
        assert "# Auto-added:" in patch_set.path.read_text()

        titles = recording_sink.titles()
        assert titles[0] == "Nightly scan: 3 notable candidate(s)"
        assert "1 candidate(s) need manual review" in titles
        assert titles[-1] == "Auto-add success"

        phases = [e.phase for e in audit.get_run_entries(run.run_id)]
        assert phases == ["gate"] * 4 + ["append", "rebuild"]

    def test_build_failure_retires_auto_added(
        self, fetcher, patch_set, audit, dispatcher, recording_sink, rebuilds,
        run, make_scored_change,
    ):
        patch_set.path.write_text("1 | curated\n", encoding="utf-8")
        gate, _ = _gate(fetcher, passing={"200"})
        failure = BuildFailure("build", "tsc exited 2")
        cycle = self._cycle(gate, patch_set, audit, dispatcher, rebuilds, fail=failure)
        summary = cycle.run([make_scored_change("200", 90, "bugfix")], TREE, run=run)

        assert summary.build_failed
        assert not summary.rebuilt
        assert [s.id for s in patch_set.active()] == ["1"]
        retired = [s for s in patch_set.load() if s.is_retired]
        assert [(s.id, s.retired_reason) for s in retired] == [("200", "BUILD-FAIL")]

        last = recording_sink.received[-1]
        assert last.title == "Auto-add build failed"
        assert last.severity == Severity.CRITICAL
        assert audit.get_run_entries(run.run_id)[-1].outcome == "build-failed"

    def test_activation_failure_retires_auto_added(
        self, fetcher, patch_set, audit, dispatcher, recording_sink, rebuilds,
        run, make_scored_change,
    ):
        patch_set.path.write_text("1 | curated\n", encoding="utf-8")
        gate, _ = _gate(fetcher, passing={"250"})
        failure = ActivationFailure("Service restart failed; active reverted to v1.0.0-patched")
        cycle = self._cycle(gate, patch_set, audit, dispatcher, rebuilds, fail=failure)
        summary = cycle.run([make_scored_change("250", 90, "bugfix")], TREE, run=run)

        assert summary.build_failed
        assert not summary.rebuilt
        assert [s.id for s in patch_set.active()] == ["1"]
        retired = [s for s in patch_set.load() if s.is_retired]
        assert [(s.id, s.retired_reason) for s in retired] == [("250", "BUILD-FAIL")]
        assert recording_sink.received[-1].title == "Auto-add activation failed"
        assert audit.get_run_entries(run.run_id)[-1].outcome == "activation-failed"

    def test_nothing_admitted_skips_rebuild(
        self, fetcher, patch_set, audit, dispatcher, rebuilds, run, make_scored_change
    ):
        gate, _ = _gate(fetcher)
        cycle = self._cycle(gate, patch_set, audit, dispatcher, rebuilds)
        summary = cycle.run([make_scored_change("300", 90, "bugfix")], TREE, run=run)
        assert summary.admitted_ids == []
        assert rebuilds == []
        assert not patch_set.path.exists()

    def test_existing_entries_skipped(
        self, fetcher, patch_set, audit, dispatcher, rebuilds, run, make_scored_change
    ):
        patch_set.path.write_text("# RETIRED(2026-01-01): 400 | old\n", encoding="utf-8")
        gate, _ = _gate(fetcher, passing={"400"})
        cycle = self._cycle(gate, patch_set, audit, dispatcher, rebuilds)
        summary = cycle.run([make_scored_change("400", 99, "bugfix")], TREE, run=run)
        assert summary.ids_with(AdmissionDecision.SKIPPED) == ["400"]
        assert rebuilds == []
