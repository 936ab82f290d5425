"""Adversarial tests: hostile candidates and hand-edited patch-set files.

Scored candidates come from an outside process.  Their fields are written
into the patch-set file, so they must not be able to:
1. Inject extra records (newlines in titles)
2. Override annotations such as the diff locator (" # locator=..." tails)
3. Smuggle ids or locators that break the one-record-per-line format
4. Bypass the score threshold or the intent allow-set
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from patchkit.core.admission_gate import AdmissionGate
from patchkit.core.diff_source import DiffFetcher
from patchkit.core.patch_set import PatchSetError, PatchSetStore, format_record
from patchkit.models.admission import AdmissionDecision, ScoredChange
from patchkit.models.patches import PatchKind, PatchSpec


@pytest.fixture
def gate(tmp_path: Path) -> AdmissionGate:
    return AdmissionGate(DiffFetcher(tmp_path / "cache"))


class TestHostileCandidates:
    @pytest.mark.parametrize(
        "bad_id",
        ["", " 42", "42 | evil", "42\n43", "#42", "../42", "42 # locator=/etc/passwd"],
    )
    def test_malformed_ids_rejected(self, bad_id):
        with pytest.raises(ValidationError):
            ScoredChange(id=bad_id, score=99, intent="bugfix")

    def test_locator_with_whitespace_rejected(self):
        with pytest.raises(ValidationError):
            ScoredChange(id="42", score=99, intent="bugfix", diff_locator="/tmp/a.diff kind=procedural")

    def test_title_newline_cannot_inject_record(self, gate, patch_set: PatchSetStore):
        change = ScoredChange(
            id="42", score=99, intent="bugfix",
            title="harmless\n666 | injected record",
        )
        patch_set.append([gate.spec_for(change)])
        assert [s.id for s in patch_set.load()] == ["42"]

    def test_title_cannot_override_locator(self, gate, patch_set: PatchSetStore):
        change = ScoredChange(
            id="42", score=99, intent="bugfix",
            diff_locator="https://diffs.test/42.diff",
            title="fix # locator=/tmp/evil.diff",
        )
        patch_set.append([gate.spec_for(change)])
        (spec,) = patch_set.load()
        assert spec.diff_locator == "https://diffs.test/42.diff"

    def test_title_cannot_mark_procedural(self, patch_set: PatchSetStore):
        spec = PatchSpec(id="42", description="x # kind=procedural")
        patch_set.append([spec])
        assert patch_set.get("42").kind == PatchKind.DIFF
        assert " # " not in format_record(spec)

    @pytest.mark.parametrize("score", [84.99, 0, 50])
    def test_below_threshold_never_admitted(self, gate, score):
        change = ScoredChange(id="1", score=score, intent="security")
        assert gate.admit(change, object()).decision == AdmissionDecision.REJECTED

    @pytest.mark.parametrize("intent", ["", "feature", "bugfix-and-feature", "bug fix", "refactor"])
    def test_lookalike_intents_need_review(self, gate, intent):
        change = ScoredChange(id="1", score=100, intent=intent)
        assert gate.admit(change, object()).decision == AdmissionDecision.MANUAL_REVIEW

    def test_retired_id_cannot_be_readmitted(self, gate, patch_set: PatchSetStore):
        patch_set.path.write_text("# ROLLBACK(2026-10-01): 42 | crashed\n", encoding="utf-8")
        change = ScoredChange(id="42", score=99, intent="bugfix")
        verdict = gate.admit(change, object(), existing_ids=patch_set.ids())
        assert verdict.decision == AdmissionDecision.SKIPPED


class TestHandEditedFiles:
    def test_duplicate_ids_rejected(self, patch_set: PatchSetStore):
        patch_set.path.write_text("42 | a\n42 | b\n", encoding="utf-8")
        with pytest.raises(PatchSetError):
            patch_set.load()

    def test_id_with_space_rejected(self, patch_set: PatchSetStore):
        patch_set.path.write_text("4 2 | split id\n", encoding="utf-8")
        with pytest.raises(PatchSetError):
            patch_set.load()

    def test_unknown_risk_tier_rejected(self, patch_set: PatchSetStore):
        patch_set.path.write_text("42 | x  # risk=apocalyptic\n", encoding="utf-8")
        with pytest.raises(PatchSetError, match="risk tier"):
            patch_set.load()

    def test_unknown_marker_is_a_comment(self, patch_set: PatchSetStore):
        patch_set.path.write_text("# DISABLED(2026-01-01): 42 | x\n7 | y\n", encoding="utf-8")
        assert [s.id for s in patch_set.load()] == ["7"]

    def test_retire_rejects_unknown_marker(self, patch_set: PatchSetStore):
        patch_set.path.write_text("42 | x\n", encoding="utf-8")
        with pytest.raises(PatchSetError):
            patch_set.retire(["42"], marker="DELETE")
        assert patch_set.get("42") is not None

    def test_retire_leaves_other_lines_intact(self, patch_set: PatchSetStore):
        text = "# header comment\n\n42 | x\n7 | y  # risk=high\n"
        patch_set.path.write_text(text, encoding="utf-8")
        patch_set.retire(["42"], marker="ROLLBACK")
        lines = patch_set.path.read_text(encoding="utf-8").splitlines()
        assert lines[0] == "# header comment"
        assert lines[2].startswith("# ROLLBACK(")
        assert lines[3] == "7 | y  # risk=high"
