"""Unit tests for PatchSetStore: parsing, appending, and retirement markers."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from patchkit.core.patch_set import (
    BUILD_FAIL,
    MERGED,
    ROLLBACK,
    PatchSetError,
    PatchSetStore,
    format_record,
)
from patchkit.models.patches import PatchKind, PatchOrigin, PatchSpec, RiskTier

SAMPLE = """\
# curated patches
12345 | fix reconnect loop  # risk=high files=src/net.ts,src/io.ts
local-logger | bind logger methods
# RETIRED(2026-01-02): 11111 | merged upstream
23456 | guard: null config #1 in the list
"""


@pytest.fixture
def conf(tmp_path: Path) -> Path:
    path = tmp_path / "patches.conf"
    path.write_text(SAMPLE, encoding="utf-8")
    return path


class TestLoad:
    def test_missing_file_reads_as_empty(self, tmp_path: Path):
        assert PatchSetStore(tmp_path / "nope.conf").load() == []

    def test_records_in_file_order(self, conf: Path):
        specs = PatchSetStore(conf).load()
        assert [s.id for s in specs] == ["12345", "local-logger", "11111", "23456"]

    def test_annotations_parsed(self, conf: Path):
        spec = PatchSetStore(conf).get("12345")
        assert spec is not None
        assert spec.description == "fix reconnect loop"
        assert spec.risk_tier == RiskTier.HIGH
        assert spec.touched_files == frozenset({"src/net.ts", "src/io.ts"})
        assert spec.origin == PatchOrigin.UPSTREAM

    def test_hash_in_description_is_not_an_annotation(self, conf: Path):
        spec = PatchSetStore(conf).get("23456")
        assert spec is not None
        assert spec.description == "guard: null config #1 in the list"

    def test_retired_record_parses_as_retired(self, conf: Path):
        specs = {s.id: s for s in PatchSetStore(conf).load()}
        retired = specs["11111"]
        assert retired.kind == PatchKind.RETIRED
        assert retired.is_retired
        assert retired.retired_reason == "RETIRED"

    def test_active_excludes_retired(self, conf: Path):
        assert [s.id for s in PatchSetStore(conf).active()] == ["12345", "local-logger", "23456"]

    def test_ids_include_retired(self, conf: Path):
        assert "11111" in PatchSetStore(conf).ids()

    def test_local_origin(self, conf: Path):
        spec = PatchSetStore(conf).get("local-logger")
        assert spec is not None
        assert spec.origin == PatchOrigin.LOCAL

    def test_procedure_presence_makes_entry_procedural(self, conf: Path):
        store = PatchSetStore(conf, is_procedural=lambda pid: pid == "local-logger")
        assert store.get("local-logger").kind == PatchKind.PROCEDURAL
        assert store.get("12345").kind == PatchKind.DIFF

    def test_duplicate_live_id_rejected(self, tmp_path: Path):
        path = tmp_path / "dup.conf"
        path.write_text("a | one\na | two\n", encoding="utf-8")
        with pytest.raises(PatchSetError, match="duplicate"):
            PatchSetStore(path).load()

    def test_unknown_risk_rejected(self, tmp_path: Path):
        path = tmp_path / "risk.conf"
        path.write_text("a | one  # risk=extreme\n", encoding="utf-8")
        with pytest.raises(PatchSetError, match="risk"):
            PatchSetStore(path).load()


class TestAppend:
    def test_append_writes_header_and_records(self, patch_set: PatchSetStore):
        written = patch_set.append(
            [
                PatchSpec(id="900", description="fix: crash", auto_added=True,
                          added_on=date(2026, 10, 17)),
                PatchSpec(id="901", description="guard: nan"),
            ],
            header="Auto-added: 2026-10-17",
        )
        assert written == ["900", "901"]
        text = patch_set.path.read_text(encoding="utf-8")
        assert "# Auto-added: 2026-10-17" in text
        spec = patch_set.get("900")
        assert spec.auto_added
        assert spec.added_on == date(2026, 10, 17)

    def test_append_skips_existing_ids(self, conf: Path):
        store = PatchSetStore(conf)
        assert store.append([PatchSpec(id="12345"), PatchSpec(id="11111")]) == []
        assert conf.read_text(encoding="utf-8") == SAMPLE

    def test_format_record_round_trips(self, patch_set: PatchSetStore):
        spec = PatchSpec(
            id="777",
            description="sanitize input",
            risk_tier=RiskTier.MEDIUM,
            touched_files=frozenset({"b.ts", "a.ts"}),
            diff_locator="/tmp/777.diff",
        )
        assert format_record(spec) == (
            "777 | sanitize input  # risk=medium files=a.ts,b.ts locator=/tmp/777.diff"
        )
        patch_set.append([spec])
        loaded = patch_set.get("777")
        assert loaded.touched_files == spec.touched_files
        assert loaded.diff_locator == spec.diff_locator
        assert loaded.risk_tier == RiskTier.MEDIUM


class TestRetire:
    def test_retire_comments_out_with_marker(self, conf: Path, tmp_path: Path):
        log = tmp_path / "retired.log"
        store = PatchSetStore(conf, retired_log=log)
        retired = store.retire(
            ["local-logger"], marker=ROLLBACK, reason="crash loop", on=date(2026, 10, 18)
        )
        assert retired == ["local-logger"]
        assert "# ROLLBACK(2026-10-18): local-logger | bind logger methods" in conf.read_text()
        spec = {s.id: s for s in store.load()}["local-logger"]
        assert spec.is_retired
        assert spec.retired_reason == ROLLBACK
        assert "ROLLBACK local-logger crash loop" in log.read_text()

    def test_retire_is_idempotent(self, conf: Path):
        store = PatchSetStore(conf)
        assert store.retire(["12345"], marker=MERGED) == ["12345"]
        assert store.retire(["12345"], marker=MERGED) == []

    def test_unknown_ids_ignored(self, conf: Path):
        assert PatchSetStore(conf).retire(["does-not-exist"]) == []

    def test_unknown_marker_rejected(self, conf: Path):
        with pytest.raises(PatchSetError):
            PatchSetStore(conf).retire(["12345"], marker="DELETED")

    def test_build_fail_marker_parses_back(self, conf: Path):
        store = PatchSetStore(conf)
        store.retire(["23456"], marker=BUILD_FAIL)
        assert store.get("23456") is None
        assert {s.id: s for s in store.load()}["23456"].retired_reason == BUILD_FAIL

    def test_retired_id_cannot_be_appended_again(self, conf: Path):
        store = PatchSetStore(conf)
        store.retire(["12345"])
        assert store.append([PatchSpec(id="12345")]) == []
