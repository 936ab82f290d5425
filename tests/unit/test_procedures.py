"""Unit tests for repair procedures and the procedure registry."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from patchkit.core.procedures import (
    ProcedureError,
    ProcedureRegistry,
    RepairProcedure,
    ScriptProcedure,
    TextEdit,
    TextSubstitution,
)

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")


@pytest.fixture
def root(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.js").write_text("const retries = 0;\n", encoding="utf-8")
    (tmp_path / "src" / "b.js").write_text("let x = null;\n", encoding="utf-8")
    return tmp_path


class TestTextSubstitution:
    def test_apply_then_noop(self, root: Path):
        proc = TextSubstitution(
            "fix", [TextEdit(path="src/a.js", find="retries = 0", replace="retries = 3")]
        )
        assert not proc.is_applied(root)
        assert proc.apply(root) is True
        assert "retries = 3" in (root / "src" / "a.js").read_text()
        assert proc.is_applied(root)
        assert proc.apply(root) is False

    def test_missing_anchor_writes_nothing(self, root: Path):
        proc = TextSubstitution(
            "fix",
            [
                TextEdit(path="src/a.js", find="retries = 0", replace="retries = 3"),
                TextEdit(path="src/b.js", find="not there", replace="x"),
            ],
        )
        with pytest.raises(ProcedureError, match="anchor"):
            proc.apply(root)
        assert (root / "src" / "a.js").read_text() == "const retries = 0;\n"

    def test_missing_target_file(self, root: Path):
        proc = TextSubstitution("fix", [TextEdit(path="src/zzz.js", find="a", replace="b")])
        assert not proc.can_apply(root)
        with pytest.raises(ProcedureError, match="missing"):
            proc.apply(root)

    def test_can_apply_when_partly_done(self, root: Path):
        (root / "src" / "a.js").write_text("const retries = 3;\n")
        proc = TextSubstitution(
            "fix",
            [
                TextEdit(path="src/a.js", find="retries = 0", replace="retries = 3"),
                TextEdit(path="src/b.js", find="null", replace="undefined"),
            ],
        )
        assert proc.can_apply(root)
        assert proc.apply(root) is True
        assert proc.is_applied(root)

    def test_no_edits_rejected(self):
        with pytest.raises(ValueError):
            TextSubstitution("empty", [])

    def test_satisfies_protocol(self):
        proc = TextSubstitution("p", [TextEdit(path="a", find="x", replace="y")])
        assert isinstance(proc, RepairProcedure)


@requires_bash
class TestScriptProcedure:
    def _script(self, tmp_path: Path, body: str) -> Path:
        path = tmp_path / "17435-debounce.sh"
        path.write_text("#!/usr/bin/env bash\nset -e\n" + body, encoding="utf-8")
        return path

    def test_success_modifies(self, root: Path, tmp_path: Path):
        script = self._script(tmp_path, 'echo "patched" >> "$1/src/a.js"\n')
        assert ScriptProcedure("17435", script).apply(root) is True
        assert "patched" in (root / "src" / "a.js").read_text()

    def test_skip_output_is_noop(self, root: Path, tmp_path: Path):
        script = self._script(tmp_path, 'echo "SKIP: already applied"\n')
        assert ScriptProcedure("17435", script).apply(root) is False

    def test_nonzero_exit_raises(self, root: Path, tmp_path: Path):
        script = self._script(tmp_path, 'echo "anchor missing" >&2\nexit 3\n')
        with pytest.raises(ProcedureError, match="exited 3"):
            ScriptProcedure("17435", script).apply(root)


class TestProcedureRegistry:
    def test_discovers_json_and_scripts(self, tmp_path: Path):
        (tmp_path / "fix-retries.json").write_text(
            json.dumps({"edits": [{"path": "a", "find": "x", "replace": "y"}]})
        )
        (tmp_path / "17435-debounce-retry.sh").write_text("#!/bin/sh\n")
        registry = ProcedureRegistry(tmp_path)
        assert registry.has("fix-retries")
        assert registry.has("17435")
        assert isinstance(registry.get("17435"), ScriptProcedure)
        assert not registry.has("17436")

    def test_invalid_json_raises(self, tmp_path: Path):
        (tmp_path / "broken.json").write_text("{not json")
        with pytest.raises(ProcedureError):
            ProcedureRegistry(tmp_path)

    def test_missing_dir_is_empty(self, tmp_path: Path):
        registry = ProcedureRegistry(tmp_path / "missing")
        assert registry.ids == []
        assert registry.get("x") is None

    def test_explicit_registration(self):
        registry = ProcedureRegistry()
        registry.register(TextSubstitution("p1", [TextEdit(path="a", find="x", replace="y")]))
        assert registry.ids == ["p1"]
