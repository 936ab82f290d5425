"""End-to-end integration tests: the CLI driving a real pipeline.

A local git repository stands in for upstream, with two release tags.
Everything else is real too: clones, the strategy cascade, the artifact
store, the audit log, the pid-file health probe.  Only the build commands
are empty (the fixture project ships its ``dist/`` output) and the service
restart is a no-op.
"""

from __future__ import annotations

import json
import os
import shutil
import sqlite3
from pathlib import Path

import pytest
from typer.testing import CliRunner

from patchkit.cli.app import app
from patchkit.core.audit_log import AuditLog
from patchkit.core.patch_set import PatchSetStore

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

runner = CliRunner()

APP = "const a = 1;\nconst b = 2;\nconst c = 3;\n"
ENTRY = "const retries = 0;\nmodule.exports = { retries };\n"

APP_FIX = """\
diff --git a/src/app.js b/src/app.js
--- a/src/app.js
+++ b/src/app.js
@@ -1,3 +1,3 @@
 const a = 1;
-const b = 2;
+const b = 20;
 const c = 3;
"""


class Deployment:
    """An upstream repo, a patch set, and the env pointing patchkit at them."""

    def __init__(self, root: Path, init_git_repo, run_git) -> None:
        self.root = root
        self.upstream = root / "upstream"
        init_git_repo(
            self.upstream,
            {
                "src/app.js": APP,
                "dist/index.js": ENTRY,
                "package.json": '{"name": "app", "version": "1.0.0"}\n',
            },
            tag="v1.0.0",
        )
        (self.upstream / "dist" / "index.js").write_text(ENTRY + "// 1.1.0\n")
        run_git(self.upstream, "commit", "-qam", "release 1.1.0")
        run_git(self.upstream, "tag", "v1.1.0")

        self.state = root / "state"
        self.conf = root / "patches.conf"
        self.procedures = root / "procedures"
        self.procedures.mkdir()
        (self.procedures / "fix-retries.json").write_text(json.dumps({
            "edits": [{"path": "dist/index.js", "find": "retries = 0", "replace": "retries = 3"}],
        }))
        (self.procedures / "extra.json").write_text(json.dumps({
            "edits": [{"path": "src/app.js", "find": "const c = 3;", "replace": "const c = 30;"}],
        }))
        diff = root / "app-fix.diff"
        diff.write_text(APP_FIX)
        self.conf.write_text(
            "fix-retries | retry failed requests\n"
            f"app-fix | raise b  # locator={diff}\n"
        )

        self.pid_file = root / "app.pid"
        self.alive()
        self.installed = root / "installed.json"
        self.installed.write_text('{"version": "1.0.0"}')

        self.env = {
            "PATCHKIT_STATE_DIR": str(self.state),
            "PATCHKIT_PATCH_CONF": str(self.conf),
            "PATCHKIT_PROCEDURES_DIR": str(self.procedures),
            "PATCHKIT_RETIRED_LOG": str(self.state / "retired-patches.log"),
            "PATCHKIT_UPSTREAM_REPO": "",
            "PATCHKIT_UPSTREAM_CLONE_URL": str(self.upstream),
            "PATCHKIT_INSTALL_COMMAND": "",
            "PATCHKIT_BUILD_COMMAND": "",
            "PATCHKIT_RESTART_COMMAND": "",
            "PATCHKIT_PID_FILE": str(self.pid_file),
            "PATCHKIT_HEALTH_INTERVAL_SECONDS": "0",
            "PATCHKIT_HEALTH_WINDOW_SECONDS": "3",
            "PATCHKIT_HEALTH_GRACE_SECONDS": "0",
            "PATCHKIT_RESTART_GRACE_SECONDS": "0",
            "PATCHKIT_RETRY_BASE_DELAY": "0",
            "PATCHKIT_INSTALLED_VERSION_FILE": str(self.installed),
            "PATCHKIT_WEBHOOK_URL": "",
        }

    def alive(self) -> None:
        self.pid_file.write_text(str(os.getpid()))

    def dead(self) -> None:
        self.pid_file.write_text("0")

    def cli(self, *args: str):
        return runner.invoke(app, list(args), env=self.env)

    @property
    def active_name(self) -> str:
        return os.path.basename(os.readlink(self.state / "store" / "active"))

    @property
    def patch_set(self) -> PatchSetStore:
        return PatchSetStore(self.conf)

    @property
    def audit(self) -> AuditLog:
        return AuditLog(self.state / "audit.db")


@pytest.fixture
def deployment(tmp_path: Path, monkeypatch, init_git_repo, run_git) -> Deployment:
    monkeypatch.chdir(tmp_path)
    return Deployment(tmp_path, init_git_repo, run_git)


class TestFullPipeline:
    def test_stable_upgrade(self, deployment: Deployment):
        result = deployment.cli("upgrade", "v1.0.0")
        assert result.exit_code == 0, result.output

        assert deployment.active_name == "v1.0.0-patched"
        active = deployment.state / "store" / "active"
        assert "retries = 3" in (active / "index.js").read_text()
        assert (deployment.state / ".last-patched-version").read_text().strip() == "v1.0.0"
        report = json.loads((deployment.state / "last-run.json").read_text())
        assert report["health"] == "stable"
        assert report["applied"] == ["fix-retries", "app-fix"]
        assert deployment.audit.verify_all()

    def test_dry_run_changes_nothing(self, deployment: Deployment):
        result = deployment.cli("upgrade", "v1.1.0", "--dry-run")
        assert result.exit_code == 0, result.output
        assert not (deployment.state / "store" / "active").exists()
        assert not (deployment.state / ".last-patched-version").exists()

    def test_critical_upgrade_rolls_back(self, deployment: Deployment):
        assert deployment.cli("upgrade", "v1.0.0").exit_code == 0

        with open(deployment.conf, "a") as fh:
            fh.write("extra | risky tweak\n")
        deployment.dead()
        result = deployment.cli("upgrade", "v1.1.0")
        assert result.exit_code == 1

        assert deployment.active_name == "v1.0.0-patched"
        retired = {s.id: s.retired_reason for s in deployment.patch_set.load() if s.is_retired}
        assert retired == {"extra": "ROLLBACK"}
        report = json.loads((deployment.state / "last-run.json").read_text())
        assert report["health"] == "critical"
        assert report["rollback_scope"] == "full-artifact"
        assert report["previous_good_artifact"] == "v1.0.0-patched"
        assert (deployment.state / ".last-patched-version").read_text().strip() == "v1.0.0"

        notes = sorted((deployment.state / "notifications").rglob("*.json"))
        titles = [json.loads(p.read_text())["title"] for p in notes]
        assert "Full rollback complete" in titles

        deployment.alive()
        versions = deployment.cli("versions")
        assert versions.exit_code == 0
        assert "v1.1.0-patched" in versions.output

        rollback = deployment.cli("rollback", "--to", "v1.1.0-patched")
        assert rollback.exit_code == 0, rollback.output
        assert deployment.active_name == "v1.1.0-patched"

    def test_ensure_patched_is_idempotent(self, deployment: Deployment):
        first = deployment.cli("ensure-patched")
        assert first.exit_code == 0, first.output
        assert deployment.active_name == "v1.0.0-patched"

        second = deployment.cli("ensure-patched")
        assert second.exit_code == 0
        assert "Already patched" in second.output

        deployment.installed.write_text('{"version": "1.1.0"}')
        third = deployment.cli("ensure-patched", "--no-monitor")
        assert third.exit_code == 0, third.output
        assert deployment.active_name == "v1.1.0-patched"

    def test_status_and_audit_export(self, deployment: Deployment):
        assert deployment.cli("upgrade", "v1.0.0").exit_code == 0
        export = deployment.root / "audit.jsonl"

        result = deployment.cli("status", "--export-audit", str(export))
        assert result.exit_code == 0, result.output
        assert "v1.0.0-patched" in result.output

        lines = export.read_text().splitlines()
        assert len(lines) == deployment.audit.count()
        entries = [json.loads(line) for line in lines]
        assert entries[0]["phase"] == "start"
        assert entries[-1]["phase"] == "finish"
        assert {e["run_id"] for e in entries} == set(deployment.audit.get_all_run_ids())

    def test_status_flags_tampered_audit(self, deployment: Deployment):
        assert deployment.cli("upgrade", "v1.0.0").exit_code == 0
        with sqlite3.connect(deployment.state / "audit.db") as conn:
            conn.execute("UPDATE audit_log SET outcome = 'ok' WHERE action = 'health'")
            conn.commit()
        result = deployment.cli("status")
        assert result.exit_code == 1
        assert "failed verification" in result.output
