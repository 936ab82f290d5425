"""Shared test fixtures for patchkit."""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from patchkit.config import PatchkitSettings
from patchkit.core.artifact_store import VersionedArtifactStore
from patchkit.core.audit_log import AuditLog
from patchkit.core.patch_set import PatchSetStore
from patchkit.core.service import ServiceControlError
from patchkit.core.working_tree import WorkingTree
from patchkit.models.admission import ScoredChange
from patchkit.models.notifications import Notification
from patchkit.models.run import PipelineRun, RunKind
from patchkit.routing.dispatcher import NotificationDispatcher

# A diff that applies cleanly to SAMPLE_APP.
APP_DIFF = """\
diff --git a/src/app.js b/src/app.js
--- a/src/app.js
+++ b/src/app.js
@@ -1,3 +1,3 @@
 const a = 1;
-const b = 2;
+const b = 20;
 const c = 3;
"""

SAMPLE_APP = "const a = 1;\nconst b = 2;\nconst c = 3;\n"
SAMPLE_ENTRY = "const retries = 0;\nmodule.exports = { retries };\n"


def git(root: Path, *args: str) -> str:
    r = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@localhost", *args],
        cwd=root,
        capture_output=True,
        text=True,
        check=True,
    )
    return r.stdout


def init_repo(root: Path, files: dict[str, str], *, tag: str | None = None) -> WorkingTree:
    """Create a git repo at *root* holding *files* in one commit."""
    root.mkdir(parents=True, exist_ok=True)
    git(root, "init", "-q")
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    git(root, "add", "-A")
    git(root, "commit", "-qm", "initial")
    if tag:
        git(root, "tag", tag)
    return WorkingTree(root)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingSink:
    """Collects every notification it receives."""

    def __init__(self, name: str = "recording") -> None:
        self._name = name
        self.received: list[Notification] = []

    @property
    def sink_name(self) -> str:
        return self._name

    def accept(self, notification: Notification) -> None:
        self.received.append(notification)

    def titles(self) -> list[str]:
        return [n.title for n in self.received]


class ScriptedProbe:
    """Returns scripted liveness samples, then ``default`` once exhausted."""

    def __init__(self, samples: list[bool] | None = None, *, default: bool = True) -> None:
        self.samples = list(samples or [])
        self.default = default
        self.calls = 0

    def is_alive(self) -> bool:
        self.calls += 1
        if self.samples:
            return self.samples.pop(0)
        return self.default


class FakeService:
    def __init__(self, *, fail: bool = False) -> None:
        self.restarts = 0
        self.fail = fail

    def restart(self) -> None:
        if self.fail:
            raise ServiceControlError("restart refused")
        self.restarts += 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def audit(tmp_dir: Path) -> AuditLog:
    """A fresh AuditLog backed by a temp SQLite database."""
    return AuditLog(tmp_dir / "audit.db")


@pytest.fixture
def store(tmp_dir: Path) -> VersionedArtifactStore:
    return VersionedArtifactStore(tmp_dir / "store")


@pytest.fixture
def patch_set(tmp_dir: Path) -> PatchSetStore:
    return PatchSetStore(tmp_dir / "patches.conf", retired_log=tmp_dir / "retired.log")


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(recording_sink: RecordingSink) -> NotificationDispatcher:
    d = NotificationDispatcher()
    d.register_sink(recording_sink)
    return d


@pytest.fixture
def run() -> PipelineRun:
    return PipelineRun(run_id="pk-test-run-001", kind=RunKind.UPGRADE, target_tag="v2.0.0")


@pytest.fixture
def make_tree(tmp_dir: Path) -> Callable[..., WorkingTree]:
    """Factory fixture: a committed git repo with the given files."""
    counter = {"n": 0}

    def _factory(files: dict[str, str] | None = None, **kwargs: Any) -> WorkingTree:
        counter["n"] += 1
        root = tmp_dir / f"repo-{counter['n']}"
        return init_repo(root, files or {"src/app.js": SAMPLE_APP}, **kwargs)

    return _factory


@pytest.fixture
def fake_checkout() -> Callable[[str, Path], WorkingTree]:
    """``(tag, dest) -> WorkingTree`` producing a small prebuilt project."""

    def _checkout(tag: str, dest: Path) -> WorkingTree:
        return init_repo(
            dest,
            {
                "src/app.js": SAMPLE_APP,
                "dist/index.js": SAMPLE_ENTRY,
                "VERSION": tag + "\n",
            },
        )

    return _checkout


@pytest.fixture
def app_diff(tmp_dir: Path) -> Path:
    path = tmp_dir / "diffs" / "app.diff"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(APP_DIFF, encoding="utf-8")
    return path


@pytest.fixture
def pk_settings(tmp_dir: Path) -> PatchkitSettings:
    """Settings pointing every path into the temp dir, with instant health checks."""
    procedures = tmp_dir / "procedures"
    procedures.mkdir(exist_ok=True)
    return PatchkitSettings(
        state_dir=tmp_dir / "state",
        patch_conf=tmp_dir / "patches.conf",
        procedures_dir=procedures,
        retired_log=tmp_dir / "state" / "retired-patches.log",
        upstream_repo="",
        upstream_clone_url="",
        install_command="",
        build_command="",
        entry_artifact="dist/index.js",
        output_dir="dist",
        restart_command="",
        process_name="app",
        health_endpoint="",
        health_interval_seconds=0,
        health_window_seconds=3,
        health_grace_seconds=0,
        restart_grace_seconds=0,
        retry_base_delay=0,
        webhook_url="",
    )


@pytest.fixture
def make_scored_change() -> Callable[..., ScoredChange]:
    """Factory fixture: build a ScoredChange with sensible defaults."""

    def _factory(
        id: str = "4242",
        score: float = 90,
        intent: str = "bugfix",
        **overrides: Any,
    ) -> ScoredChange:
        defaults: dict[str, Any] = {
            "id": id,
            "score": score,
            "intent": intent,
            "title": f"change {id}",
        }
        defaults.update(overrides)
        return ScoredChange(**defaults)

    return _factory


@pytest.fixture
def scripted_probe() -> type[ScriptedProbe]:
    return ScriptedProbe


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def init_git_repo() -> Callable[..., WorkingTree]:
    """The ``init_repo`` helper, for repos at a chosen path."""
    return init_repo


@pytest.fixture
def run_git() -> Callable[..., str]:
    return git
