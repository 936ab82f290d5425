"""Runtime configuration: env-driven, .env aware.

Centralized settings using pydantic-settings.  Reads from a ``.env`` file
and ``PATCHKIT_*`` environment variables.  Every component takes the
values it needs as constructor arguments; only the CLI reads ``settings``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_STABILITY_INTENTS: tuple[str, ...] = (
    "bugfix",
    "fix",
    "crash",
    "crash-prevention",
    "security",
    "hardening",
    "reliability",
    "resilience",
    "recovery",
    "guard",
    "defense",
    "sanitize",
    "prevent",
)


class PatchkitSettings(BaseSettings):
    """Pipeline configuration with environment variable overrides.

    All settings can be overridden via PATCHKIT_* environment variables
    or a .env file in the working directory.

    Examples
    --------
    Override via environment::

        export PATCHKIT_UPSTREAM_REPO=acme/widget
        export PATCHKIT_LOG_LEVEL=DEBUG
        export PATCHKIT_STATE_DIR=/var/lib/patchkit

    Or via .env file::

        PATCHKIT_HEALTH_ENDPOINT=http://127.0.0.1:28643/
        PATCHKIT_WEBHOOK_URL=https://discord.com/api/webhooks/...
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PATCHKIT_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"

    # State locations
    state_dir: Path = Path(".patchkit")
    patch_conf: Path = Path("patches.conf")
    procedures_dir: Path = Path("procedures")
    retired_log: Path = Path(".patchkit/retired-patches.log")

    # Upstream source
    upstream_repo: str = ""  # "owner/name"
    upstream_clone_url: str = ""  # derived from upstream_repo when empty
    github_api_url: str = "https://api.github.com"
    github_token: str = ""
    compare_file_cap: int = 300
    # History fetched for build checkouts; three-way applies need the preimage
    # blobs of older diffs.  0 or None clones full history.
    clone_depth: int | None = 200

    # Build
    install_command: str = "pnpm install --frozen-lockfile"
    build_command: str = "pnpm build"
    entry_artifact: str = "dist/index.js"
    output_dir: str = "dist"
    build_timeout_seconds: int = 1800

    # Deployment
    retention: int = 3
    restart_command: str = ""
    retire_merged: bool = True
    installed_version_file: Path | None = None  # package.json of the deployed install
    tag_prefix: str = "v"

    # Health
    health_endpoint: str = ""
    process_name: str = ""
    pid_file: Path | None = None
    health_interval_seconds: float = 30.0
    health_window_seconds: float = 300.0
    health_grace_seconds: float = 5.0
    critical_threshold: int = 3
    restart_grace_seconds: float = 5.0

    # Admission
    admission_min_score: float = 85.0
    admission_notify_score: float = 67.0
    stability_intents: list[str] = list(DEFAULT_STABILITY_INTENTS)

    # Retry
    retry_attempts: int = 3
    retry_base_delay: float = 15.0

    # Notifications
    webhook_url: str = ""
    events_dir: Path | None = None

    @property
    def artifact_root(self) -> Path:
        """Directory holding published artifacts and the active pointer."""
        return self.state_dir / "store"

    @property
    def audit_db_path(self) -> Path:
        return self.state_dir / "audit.db"

    @property
    def version_marker_path(self) -> Path:
        return self.state_dir / ".last-patched-version"

    @property
    def last_run_path(self) -> Path:
        return self.state_dir / "last-run.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "patchkit.lock"

    @property
    def diff_cache_dir(self) -> Path:
        return self.state_dir / "diffs"

    @property
    def stable_snapshot_path(self) -> Path:
        """Patch ids of the last build that finished monitoring STABLE."""
        return self.state_dir / "stable-patches.json"

    @property
    def monitor_log_path(self) -> Path:
        return self.state_dir / "monitor.log"

    @property
    def notifications_dir(self) -> Path:
        return self.events_dir or self.state_dir / "notifications"

    @property
    def clone_url(self) -> str:
        """Git URL of the upstream repository."""
        if self.upstream_clone_url:
            return self.upstream_clone_url
        if not self.upstream_repo:
            return ""
        return f"https://github.com/{self.upstream_repo}.git"


# Module-level singleton, import as `from patchkit.config import settings`
settings = PatchkitSettings()
