"""Error taxonomy for the patch pipeline.

Failures below the pipeline level (one patch, one fetch) are absorbed and
recorded by the component that hit them.  The rest abort the current run
and propagate to the CLI, which maps them to a non-zero exit code.
"""

from __future__ import annotations

from typing import Any


class PatchkitError(RuntimeError):
    """Base class for all pipeline errors."""


class ConfigError(PatchkitError):
    """Raised when required configuration is missing or inconsistent."""


class TransientFetchError(PatchkitError):
    """A network or remote-API fetch failed in a way worth retrying."""


class DeltaTooLarge(PatchkitError):
    """The compare API truncated its file list at the configured cap."""

    def __init__(self, old_tag: str, new_tag: str, count: int) -> None:
        super().__init__(
            f"Compare {old_tag}...{new_tag} returned {count} files (capped); "
            "falling back to a tree diff is required."
        )
        self.count = count


class PatchApplyFailure(PatchkitError):
    """Every strategy failed for a patch.  Recorded, never fatal to a build."""

    def __init__(self, patch_id: str, reason: str) -> None:
        super().__init__(f"Patch {patch_id} could not be applied: {reason}")
        self.patch_id = patch_id
        self.reason = reason


class BuildFailure(PatchkitError):
    """Checkout, install, compile, or entry-artifact verification failed."""

    def __init__(self, phase: str, message: str, *, cascade: Any = None) -> None:
        super().__init__(f"Build failed during {phase}: {message}")
        self.phase = phase
        self.cascade = cascade  # CascadeResult when the cascade had run


class ActivationFailure(PatchkitError):
    """The active-pointer swap did not complete."""


class HealthCheckFailure(PatchkitError):
    """Monitoring ended UNSTABLE or CRITICAL."""

    def __init__(self, state: str, crash_count: int) -> None:
        super().__init__(f"Health check ended {state} after {crash_count} crash(es)")
        self.state = state
        self.crash_count = crash_count


class RollbackFailure(PatchkitError):
    """A rollback could not be completed.  Always escalated to the operator."""


class PipelineBusyError(PatchkitError):
    """Another run already holds the pipeline lock."""
