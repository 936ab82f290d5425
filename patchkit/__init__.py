"""patchkit: keep a patched build of an upstream project deployed and reversible.

  - Ordered patch set with procedural and diff patches
  - Strategy cascade: procedural repairs, exact, path-excluding and three-way applies
  - Conflict classification against the upstream delta
  - Sandboxed builds published to an append-only artifact store
  - Atomic activation, retention pruning, and rollback
  - Post-deploy health supervision with tiered remediation
  - Nightly admission gate for externally scored changes
  - Hash-chained SQLite audit log and pluggable notifications
"""

__version__ = "0.1.0"
__description__ = "Patch pipeline with sandboxed builds, health supervision, and rollback"

from patchkit.core.pipeline import UpgradePipeline
from patchkit.monitor.projection import StatusProjection

__all__ = ["UpgradePipeline", "StatusProjection", "__version__"]
