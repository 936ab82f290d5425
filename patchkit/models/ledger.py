"""Audit log entry model (append-only, hash-chained).

Every externally visible pipeline action (build, activation, rollback,
retirement, admission) produces exactly one entry.  Entries are chained
per run: each carries the SHA-256 of the previous entry in the same run.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditEntry(BaseModel):
    """A single sealed entry in the audit log."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    action: str  # "upgrade", "rollback", "retire", "admit", ...
    phase: str = ""  # "checkout", "cascade", "build", "activate", "health", ...
    outcome: str = ""  # "ok", "failed", "stable", "unstable", "critical", ...
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
