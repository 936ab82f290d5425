"""Operator notification model."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    CRITICAL = "critical"


class Notification(BaseModel):
    """A single operator-facing message, delivered to every sink."""

    model_config = ConfigDict(frozen=True)

    notification_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str
    body: str = ""
    severity: Severity = Severity.INFO
    run_id: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
