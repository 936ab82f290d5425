"""Shared formatting helpers for notification sinks."""

from __future__ import annotations

from patchkit.models.notifications import Notification, Severity

# Discord embed colours (decimal RGB).
SEVERITY_COLORS: dict[Severity, int] = {
    Severity.SUCCESS: 65280,  # green
    Severity.CRITICAL: 16711680,  # red
    Severity.WARNING: 16776960,  # yellow
    Severity.INFO: 3447003,  # blue
}

# Discord caps embed descriptions at 4096 characters.
MAX_BODY = 4000


def severity_color(notification: Notification) -> int:
    return SEVERITY_COLORS.get(notification.severity, SEVERITY_COLORS[Severity.INFO])


def truncate_body(text: str, limit: int = MAX_BODY) -> str:
    """Trim *text* to *limit* characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def footer_text(notification: Notification, host: str = "") -> str:
    """``patchkit | <run id> | <host>`` with empty parts left out."""
    parts = ["patchkit"]
    if notification.run_id:
        parts.append(notification.run_id)
    if host:
        parts.append(host)
    return " | ".join(parts)
