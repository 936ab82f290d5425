"""Discord-compatible webhook sink.

Posts one embed per notification.  Delivery is best effort: a failed
POST raises so the dispatcher can log it, but it never blocks the
pipeline.
"""

from __future__ import annotations

import logging
import socket
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from patchkit.models.notifications import Notification
from patchkit.routing.sinks._formatting import footer_text, severity_color, truncate_body

logger = logging.getLogger(__name__)


class WebhookEmbed(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    color: int
    footer: dict[str, str]
    timestamp: str


class WebhookPayload(BaseModel):
    """A Discord ``execute webhook`` payload with a single embed."""

    model_config = ConfigDict(frozen=True)

    embeds: list[WebhookEmbed]


class DiscordWebhookSink:
    """Delivers notifications to a webhook URL.

    Parameters
    ----------
    webhook_url:
        Full webhook URL.  Stored, never logged.
    client:
        Optional ``httpx.Client``; a short-lived one is used otherwise.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        host: str | None = None,
    ) -> None:
        if not webhook_url:
            raise ValueError("webhook_url is required")
        self._url = webhook_url
        self._client = client
        self._timeout = timeout
        self._host = socket.gethostname() if host is None else host

    @property
    def sink_name(self) -> str:
        return "discord"

    def build_payload(self, notification: Notification) -> WebhookPayload:
        embed = WebhookEmbed(
            title=notification.title,
            description=truncate_body(notification.body),
            color=severity_color(notification),
            footer={"text": footer_text(notification, self._host)},
            timestamp=notification.timestamp_utc.isoformat(),
        )
        return WebhookPayload(embeds=[embed])

    def accept(self, notification: Notification) -> None:
        payload: dict[str, Any] = self.build_payload(notification).model_dump()
        if self._client is not None:
            response = self._client.post(self._url, json=payload, timeout=self._timeout)
        else:
            response = httpx.post(self._url, json=payload, timeout=self._timeout)
        response.raise_for_status()
        logger.debug("Webhook delivered %s", notification.notification_id)
