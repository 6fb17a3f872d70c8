"""
app/notifications/channels.py

Delivery channels for scraper alerts.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from app.failure_codes import Severity
from app.scraping.logging_utils import log_event

logger = logging.getLogger(__name__)

_SEVERITY_EMOJI = {
    Severity.WARNING: ":information_source:",
    Severity.ERROR: ":warning:",
    Severity.CRITICAL: ":rotating_light:",
}


class NotificationDeliveryError(RuntimeError):
    """
    Raised by a channel that could not deliver an alert.
    """


@dataclass(frozen=True)
class Alert:
    """
    One alert ready for delivery.
    """

    key: str
    title: str
    severity: str
    message: str
    created_at: datetime
    failure_type: str | None = None
    source_id: str | None = None
    source_name: str | None = None
    source_url: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    suppressed_count: int = 0

    def labelled_details(self) -> list[tuple[str, Any]]:
        pairs: list[tuple[str, Any]] = []
        if self.failure_type:
            pairs.append(("Type", self.failure_type))
        pairs.append(("Severity", self.severity))
        for name, value in self.details.items():
            if value is not None:
                pairs.append((name.replace("_", " ").capitalize(), value))
        if self.suppressed_count:
            pairs.append(("Suppressed duplicates since last alert", self.suppressed_count))
        return pairs


class NotificationChannel(ABC):
    name: str = "channel"

    @abstractmethod
    def send(self, alert: Alert) -> None:
        """Deliver ``alert`` or raise."""


class LoggingChannel(NotificationChannel):
    name = "log"

    def send(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity == Severity.CRITICAL else logging.WARNING
        log_event(
            logger,
            level,
            "scraper_alert",
            key=alert.key,
            title=alert.title,
            severity=alert.severity,
            failure_type=alert.failure_type,
            source_id=alert.source_id,
            message=alert.message,
            errors=alert.errors[:5],
            suppressed_count=alert.suppressed_count,
            details=alert.details,
        )


class WebhookChannel(NotificationChannel):
    """
    Posts Slack-compatible ``mrkdwn`` blocks to an incoming webhook.
    """

    name = "webhook"

    def __init__(
        self,
        *,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        emoji = _SEVERITY_EMOJI.get(alert.severity, "")
        lines = [f"{emoji} *{alert.title}*".strip()]
        lines.extend(f"*{label}:* {value}" for label, value in alert.labelled_details())
        lines.append(f"*Message:* {alert.message}")
        if alert.source_url:
            lines.append(f"*Source URL:* <{alert.source_url}|View Site>")
        if alert.errors:
            lines.append("*Errors:*\n```" + "\n".join(alert.errors[:10]) + "```")
        return {
            "text": alert.title,
            "blocks": [
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": "\n".join(lines)},
                }
            ],
        }

    def send(self, alert: Alert) -> None:
        try:
            response = self._session.post(
                self._webhook_url,
                json=self.build_payload(alert),
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise NotificationDeliveryError(f"Webhook request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotificationDeliveryError(
                f"Webhook returned status {response.status_code}: {response.text[:200]}"
            )
