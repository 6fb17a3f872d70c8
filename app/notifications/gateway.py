"""
app/notifications/gateway.py

Deduplicated fan-out of alerts to every configured channel.

Delivery never raises: a failing channel is logged and the remaining
channels are still attempted.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from functools import lru_cache

from app.config import NotificationSettings, get_notification_settings
from app.notifications.channels import Alert, LoggingChannel, NotificationChannel, WebhookChannel
from app.notifications.dedup import AlertDeduplicator
from app.scraping.logging_utils import log_event

logger = logging.getLogger(__name__)


class NotificationGateway:
    def __init__(
        self,
        *,
        channels: list[NotificationChannel],
        deduplicator: AlertDeduplicator,
    ) -> None:
        self._channels = list(channels)
        self._deduplicator = deduplicator

    @property
    def deduplicator(self) -> AlertDeduplicator:
        return self._deduplicator

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def notify(self, alert: Alert) -> bool:
        """
        Deliver ``alert`` unless an identical key was sent within the cooldown.

        Returns True when the alert went out to at least one channel.
        """

        decision = self._deduplicator.admit(alert.key)
        if not decision.send:
            log_event(
                logger,
                logging.INFO,
                "alert_suppressed",
                key=alert.key,
                suppressed_count=decision.suppressed,
            )
            return False

        outgoing = replace(alert, suppressed_count=decision.suppressed)
        delivered = 0
        for channel in self._channels:
            try:
                channel.send(outgoing)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger,
                    logging.ERROR,
                    "alert_delivery_failed",
                    key=alert.key,
                    channel=channel.name,
                    error=f"{type(exc).__name__}: {exc}",
                )
        log_event(
            logger,
            logging.INFO,
            "alert_delivered",
            key=alert.key,
            channels=delivered,
            severity=alert.severity,
        )
        return delivered > 0

    def sweep(self) -> int:
        return self._deduplicator.sweep()


def build_notification_gateway(settings: NotificationSettings | None = None) -> NotificationGateway:
    resolved = settings or get_notification_settings()
    channels: list[NotificationChannel] = [LoggingChannel()]
    if resolved.webhook_url:
        channels.append(
            WebhookChannel(
                webhook_url=resolved.webhook_url,
                timeout_seconds=resolved.webhook_timeout_seconds,
            )
        )
    else:
        logger.info("Webhook alert channel disabled (PARSER_FAILURE_WEBHOOK_URL not set)")
    return NotificationGateway(
        channels=channels,
        deduplicator=AlertDeduplicator(cooldown_seconds=resolved.cooldown_seconds),
    )


@lru_cache(maxsize=1)
def get_notification_gateway() -> NotificationGateway:
    """
    Process-wide gateway; its dedup cache lives as long as the process.
    """

    return build_notification_gateway()
