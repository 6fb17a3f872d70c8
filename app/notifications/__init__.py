"""
app/notifications package marker.
"""

from app.notifications.channels import (
    Alert,
    LoggingChannel,
    NotificationChannel,
    NotificationDeliveryError,
    WebhookChannel,
)
from app.notifications.dedup import AlertDeduplicator, build_alert_key
from app.notifications.gateway import (
    NotificationGateway,
    build_notification_gateway,
    get_notification_gateway,
)

__all__ = [
    "Alert",
    "AlertDeduplicator",
    "LoggingChannel",
    "NotificationChannel",
    "NotificationDeliveryError",
    "NotificationGateway",
    "WebhookChannel",
    "build_alert_key",
    "build_notification_gateway",
    "get_notification_gateway",
]
