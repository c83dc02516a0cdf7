"""
Tools Package
Clock, message and notification utilities for MedNudge
"""

from .clock import (
    Clock,
    utcnow,
    resolve_local_time,
    local_today,
    to_local,
)

from .notification_service import (
    NotificationTransport,
    SpeechSynthesizer,
    ClinicNotifier,
    HttpNotificationTransport,
    HttpSpeechSynthesizer,
    WebhookClinicNotifier,
    NotificationChannel,
    NotificationResult,
)


__all__ = [
    # Clock
    "Clock",
    "utcnow",
    "resolve_local_time",
    "local_today",
    "to_local",
    # Notifications
    "NotificationTransport",
    "SpeechSynthesizer",
    "ClinicNotifier",
    "HttpNotificationTransport",
    "HttpSpeechSynthesizer",
    "WebhookClinicNotifier",
    "NotificationChannel",
    "NotificationResult",
]
