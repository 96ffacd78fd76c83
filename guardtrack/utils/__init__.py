"""
Utility modules for the GuardTrack realtime backend

- notifications: In-app notification persistence plus push (FCM) and email delivery
"""

from .notifications import (
    EmailService,
    PushNotificationService,
    NotificationManager
)

__all__ = [
    "EmailService",
    "PushNotificationService",
    "NotificationManager"
]
