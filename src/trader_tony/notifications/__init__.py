"""
Notification System

Priority-based email notifications for position events:
- CRITICAL (action retries exhausted, failed entries) sent immediately
- WARNING and INFO collected into periodic batch summaries
- SendGrid delivery with a mock mode for local runs and tests

Usage:
    from trader_tony.notifications import NotificationSystem, SendGridNotificationService

    sendgrid = SendGridNotificationService(mock_mode=True, to_emails=["ops@example.com"])
    notifications = NotificationSystem(event_bus=event_bus, sendgrid_service=sendgrid)
    await notifications.start()
"""

from .priority import NotificationPriority, PriorityConfig, PriorityHandler
from .sendgrid_client import MockSendGridClient, SendGridNotificationService
from .service import NotificationSystem

__all__ = [
    "NotificationSystem",
    "SendGridNotificationService",
    "MockSendGridClient",
    "PriorityHandler",
    "NotificationPriority",
    "PriorityConfig",
]
