from .dispatcher import (
    LoggingNotificationDispatcher,
    NotificationAction,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
