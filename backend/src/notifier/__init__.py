from backend.src.notifier.dispatcher import NotificationDispatcher
from backend.src.notifier.email_notifier import EmailNotifier

__all__ = [
    "EmailNotifier",
    "NotificationDispatcher",
]
