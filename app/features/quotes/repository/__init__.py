from .notification_repository import NotificationSink, PostgresNotificationRepository
from .quote_repository import PostgresQuoteRepository, QuoteStore

__all__ = [
    "NotificationSink",
    "PostgresNotificationRepository",
    "PostgresQuoteRepository",
    "QuoteStore",
]
