from .errors import (
    DeliveryFailure,
    InvalidTransition,
    PersistenceFailure,
    QuoteNotFound,
    QuoteLifecycleError,
    RevisionConflict,
    TemplateFailure,
)
from .models import (
    Notification,
    NotificationEvent,
    PartnerRecord,
    QuoteItem,
    QuotePricing,
    QuoteRequest,
    QuoteRequestStatus,
    QuoteResponse,
    QuoteResponseStatus,
    RecipientInfo,
    RecipientRole,
    RevisionRequest,
    RevisionStatus,
    UserRecord,
)

__all__ = [
    "DeliveryFailure",
    "InvalidTransition",
    "Notification",
    "NotificationEvent",
    "PartnerRecord",
    "PersistenceFailure",
    "QuoteNotFound",
    "QuoteItem",
    "QuoteLifecycleError",
    "QuotePricing",
    "QuoteRequest",
    "QuoteRequestStatus",
    "QuoteResponse",
    "QuoteResponseStatus",
    "RecipientInfo",
    "RecipientRole",
    "RevisionConflict",
    "RevisionRequest",
    "RevisionStatus",
    "TemplateFailure",
    "UserRecord",
]
