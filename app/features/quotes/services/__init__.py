from .delivery_gateway import DeliveryGateway, ResendDeliveryGateway
from .dispatcher import DispatchContext, DispatchResult, NotificationDispatcher
from .lifecycle_service import QuoteLifecycleService, generate_quote_number

__all__ = [
    "DeliveryGateway",
    "DispatchContext",
    "DispatchResult",
    "NotificationDispatcher",
    "QuoteLifecycleService",
    "ResendDeliveryGateway",
    "generate_quote_number",
]
