"""Exceptions raised by the quote lifecycle engine."""

from enum import Enum


class QuoteLifecycleError(Exception):
    """Base exception for quote lifecycle operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class InvalidTransition(QuoteLifecycleError):
    """Attempted move from a terminal or mismatched status. The write is never made."""

    def __init__(self, entity: str, current: Enum | str, target: Enum | str):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"Invalid {entity} transition: {current_value} -> {target_value}",
            operation="transition",
            recoverable=False,
        )
        self.entity = entity
        self.current = current_value
        self.target = target_value


class PersistenceFailure(QuoteLifecycleError):
    """Quote store read/write failed. The sweep retries the item on its next tick."""


class DeliveryFailure(QuoteLifecycleError):
    """Delivery gateway rejected or failed a send. Never retried automatically."""


class TemplateFailure(QuoteLifecycleError):
    """Recipient info could not be turned into template tokens."""


class RevisionConflict(QuoteLifecycleError):
    """A revision is already pending for the quote response."""


class QuoteNotFound(QuoteLifecycleError):
    """Referenced quote request, quote response or revision does not exist."""
