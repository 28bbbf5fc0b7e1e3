"""
Domain models for the quote lifecycle feature.

Lightweight dataclasses shared by repositories, services and the sweep job.
Status sets are closed enums so invalid states cannot be represented.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class QuoteRequestStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    QUOTE_SENT = "quote_sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    COMPLETED = "completed"
    PAID = "paid"


class QuoteResponseStatus(str, Enum):
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RevisionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class NotificationEvent(str, Enum):
    QUOTE_REQUEST_CREATED = "quote_request_created"
    QUOTE_RESPONSE_CREATED = "quote_response_created"
    QUOTE_EXPIRING_SOON = "quote_expiring_soon"
    QUOTE_EXPIRED = "quote_expired"
    PARTNER_APPLICATION_CREATED = "partner_application_created"
    NEW_FOLLOWER = "new_follower"
    REVISION_REQUESTED = "revision_requested"
    REVISION_ACCEPTED = "revision_accepted"
    REVISION_REJECTED = "revision_rejected"


class RecipientRole(str, Enum):
    CUSTOMER = "customer"
    PARTNER = "partner"
    ADMIN = "admin"


@dataclass(slots=True)
class QuoteItem:
    """One priced line of a quote. Money is in minor currency units."""

    description: str
    quantity: int
    unit_price: int
    line_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuoteItem":
        return cls(
            description=str(data.get("description", "")),
            quantity=int(data["quantity"]),
            unit_price=int(data.get("unit_price", data.get("unitPrice", 0))),
            line_total=int(data.get("line_total", data.get("lineTotal", 0))),
        )


@dataclass(slots=True)
class QuotePricing:
    """Result of pricing an item list; all four totals change together."""

    items: list[QuoteItem]
    subtotal: int
    discount_amount: int
    tax_amount: int
    total_amount: int


@dataclass(slots=True)
class QuoteRequest:
    """Represents a quote_requests row."""

    id: int
    requester_id: int
    partner_id: int
    service_needed: str
    budget: str | None
    status: QuoteRequestStatus
    created_at: datetime
    updated_at: datetime
    message: str | None = None
    response_time_minutes: int | None = None
    satisfaction_rating: int | None = None


@dataclass(slots=True)
class QuoteResponse:
    """Represents a quote_responses row."""

    id: int
    quote_request_id: int
    partner_id: int
    quote_number: str
    title: str
    items: list[QuoteItem]
    subtotal: int
    discount_amount: int
    discount_percent: int
    tax_rate_basis_points: int
    tax_amount: int
    total_amount: int
    currency: str
    status: QuoteResponseStatus
    created_at: datetime
    updated_at: datetime
    valid_until: datetime | None = None
    warning_sent_at: datetime | None = None


@dataclass(slots=True)
class RevisionRequest:
    """Represents a revision_requests row (customer counter-proposal)."""

    id: int
    quote_response_id: int
    requester_id: int
    requested_items: list[QuoteItem]
    message: str | None
    status: RevisionStatus
    created_at: datetime
    updated_at: datetime
    partner_response: str | None = None


@dataclass(slots=True)
class UserRecord:
    id: int
    email: str | None
    first_name: str | None
    last_name: str | None
    user_type: str = "user"
    email_notifications_enabled: bool = True

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass(slots=True)
class PartnerRecord:
    id: int
    user_id: int
    company_name: str


@dataclass(slots=True)
class RecipientInfo:
    """Token source for template rendering, one per notification recipient."""

    first_name: str | None = None
    last_name: str | None = None
    company_name: str | None = None
    email: str | None = None

    @classmethod
    def from_user(cls, user: UserRecord, partner: PartnerRecord | None = None) -> "RecipientInfo":
        return cls(
            first_name=user.first_name,
            last_name=user.last_name,
            company_name=partner.company_name if partner else None,
            email=user.email,
        )


@dataclass(slots=True)
class Notification:
    """A per-recipient inbox entry. Only is_read/read_at change after creation."""

    recipient_id: int
    type: str
    title: str
    message: str
    related_entity_type: str | None = None
    related_entity_id: int | None = None
    action_url: str | None = None
    is_read: bool = False
    is_delivery_sent: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: datetime | None = None
    read_at: datetime | None = None
