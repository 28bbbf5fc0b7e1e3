import dataclasses
from datetime import UTC, datetime, timedelta

import pytest

from app.features.quotes.domain import (
    DeliveryFailure,
    PartnerRecord,
    PersistenceFailure,
    QuoteItem,
    QuoteRequest,
    QuoteRequestStatus,
    QuoteResponse,
    QuoteResponseStatus,
    RevisionRequest,
    RevisionStatus,
    UserRecord,
)
from app.features.quotes.domain.pricing import compute_pricing
from app.features.quotes.services import NotificationDispatcher, QuoteLifecycleService


class FrozenClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def _statuses(expected) -> tuple:
    return expected if isinstance(expected, tuple) else (expected,)


class InMemoryQuoteStore:
    """QuoteStore fake with the same compare-and-set semantics as PostgreSQL."""

    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self.requests: dict[int, QuoteRequest] = {}
        self.responses: dict[int, QuoteResponse] = {}
        self.revisions: dict[int, RevisionRequest] = {}
        self.users: dict[int, UserRecord] = {}
        self.partners: dict[int, PartnerRecord] = {}
        self.failing_response_ids: set[int] = set()
        self.failing_request_ids: set[int] = set()
        self.fail_listing = False
        self._next_id = 100

        self.customer = self.add_user(1, "ada@example.com", "Ada", "Lovelace")
        self.partner_user = self.add_user(2, "pat@acme.example", "Pat", "Partner")
        self.admin = self.add_user(3, "root@example.com", "Root", "Admin", user_type="admin")
        self.partner = PartnerRecord(id=10, user_id=self.partner_user.id, company_name="Acme Cleaning")
        self.partners[self.partner.id] = self.partner

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    # -- seeding helpers -------------------------------------------------

    def add_user(self, user_id, email, first_name, last_name, **kwargs) -> UserRecord:
        user = UserRecord(id=user_id, email=email, first_name=first_name, last_name=last_name, **kwargs)
        self.users[user_id] = user
        return user

    def add_request(self, status=QuoteRequestStatus.QUOTE_SENT, created_at=None, **kwargs) -> QuoteRequest:
        now = self.clock()
        request = QuoteRequest(
            id=kwargs.pop("id", self._id()),
            requester_id=kwargs.pop("requester_id", self.customer.id),
            partner_id=kwargs.pop("partner_id", self.partner.id),
            service_needed=kwargs.pop("service_needed", "Deep cleaning"),
            budget=kwargs.pop("budget", None),
            status=status,
            created_at=created_at or now - timedelta(hours=3),
            updated_at=now,
            **kwargs,
        )
        self.requests[request.id] = request
        return request

    def add_response(
        self,
        request: QuoteRequest,
        status=QuoteResponseStatus.SENT,
        valid_until=None,
        warning_sent_at=None,
        items=None,
        tax_rate_basis_points=2000,
        discount_amount=0,
    ) -> QuoteResponse:
        now = self.clock()
        pricing = compute_pricing(
            items
            or [
                QuoteItem("Kitchen", 2, 10000),
                QuoteItem("Windows", 1, 5000),
            ],
            discount_amount=discount_amount,
            tax_rate_basis_points=tax_rate_basis_points,
        )
        response_id = self._id()
        response = QuoteResponse(
            id=response_id,
            quote_request_id=request.id,
            partner_id=request.partner_id,
            quote_number=f"TQ-20261019-{response_id:08X}",
            title="Spring cleaning",
            items=pricing.items,
            subtotal=pricing.subtotal,
            discount_amount=pricing.discount_amount,
            discount_percent=0,
            tax_rate_basis_points=tax_rate_basis_points,
            tax_amount=pricing.tax_amount,
            total_amount=pricing.total_amount,
            currency="TRY",
            status=status,
            created_at=now,
            updated_at=now,
            valid_until=valid_until,
            warning_sent_at=warning_sent_at,
        )
        self.responses[response.id] = response
        return response

    def add_revision(self, response: QuoteResponse, items, status=RevisionStatus.PENDING) -> RevisionRequest:
        now = self.clock()
        revision = RevisionRequest(
            id=self._id(),
            quote_response_id=response.id,
            requester_id=self.customer.id,
            requested_items=list(items),
            message=None,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.revisions[revision.id] = revision
        return revision

    # -- QuoteStore ------------------------------------------------------

    async def list_active_quote_responses(self) -> list[QuoteResponse]:
        if self.fail_listing:
            raise PersistenceFailure("listing failed", operation="list_active_quote_responses")
        return [
            dataclasses.replace(r) for r in self.responses.values() if r.status is QuoteResponseStatus.SENT
        ]

    async def get_quote_response_by_id(self, response_id):
        response = self.responses.get(response_id)
        return dataclasses.replace(response, items=list(response.items)) if response else None

    async def get_quote_request_by_id(self, request_id):
        request = self.requests.get(request_id)
        return dataclasses.replace(request) if request else None

    async def get_user_by_id(self, user_id):
        return self.users.get(user_id)

    async def get_partner_by_id(self, partner_id):
        return self.partners.get(partner_id)

    async def list_admin_ids(self) -> list[int]:
        return [u.id for u in self.users.values() if u.user_type in ("admin", "master_admin", "editor_admin")]

    async def create_quote_response(self, **fields) -> QuoteResponse:
        now = self.clock()
        response = QuoteResponse(
            id=self._id(),
            status=QuoteResponseStatus.SENT,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.responses[response.id] = response
        return dataclasses.replace(response)

    async def conditional_update_quote_response(self, response_id, expected_status, patch) -> bool:
        if response_id in self.failing_response_ids:
            raise PersistenceFailure("write failed", operation="conditional_update_quote_response")
        return self._apply(self.responses.get(response_id), expected_status, patch)

    async def conditional_update_quote_request(self, request_id, expected_status, patch) -> bool:
        if request_id in self.failing_request_ids:
            raise PersistenceFailure("write failed", operation="conditional_update_quote_request")
        return self._apply(self.requests.get(request_id), expected_status, patch)

    async def conditional_update_revision_request(self, revision_id, expected_status, patch) -> bool:
        return self._apply(self.revisions.get(revision_id), expected_status, patch)

    async def record_expiration_warning(self, response_id, sent_at) -> bool:
        if response_id in self.failing_response_ids:
            raise PersistenceFailure("write failed", operation="record_expiration_warning")
        response = self.responses.get(response_id)
        if response is None or response.status is not QuoteResponseStatus.SENT:
            return False
        if response.warning_sent_at is not None:
            return False
        response.warning_sent_at = sent_at
        return True

    async def expire_quote_and_request(self, response_id, quote_request_id) -> tuple[bool, bool]:
        if response_id in self.failing_response_ids or quote_request_id in self.failing_request_ids:
            raise PersistenceFailure("transaction rolled back", operation="expire_quote_and_request")
        response = self.responses.get(response_id)
        if not self._apply(response, QuoteResponseStatus.SENT, {"status": QuoteResponseStatus.EXPIRED}):
            return False, False
        request_expired = self._apply(
            self.requests.get(quote_request_id), QuoteRequestStatus.QUOTE_SENT, {"status": QuoteRequestStatus.EXPIRED}
        )
        return True, request_expired

    async def create_revision_request(self, quote_response_id, requester_id, requested_items, message):
        now = self.clock()
        revision = RevisionRequest(
            id=self._id(),
            quote_response_id=quote_response_id,
            requester_id=requester_id,
            requested_items=list(requested_items),
            message=message,
            status=RevisionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.revisions[revision.id] = revision
        return dataclasses.replace(revision)

    async def get_revision_request_by_id(self, revision_id):
        revision = self.revisions.get(revision_id)
        return dataclasses.replace(revision) if revision else None

    async def get_pending_revision(self, quote_response_id):
        for revision in self.revisions.values():
            if revision.quote_response_id == quote_response_id and revision.status is RevisionStatus.PENDING:
                return dataclasses.replace(revision)
        return None

    async def apply_revision(self, revision_id, quote_response_id, pricing) -> bool:
        revision = self.revisions.get(revision_id)
        response = self.responses.get(quote_response_id)
        if revision is None or revision.status is not RevisionStatus.PENDING:
            return False
        if revision.quote_response_id != quote_response_id:
            return False
        if response is None or response.status is not QuoteResponseStatus.SENT:
            return False

        revision.status = RevisionStatus.ACCEPTED
        response.items = list(pricing.items)
        response.subtotal = pricing.subtotal
        response.discount_amount = pricing.discount_amount
        response.tax_amount = pricing.tax_amount
        response.total_amount = pricing.total_amount
        return True

    def _apply(self, row, expected_status, patch) -> bool:
        if row is None or row.status not in _statuses(expected_status):
            return False
        for column, value in patch.items():
            if column == "response_time_minutes" and row.response_time_minutes is not None:
                continue
            setattr(row, column, value)
        row.updated_at = self.clock()
        return True


class InMemoryNotificationSink:
    def __init__(self):
        self.notifications = []
        self.fail = False

    async def create_many(self, notifications) -> None:
        if self.fail:
            raise PersistenceFailure("sink unavailable", operation="create_notifications")
        self.notifications.extend(notifications)

    async def unread_count(self, user_id: int) -> int:
        return sum(1 for n in self.notifications if n.recipient_id == user_id and not n.is_read)

    async def list_for_user(self, user_id: int, page: int = 1, limit: int = 20) -> dict:
        mine = [n for n in self.notifications if n.recipient_id == user_id]
        start = (page - 1) * limit
        return {
            "notifications": mine[start : start + limit],
            "total_count": len(mine),
            "has_more": start + limit < len(mine),
        }

    async def mark_as_read(self, notification_id: int, user_id: int) -> bool:
        for n in self.notifications:
            if n.id == notification_id and n.recipient_id == user_id and not n.is_read:
                n.is_read = True
                return True
        return False

    async def mark_all_as_read(self, user_id: int) -> int:
        count = 0
        for n in self.notifications:
            if n.recipient_id == user_id and not n.is_read:
                n.is_read = True
                count += 1
        return count

    def of_type(self, event) -> list:
        return [n for n in self.notifications if n.type == getattr(event, "value", event)]


class RecordingGateway:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.failing_addresses: set[str] = set()

    async def send(self, recipient_address: str, subject: str, body: str) -> bool:
        if recipient_address in self.failing_addresses:
            raise DeliveryFailure(f"bounced: {recipient_address}", operation="send")
        self.sent.append((recipient_address, subject, body))
        return True

    @property
    def addresses(self) -> list[str]:
        return [address for address, _, _ in self.sent]


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))


@pytest.fixture
def quote_store(clock):
    return InMemoryQuoteStore(clock)


@pytest.fixture
def notification_sink():
    return InMemoryNotificationSink()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def dispatcher(quote_store, notification_sink, gateway):
    return NotificationDispatcher(quote_store, notification_sink, gateway)


@pytest.fixture
def lifecycle(quote_store, dispatcher, clock):
    return QuoteLifecycleService(quote_store, dispatcher, clock=clock)
