"""
Quote lifecycle service.

Owns every status mutation the engine performs. Each mutation is checked
against the lifecycle graph first and then issued as a conditional write
against the status that was read, so concurrent actors cannot be
overwritten. Notifications are dispatched only after the write commits,
and a failed fan-out never undoes the transition.
"""

import secrets
from collections.abc import Callable
from datetime import UTC, datetime

from app.config import settings
from app.features.quotes.domain import (
    InvalidTransition,
    NotificationEvent,
    QuoteItem,
    QuoteLifecycleError,
    QuoteNotFound,
    QuoteRequest,
    QuoteRequestStatus,
    QuoteResponse,
    QuoteResponseStatus,
    RevisionConflict,
    RevisionRequest,
    RevisionStatus,
    UserRecord,
)
from app.features.quotes.domain.lifecycle import (
    compute_response_time_minutes,
    ensure_transition,
    sources_for,
)
from app.features.quotes.domain.pricing import compute_pricing, price_items
from app.features.quotes.repository import QuoteStore
from app.features.quotes.services.dispatcher import (
    DispatchContext,
    DispatchResult,
    NotificationDispatcher,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def generate_quote_number(now: datetime) -> str:
    """Globally unique quote number, e.g. TQ-20261019-9F3A61C2."""
    return f"TQ-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class QuoteLifecycleService:
    """
    Lifecycle transitions plus the hooks invoked by request handlers.
    """

    def __init__(
        self,
        store: QuoteStore,
        dispatcher: NotificationDispatcher,
        clock: Clock | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Quote issuance
    # ------------------------------------------------------------------

    async def issue_quote(
        self,
        quote_request_id: int,
        partner_id: int,
        title: str,
        items: list[QuoteItem],
        *,
        discount_amount: int = 0,
        discount_percent: int = 0,
        tax_rate_basis_points: int = 0,
        currency: str | None = None,
        valid_until: datetime | None = None,
    ) -> tuple[QuoteResponse, DispatchResult]:
        """
        Create a priced quote response for a pending or under-review request
        and run the creation hook.
        """
        if not items:
            raise ValueError("A quote needs at least one item")

        quote_request = await self._load_request(quote_request_id)
        if quote_request.partner_id != partner_id:
            raise QuoteLifecycleError(
                "Partner is not the recipient of this quote request",
                operation="issue_quote",
                recoverable=False,
            )
        ensure_transition(quote_request.status, QuoteRequestStatus.QUOTE_SENT)

        pricing = compute_pricing(
            items,
            discount_amount=discount_amount,
            discount_percent=discount_percent,
            tax_rate_basis_points=tax_rate_basis_points,
        )

        quote_response = await self.store.create_quote_response(
            quote_request_id=quote_request.id,
            partner_id=partner_id,
            quote_number=generate_quote_number(self.now()),
            title=title,
            items=pricing.items,
            subtotal=pricing.subtotal,
            discount_amount=pricing.discount_amount,
            discount_percent=discount_percent,
            tax_rate_basis_points=tax_rate_basis_points,
            tax_amount=pricing.tax_amount,
            total_amount=pricing.total_amount,
            currency=currency or settings.DEFAULT_CURRENCY,
            valid_until=valid_until,
        )

        result = await self.on_quote_response_created(quote_response, quote_request)
        return quote_response, result

    async def on_quote_response_created(
        self, quote_response: QuoteResponse, quote_request: QuoteRequest
    ) -> DispatchResult:
        """
        Hook: move the request to quote_sent and notify customer and admins.

        Raises:
            InvalidTransition: the request is not pending/under_review, or it
                changed concurrently. Nothing is written in that case.
        """
        target = QuoteRequestStatus.QUOTE_SENT
        ensure_transition(quote_request.status, target)

        patch: dict = {"status": target}
        if quote_request.response_time_minutes is None:
            patch["response_time_minutes"] = compute_response_time_minutes(
                quote_request.created_at, self.now()
            )

        updated = await self.store.conditional_update_quote_request(
            quote_request.id, sources_for(target), patch
        )
        if not updated:
            logger.warning(
                "Quote request changed before quote_sent could be recorded",
                quote_request_id=quote_request.id,
                quote_id=quote_response.id,
            )
            raise InvalidTransition("quote_request", quote_request.status, target)

        quote_request.status = target
        if "response_time_minutes" in patch:
            quote_request.response_time_minutes = patch["response_time_minutes"]

        logger.info(
            "Quote sent",
            quote_id=quote_response.id,
            quote_number=quote_response.quote_number,
            quote_request_id=quote_request.id,
            response_time_minutes=quote_request.response_time_minutes,
        )

        return await self.dispatcher.dispatch(
            NotificationEvent.QUOTE_RESPONSE_CREATED,
            DispatchContext(quote_request=quote_request, quote_response=quote_response),
        )

    async def mark_under_review(self, quote_request_id: int) -> QuoteRequest:
        """Partner opened the request; records the response time."""
        quote_request = await self._load_request(quote_request_id)
        target = QuoteRequestStatus.UNDER_REVIEW
        ensure_transition(quote_request.status, target)

        patch: dict = {"status": target}
        if quote_request.response_time_minutes is None:
            patch["response_time_minutes"] = compute_response_time_minutes(
                quote_request.created_at, self.now()
            )

        if not await self.store.conditional_update_quote_request(
            quote_request.id, quote_request.status, patch
        ):
            raise InvalidTransition("quote_request", quote_request.status, target)

        quote_request.status = target
        if quote_request.response_time_minutes is None:
            quote_request.response_time_minutes = patch["response_time_minutes"]
        return quote_request

    # ------------------------------------------------------------------
    # Customer / partner decisions
    # ------------------------------------------------------------------

    async def accept_quote(self, quote_response_id: int) -> QuoteResponse:
        return await self._decide(
            quote_response_id, QuoteResponseStatus.ACCEPTED, QuoteRequestStatus.ACCEPTED
        )

    async def reject_quote(self, quote_response_id: int) -> QuoteResponse:
        return await self._decide(
            quote_response_id, QuoteResponseStatus.REJECTED, QuoteRequestStatus.REJECTED
        )

    async def _decide(
        self,
        quote_response_id: int,
        response_target: QuoteResponseStatus,
        request_target: QuoteRequestStatus,
    ) -> QuoteResponse:
        quote_response = await self._load_response(quote_response_id)
        ensure_transition(quote_response.status, response_target)

        if not await self.store.conditional_update_quote_response(
            quote_response.id, QuoteResponseStatus.SENT, {"status": response_target}
        ):
            raise InvalidTransition("quote_response", quote_response.status, response_target)

        quote_response.status = response_target

        mirrored = await self.store.conditional_update_quote_request(
            quote_response.quote_request_id, QuoteRequestStatus.QUOTE_SENT, {"status": request_target}
        )
        if not mirrored:
            logger.warning(
                "Quote request did not mirror quote decision",
                quote_id=quote_response.id,
                quote_request_id=quote_response.quote_request_id,
                target=request_target.value,
            )

        logger.info("Quote decided", quote_id=quote_response.id, status=response_target.value)
        return quote_response

    async def mark_paid(self, quote_request_id: int) -> QuoteRequest:
        return await self._advance_request(quote_request_id, QuoteRequestStatus.PAID)

    async def complete_request(self, quote_request_id: int) -> QuoteRequest:
        return await self._advance_request(quote_request_id, QuoteRequestStatus.COMPLETED)

    async def _advance_request(
        self, quote_request_id: int, target: QuoteRequestStatus
    ) -> QuoteRequest:
        quote_request = await self._load_request(quote_request_id)
        ensure_transition(quote_request.status, target)

        if not await self.store.conditional_update_quote_request(
            quote_request.id, quote_request.status, {"status": target}
        ):
            raise InvalidTransition("quote_request", quote_request.status, target)

        quote_request.status = target
        return quote_request

    # ------------------------------------------------------------------
    # Time-driven transitions (used by the expiration sweep)
    # ------------------------------------------------------------------

    async def expire_quote(self, quote_response: QuoteResponse) -> DispatchResult | None:
        """
        Expire a sent quote and its request, then notify both parties.

        Both rows change in one transaction, so a failed write leaves the
        quote `sent` and the next sweep retries it. Returns None when the
        quote was no longer `sent` at write time (accepted, rejected or
        expired concurrently); nothing is written or sent in that case.
        """
        target = QuoteResponseStatus.EXPIRED
        ensure_transition(quote_response.status, target)

        quote_request = await self.store.get_quote_request_by_id(quote_response.quote_request_id)

        quote_expired, request_expired = await self.store.expire_quote_and_request(
            quote_response.id, quote_response.quote_request_id
        )
        if not quote_expired:
            logger.info("Quote no longer sent, expiration skipped", quote_id=quote_response.id)
            return None

        quote_response.status = target
        if request_expired and quote_request is not None:
            quote_request.status = QuoteRequestStatus.EXPIRED
        elif not request_expired:
            logger.warning(
                "Quote request was not in quote_sent, left unchanged",
                quote_id=quote_response.id,
                quote_request_id=quote_response.quote_request_id,
            )

        logger.info(
            "Quote expired",
            quote_id=quote_response.id,
            quote_number=quote_response.quote_number,
            quote_request_id=quote_response.quote_request_id,
        )

        return await self.dispatcher.dispatch(
            NotificationEvent.QUOTE_EXPIRED,
            DispatchContext(quote_request=quote_request, quote_response=quote_response),
        )

    async def send_expiration_warning(
        self, quote_response: QuoteResponse, now: datetime
    ) -> DispatchResult | None:
        """
        Record the warning guard and notify the customer once.

        Returns None when the guard was already set or the quote left `sent`.
        """
        if not await self.store.record_expiration_warning(quote_response.id, now):
            logger.debug("Expiration warning already recorded", quote_id=quote_response.id)
            return None

        quote_response.warning_sent_at = now
        quote_request = await self.store.get_quote_request_by_id(quote_response.quote_request_id)

        logger.info(
            "Quote expiration warning recorded",
            quote_id=quote_response.id,
            valid_until=quote_response.valid_until.isoformat() if quote_response.valid_until else None,
        )

        return await self.dispatcher.dispatch(
            NotificationEvent.QUOTE_EXPIRING_SOON,
            DispatchContext(quote_request=quote_request, quote_response=quote_response),
        )

    # ------------------------------------------------------------------
    # Revisions
    # ------------------------------------------------------------------

    async def submit_revision(
        self,
        quote_response_id: int,
        requester_id: int,
        requested_items: list[QuoteItem],
        message: str | None = None,
    ) -> RevisionRequest:
        """
        Record a customer counter-proposal.

        Only one revision may be pending per quote; a second one is rejected
        with RevisionConflict rather than superseding the first.
        """
        if not requested_items:
            raise ValueError("A revision needs at least one item")

        quote_response = await self._load_response(quote_response_id)
        if quote_response.status is not QuoteResponseStatus.SENT:
            raise InvalidTransition("quote_response", quote_response.status, "revision_requested")

        quote_request = await self._load_request(quote_response.quote_request_id)
        if quote_request.requester_id != requester_id:
            raise QuoteLifecycleError(
                "Only the requester can ask for a revision",
                operation="submit_revision",
                recoverable=False,
            )

        priced_items = price_items(requested_items)

        pending = await self.store.get_pending_revision(quote_response.id)
        if pending is not None:
            raise RevisionConflict(
                f"Revision {pending.id} is still pending for quote {quote_response.quote_number}",
                operation="submit_revision",
                recoverable=False,
            )

        revision = await self.store.create_revision_request(
            quote_response.id, requester_id, priced_items, message
        )

        logger.info("Revision requested", revision_id=revision.id, quote_id=quote_response.id)

        await self.dispatcher.dispatch(
            NotificationEvent.REVISION_REQUESTED,
            DispatchContext(quote_request=quote_request, quote_response=quote_response),
        )
        return revision

    async def on_revision_accepted(self, revision_request: RevisionRequest) -> DispatchResult:
        """
        Hook: apply the customer's pricing to the quote and notify them.

        Revision status, items, subtotal, tax and total change in one
        transaction; if either guard fails nothing is written.

        Raises:
            InvalidTransition: revision not pending or quote no longer sent.
        """
        ensure_transition(revision_request.status, RevisionStatus.ACCEPTED)

        quote_response = await self._load_response(revision_request.quote_response_id)
        if quote_response.status is not QuoteResponseStatus.SENT:
            raise InvalidTransition("quote_response", quote_response.status, "revised")

        if quote_response.discount_percent:
            pricing = compute_pricing(
                revision_request.requested_items,
                discount_percent=quote_response.discount_percent,
                tax_rate_basis_points=quote_response.tax_rate_basis_points,
            )
        else:
            pricing = compute_pricing(
                revision_request.requested_items,
                discount_amount=quote_response.discount_amount,
                tax_rate_basis_points=quote_response.tax_rate_basis_points,
            )

        applied = await self.store.apply_revision(revision_request.id, quote_response.id, pricing)
        if not applied:
            raise InvalidTransition("revision_request", revision_request.status, RevisionStatus.ACCEPTED)

        revision_request.status = RevisionStatus.ACCEPTED
        quote_response.items = pricing.items
        quote_response.subtotal = pricing.subtotal
        quote_response.discount_amount = pricing.discount_amount
        quote_response.tax_amount = pricing.tax_amount
        quote_response.total_amount = pricing.total_amount

        quote_request = await self._load_request(quote_response.quote_request_id)
        if quote_request.status is QuoteRequestStatus.UNDER_REVIEW:
            if await self.store.conditional_update_quote_request(
                quote_request.id, QuoteRequestStatus.UNDER_REVIEW, {"status": QuoteRequestStatus.QUOTE_SENT}
            ):
                quote_request.status = QuoteRequestStatus.QUOTE_SENT
        elif quote_request.status is not QuoteRequestStatus.QUOTE_SENT:
            logger.warning(
                "Revised quote belongs to a request outside quote_sent",
                quote_request_id=quote_request.id,
                status=quote_request.status.value,
            )

        logger.info(
            "Revision accepted",
            revision_id=revision_request.id,
            quote_id=quote_response.id,
            total_amount=pricing.total_amount,
        )

        return await self.dispatcher.dispatch(
            NotificationEvent.REVISION_ACCEPTED,
            DispatchContext(quote_request=quote_request, quote_response=quote_response),
        )

    async def reject_revision(
        self, revision_id: int, partner_response: str | None = None
    ) -> DispatchResult:
        """Partner declines a counter-proposal; the quote stays as issued."""
        revision = await self.store.get_revision_request_by_id(revision_id)
        if revision is None:
            raise QuoteNotFound(f"Revision request {revision_id} not found", operation="reject_revision")

        ensure_transition(revision.status, RevisionStatus.REJECTED)

        if not await self.store.conditional_update_revision_request(
            revision.id,
            RevisionStatus.PENDING,
            {"status": RevisionStatus.REJECTED, "partner_response": partner_response},
        ):
            raise InvalidTransition("revision_request", revision.status, RevisionStatus.REJECTED)

        revision.status = RevisionStatus.REJECTED
        revision.partner_response = partner_response

        quote_response = await self._load_response(revision.quote_response_id)
        quote_request = await self.store.get_quote_request_by_id(quote_response.quote_request_id)

        return await self.dispatcher.dispatch(
            NotificationEvent.REVISION_REJECTED,
            DispatchContext(
                quote_request=quote_request,
                quote_response=quote_response,
                extra={"partnerNote": f" {partner_response}" if partner_response else ""},
            ),
        )

    # ------------------------------------------------------------------
    # Notification-only events
    # ------------------------------------------------------------------

    async def notify_quote_request_created(self, quote_request: QuoteRequest) -> DispatchResult:
        return await self.dispatcher.dispatch(
            NotificationEvent.QUOTE_REQUEST_CREATED, DispatchContext(quote_request=quote_request)
        )

    async def notify_partner_application(
        self,
        application_id: int,
        applicant_name: str,
        company_name: str,
        service_category: str,
    ) -> DispatchResult:
        return await self.dispatcher.dispatch(
            NotificationEvent.PARTNER_APPLICATION_CREATED,
            DispatchContext(
                extra={
                    "applicantName": applicant_name,
                    "applicantCompany": company_name,
                    "serviceCategory": service_category,
                    "relatedEntityId": application_id,
                }
            ),
        )

    async def notify_new_follower(self, partner_id: int, follower: UserRecord) -> DispatchResult:
        partner = await self.store.get_partner_by_id(partner_id)
        if partner is None:
            raise QuoteNotFound(f"Partner {partner_id} not found", operation="notify_new_follower")

        return await self.dispatcher.dispatch(
            NotificationEvent.NEW_FOLLOWER,
            DispatchContext(
                partner=partner,
                extra={"followerName": follower.full_name or follower.email or ""},
            ),
        )

    # ------------------------------------------------------------------
    # Loading helpers
    # ------------------------------------------------------------------

    async def _load_request(self, quote_request_id: int) -> QuoteRequest:
        quote_request = await self.store.get_quote_request_by_id(quote_request_id)
        if quote_request is None:
            raise QuoteNotFound(f"Quote request {quote_request_id} not found", operation="load_request")
        return quote_request

    async def _load_response(self, quote_response_id: int) -> QuoteResponse:
        quote_response = await self.store.get_quote_response_by_id(quote_response_id)
        if quote_response is None:
            raise QuoteNotFound(f"Quote response {quote_response_id} not found", operation="load_response")
        return quote_response
