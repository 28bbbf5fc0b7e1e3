"""
Fan-out dispatcher for lifecycle notifications.

Given an event and its triggering entities, resolves the recipient set,
renders one notification per recipient, attempts email delivery per
recipient and writes every notification in a single batch.

Failure isolation:
- a delivery failure affects only that recipient's `is_delivery_sent` flag
- a sink failure marks the whole fan-out failed; the lifecycle transition
  that triggered it has already committed and is never undone
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from app.config import settings
from app.features.quotes.domain import (
    DeliveryFailure,
    Notification,
    NotificationEvent,
    PartnerRecord,
    QuoteRequest,
    QuoteResponse,
    RecipientInfo,
    RecipientRole,
    UserRecord,
)
from app.features.quotes.domain.pricing import format_amount
from app.features.quotes.repository import NotificationSink, QuoteStore
from app.features.quotes.services.delivery_gateway import DeliveryGateway
from app.features.quotes.services.templates import render_email_html, render_for_recipient
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class NotificationTemplate:
    title: str
    message: str
    action_url: str
    action_label: str


E = NotificationEvent
R = RecipientRole

NOTIFICATION_TEMPLATES: dict[NotificationEvent, dict[RecipientRole, NotificationTemplate]] = {
    E.QUOTE_REQUEST_CREATED: {
        R.CUSTOMER: NotificationTemplate(
            title="Your quote request was sent",
            message="Hi {{firstName}}, your request for {{serviceNeeded}} was sent to {{partnerName}}.",
            action_url="/service-requests",
            action_label="View your requests",
        ),
        R.PARTNER: NotificationTemplate(
            title="New quote request",
            message="{{customerName}} requested a quote for {{serviceNeeded}}.",
            action_url="/partner-dashboard?tab=quote-requests",
            action_label="Review request",
        ),
        R.ADMIN: NotificationTemplate(
            title="New quote request",
            message="{{customerName}} sent a new quote request to {{partnerName}}.",
            action_url="/admin/quote-requests",
            action_label="Open admin panel",
        ),
    },
    E.QUOTE_RESPONSE_CREATED: {
        R.CUSTOMER: NotificationTemplate(
            title="You received a new quote",
            message=(
                '{{partnerName}} sent you quote {{quoteNumber}} for "{{quoteTitle}}" '
                "totalling {{totalAmount}}, valid until {{validUntil}}."
            ),
            action_url="/service-requests?tab=received-quotes",
            action_label="Review quote",
        ),
        R.ADMIN: NotificationTemplate(
            title="Quote sent",
            message='{{partnerName}} sent quote {{quoteNumber}} for "{{quoteTitle}}" to {{customerName}}.',
            action_url="/admin/quote-responses",
            action_label="Open admin panel",
        ),
    },
    E.QUOTE_EXPIRING_SOON: {
        R.CUSTOMER: NotificationTemplate(
            title="Your quote expires tomorrow",
            message=(
                "Hi {{fullName}}, quote {{quoteNumber}} from {{partnerName}} ({{totalAmount}}) "
                "expires on {{validUntil}}. Accept, reject or request a revision before then."
            ),
            action_url="/service-requests?tab=received-quotes",
            action_label="Review quote",
        ),
    },
    E.QUOTE_EXPIRED: {
        R.CUSTOMER: NotificationTemplate(
            title="Quote expired",
            message=(
                "Hi {{fullName}}, quote {{quoteNumber}} from {{partnerName}} expired on "
                "{{validUntil}}. If you still need this service you can ask the partner for a new quote."
            ),
            action_url="/service-requests",
            action_label="Request a new quote",
        ),
        R.PARTNER: NotificationTemplate(
            title="Your quote expired",
            message=(
                "Hi {{fullName}}, the quote {{quoteNumber}} you sent to {{customerName}} expired on "
                "{{validUntil}}. You can update it and send it again or contact the customer."
            ),
            action_url="/partner-dashboard?tab=quotes",
            action_label="Update quote",
        ),
    },
    E.PARTNER_APPLICATION_CREATED: {
        R.ADMIN: NotificationTemplate(
            title="New partner application",
            message="{{applicantName}} ({{applicantCompany}}) applied as a partner in {{serviceCategory}}.",
            action_url="/admin/partner-applications",
            action_label="Review application",
        ),
    },
    E.NEW_FOLLOWER: {
        R.PARTNER: NotificationTemplate(
            title="New follower",
            message="{{followerName}} started following {{companyName}}.",
            action_url="/partner-dashboard?tab=followers",
            action_label="View followers",
        ),
    },
    E.REVISION_REQUESTED: {
        R.PARTNER: NotificationTemplate(
            title="Revision requested",
            message="{{customerName}} requested a revision of quote {{quoteNumber}}.",
            action_url="/partner-dashboard?tab=revision-requests",
            action_label="Review revision",
        ),
    },
    E.REVISION_ACCEPTED: {
        R.CUSTOMER: NotificationTemplate(
            title="Revision accepted",
            message="{{partnerName}} accepted your revision. Quote {{quoteNumber}} now totals {{totalAmount}}.",
            action_url="/service-requests?tab=received-quotes",
            action_label="View updated quote",
        ),
    },
    E.REVISION_REJECTED: {
        R.CUSTOMER: NotificationTemplate(
            title="Revision declined",
            message=(
                "{{partnerName}} could not accept your revision. "
                "Quote {{quoteNumber}} remains valid as issued.{{partnerNote}}"
            ),
            action_url="/service-requests?tab=received-quotes",
            action_label="View quote",
        ),
    },
}

# Recipient order per event; a user id appearing twice keeps its first role
EVENT_RECIPIENTS: dict[NotificationEvent, tuple[RecipientRole, ...]] = {
    event: tuple(roles) for event, roles in NOTIFICATION_TEMPLATES.items()
}

RELATED_ENTITY: dict[NotificationEvent, str] = {
    E.QUOTE_REQUEST_CREATED: "quote_request",
    E.QUOTE_RESPONSE_CREATED: "quote_response",
    E.QUOTE_EXPIRING_SOON: "quote_response",
    E.QUOTE_EXPIRED: "quote_response",
    E.PARTNER_APPLICATION_CREATED: "partner_application",
    E.NEW_FOLLOWER: "partner",
    E.REVISION_REQUESTED: "quote_response",
    E.REVISION_ACCEPTED: "quote_response",
    E.REVISION_REJECTED: "quote_response",
}

del E, R


@dataclass(slots=True)
class DispatchContext:
    """Entities that triggered an event. Missing users are looked up by id."""

    quote_request: QuoteRequest | None = None
    quote_response: QuoteResponse | None = None
    partner: PartnerRecord | None = None
    customer: UserRecord | None = None
    partner_user: UserRecord | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchResult:
    event: str
    recipients: int = 0
    notifications_created: int = 0
    deliveries_attempted: int = 0
    deliveries_sent: int = 0
    deliveries_failed: int = 0
    success: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "recipients": self.recipients,
            "notifications_created": self.notifications_created,
            "deliveries_attempted": self.deliveries_attempted,
            "deliveries_sent": self.deliveries_sent,
            "deliveries_failed": self.deliveries_failed,
            "success": self.success,
            "error": self.error,
        }


@dataclass(slots=True)
class _Recipient:
    role: RecipientRole
    user: UserRecord
    info: RecipientInfo


class NotificationDispatcher:
    """
    Computes recipients and content for a lifecycle event and fans out.
    """

    def __init__(
        self,
        store: QuoteStore,
        sink: NotificationSink,
        gateway: DeliveryGateway | None = None,
    ):
        self.store = store
        self.sink = sink
        self.gateway = gateway

    async def dispatch(self, event: NotificationEvent, context: DispatchContext) -> DispatchResult:
        """
        Fan out one event. Never raises; failures are reported in the result.
        """
        result = DispatchResult(event=event.value)

        try:
            recipients = await self._resolve_recipients(event, context)
        except Exception as e:
            result.success = False
            result.error = f"Recipient resolution failed: {e}"
            logger.error(
                "Notification fan-out failed",
                notification_event=event.value,
                stage="resolve_recipients",
                error=str(e),
                error_type=type(e).__name__,
            )
            return result

        result.recipients = len(recipients)
        if not recipients:
            logger.info("No recipients for notification event", notification_event=event.value)
            return result

        event_tokens = self._event_tokens(context)
        notifications = [
            self._build_notification(event, recipient, context, event_tokens) for recipient in recipients
        ]

        await self._deliver_all(event, recipients, notifications, result)

        try:
            await self.sink.create_many(notifications)
            result.notifications_created = len(notifications)
        except Exception as e:
            result.success = False
            result.error = f"Notification sink write failed: {e}"
            logger.error(
                "Notification fan-out failed",
                notification_event=event.value,
                stage="sink_write",
                recipients=len(notifications),
                error=str(e),
                error_type=type(e).__name__,
            )
            return result

        logger.info("Notification event dispatched", notification_event=event.value, result=result.to_dict())
        return result

    # ------------------------------------------------------------------
    # Recipients
    # ------------------------------------------------------------------

    async def _resolve_recipients(
        self, event: NotificationEvent, context: DispatchContext
    ) -> list[_Recipient]:
        recipients: list[_Recipient] = []
        seen: set[int] = set()

        # Event tokens need both parties even when only one is notified
        await self._customer(context)
        await self._partner(context)

        def _add(role: RecipientRole, user: UserRecord | None, partner: PartnerRecord | None = None):
            if user is None:
                logger.warning("Notification recipient missing", notification_event=event.value, role=role.value)
                return
            if user.id in seen:
                return
            seen.add(user.id)
            recipients.append(_Recipient(role=role, user=user, info=RecipientInfo.from_user(user, partner)))

        for role in EVENT_RECIPIENTS[event]:
            if role is RecipientRole.CUSTOMER:
                _add(role, await self._customer(context))
            elif role is RecipientRole.PARTNER:
                partner = await self._partner(context)
                _add(role, await self._partner_user(context, partner), partner)
            elif role is RecipientRole.ADMIN:
                for admin_id in await self.store.list_admin_ids():
                    if admin_id in seen:
                        continue
                    _add(role, await self.store.get_user_by_id(admin_id))

        return recipients

    async def _customer(self, context: DispatchContext) -> UserRecord | None:
        if context.customer is None and context.quote_request is not None:
            context.customer = await self.store.get_user_by_id(context.quote_request.requester_id)
        return context.customer

    async def _partner(self, context: DispatchContext) -> PartnerRecord | None:
        if context.partner is None:
            partner_id = None
            if context.quote_response is not None:
                partner_id = context.quote_response.partner_id
            elif context.quote_request is not None:
                partner_id = context.quote_request.partner_id
            if partner_id is not None:
                context.partner = await self.store.get_partner_by_id(partner_id)
        return context.partner

    async def _partner_user(
        self, context: DispatchContext, partner: PartnerRecord | None
    ) -> UserRecord | None:
        if context.partner_user is None and partner is not None:
            context.partner_user = await self.store.get_user_by_id(partner.user_id)
        return context.partner_user

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    @staticmethod
    def _event_tokens(context: DispatchContext) -> dict[str, Any]:
        tokens: dict[str, Any] = {}

        if context.partner is not None:
            tokens["partnerName"] = context.partner.company_name
        if context.customer is not None:
            tokens["customerName"] = context.customer.full_name or context.customer.email or ""
        if context.quote_request is not None:
            tokens["serviceNeeded"] = context.quote_request.service_needed
        if context.quote_response is not None:
            response = context.quote_response
            tokens["quoteNumber"] = response.quote_number
            tokens["quoteTitle"] = response.title
            tokens["totalAmount"] = format_amount(response.total_amount, response.currency)
            if response.valid_until is not None:
                tokens["validUntil"] = response.valid_until.strftime("%Y-%m-%d")

        tokens.update(context.extra)
        return tokens

    @staticmethod
    def _related_entity_id(event: NotificationEvent, context: DispatchContext) -> int | None:
        entity = RELATED_ENTITY[event]
        if entity == "quote_request" and context.quote_request is not None:
            return context.quote_request.id
        if entity == "quote_response" and context.quote_response is not None:
            return context.quote_response.id
        if entity == "partner" and context.partner is not None:
            return context.partner.id
        return context.extra.get("relatedEntityId")

    def _build_notification(
        self,
        event: NotificationEvent,
        recipient: _Recipient,
        context: DispatchContext,
        event_tokens: dict[str, Any],
    ) -> Notification:
        template = NOTIFICATION_TEMPLATES[event][recipient.role]
        metadata: dict[str, Any] = {"role": recipient.role.value}
        if context.quote_response is not None:
            metadata["quote_number"] = context.quote_response.quote_number

        return Notification(
            recipient_id=recipient.user.id,
            type=event.value,
            title=render_for_recipient(template.title, recipient.info, event_tokens),
            message=render_for_recipient(template.message, recipient.info, event_tokens),
            related_entity_type=RELATED_ENTITY[event],
            related_entity_id=self._related_entity_id(event, context),
            action_url=template.action_url,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver_all(
        self,
        event: NotificationEvent,
        recipients: list[_Recipient],
        notifications: list[Notification],
        result: DispatchResult,
    ) -> None:
        if self.gateway is None:
            return

        pending = [
            (recipient, notification)
            for recipient, notification in zip(recipients, notifications)
            if recipient.user.email and recipient.user.email_notifications_enabled
        ]
        if not pending:
            return

        outcomes = await asyncio.gather(
            *(self._deliver_one(event, recipient, notification) for recipient, notification in pending)
        )

        for (_, notification), sent in zip(pending, outcomes):
            notification.is_delivery_sent = sent
            result.deliveries_attempted += 1
            if sent:
                result.deliveries_sent += 1
            else:
                result.deliveries_failed += 1

    async def _deliver_one(
        self, event: NotificationEvent, recipient: _Recipient, notification: Notification
    ) -> bool:
        template = NOTIFICATION_TEMPLATES[event][recipient.role]
        body = render_email_html(
            notification.title,
            notification.message,
            settings.action_url(template.action_url),
            template.action_label,
        )

        try:
            sent = await self.gateway.send(recipient.user.email, notification.title, body)
        except DeliveryFailure as e:
            logger.warning(
                "Notification delivery failed",
                notification_event=event.value,
                recipient_id=recipient.user.id,
                error=str(e),
            )
            return False
        except Exception as e:
            logger.error(
                "Unexpected notification delivery error",
                notification_event=event.value,
                recipient_id=recipient.user.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        if not sent:
            logger.warning(
                "Notification delivery rejected",
                notification_event=event.value,
                recipient_id=recipient.user.id,
            )
        return bool(sent)
