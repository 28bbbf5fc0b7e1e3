"""
Tests for notification fan-out.
"""

import pytest

from app.features.quotes.domain import NotificationEvent, RecipientRole
from app.features.quotes.services import DispatchContext, NotificationDispatcher
from app.features.quotes.services.dispatcher import EVENT_RECIPIENTS, NOTIFICATION_TEMPLATES


def test_every_event_has_templates():
    for event in NotificationEvent:
        assert NOTIFICATION_TEMPLATES[event], event
        assert EVENT_RECIPIENTS[event] == tuple(NOTIFICATION_TEMPLATES[event])


@pytest.mark.asyncio
async def test_quote_response_created_notifies_customer_and_admins(
    dispatcher, quote_store, notification_sink, gateway
):
    request = quote_store.add_request()
    response = quote_store.add_response(request)

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_RESPONSE_CREATED,
        DispatchContext(quote_request=request, quote_response=response),
    )

    assert result.success is True
    assert result.recipients == 2
    assert result.notifications_created == 2
    assert {n.recipient_id for n in notification_sink.notifications} == {
        quote_store.customer.id,
        quote_store.admin.id,
    }
    assert sorted(gateway.addresses) == ["ada@example.com", "root@example.com"]

    customer_note = next(n for n in notification_sink.notifications if n.recipient_id == quote_store.customer.id)
    assert customer_note.type == "quote_response_created"
    assert customer_note.related_entity_type == "quote_response"
    assert customer_note.related_entity_id == response.id
    assert customer_note.metadata == {"role": "customer", "quote_number": response.quote_number}
    assert "Acme Cleaning" in customer_note.message
    assert "300.00 TRY" in customer_note.message
    assert customer_note.is_delivery_sent is True


@pytest.mark.asyncio
async def test_rendered_content_never_contains_placeholders(dispatcher, quote_store, notification_sink):
    request = quote_store.add_request()
    response = quote_store.add_response(request)
    context = DispatchContext(quote_request=request, quote_response=response)

    for event in (
        NotificationEvent.QUOTE_REQUEST_CREATED,
        NotificationEvent.QUOTE_EXPIRING_SOON,
        NotificationEvent.QUOTE_EXPIRED,
        NotificationEvent.REVISION_REJECTED,
    ):
        await dispatcher.dispatch(event, context)

    assert notification_sink.notifications
    for notification in notification_sink.notifications:
        assert "{{" not in notification.title
        assert "{{" not in notification.message


@pytest.mark.asyncio
async def test_user_with_two_roles_is_notified_once(dispatcher, quote_store, notification_sink):
    quote_store.partner_user.user_type = "admin"
    request = quote_store.add_request()

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_REQUEST_CREATED, DispatchContext(quote_request=request)
    )

    recipient_ids = [n.recipient_id for n in notification_sink.notifications]
    assert sorted(recipient_ids) == [1, 2, 3]
    assert result.recipients == 3

    partner_note = next(n for n in notification_sink.notifications if n.recipient_id == 2)
    assert partner_note.metadata["role"] == RecipientRole.PARTNER.value


@pytest.mark.asyncio
async def test_delivery_failure_is_isolated_per_recipient(
    dispatcher, quote_store, notification_sink, gateway
):
    gateway.failing_addresses.add("ada@example.com")
    request = quote_store.add_request()
    response = quote_store.add_response(request)

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_EXPIRED,
        DispatchContext(quote_request=request, quote_response=response),
    )

    assert result.success is True
    assert result.notifications_created == 2
    assert result.deliveries_attempted == 2
    assert result.deliveries_sent == 1
    assert result.deliveries_failed == 1

    by_recipient = {n.recipient_id: n for n in notification_sink.notifications}
    assert by_recipient[quote_store.customer.id].is_delivery_sent is False
    assert by_recipient[quote_store.partner_user.id].is_delivery_sent is True
    assert gateway.addresses == ["pat@acme.example"]


@pytest.mark.asyncio
async def test_sink_failure_marks_dispatch_failed(dispatcher, quote_store, notification_sink, gateway):
    notification_sink.fail = True
    request = quote_store.add_request()
    response = quote_store.add_response(request)

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_EXPIRING_SOON,
        DispatchContext(quote_request=request, quote_response=response),
    )

    assert result.success is False
    assert "sink" in result.error
    assert result.notifications_created == 0
    assert gateway.addresses == ["ada@example.com"]


@pytest.mark.asyncio
async def test_opted_out_recipient_gets_notification_without_email(
    dispatcher, quote_store, notification_sink, gateway
):
    quote_store.customer.email_notifications_enabled = False
    request = quote_store.add_request()
    response = quote_store.add_response(request)

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_EXPIRING_SOON,
        DispatchContext(quote_request=request, quote_response=response),
    )

    assert result.notifications_created == 1
    assert result.deliveries_attempted == 0
    assert gateway.sent == []
    assert notification_sink.notifications[0].is_delivery_sent is False


@pytest.mark.asyncio
async def test_dispatch_without_gateway_still_writes_notifications(quote_store, notification_sink):
    dispatcher = NotificationDispatcher(quote_store, notification_sink, gateway=None)
    request = quote_store.add_request()

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_REQUEST_CREATED, DispatchContext(quote_request=request)
    )

    assert result.success is True
    assert result.notifications_created == 3
    assert result.deliveries_attempted == 0


@pytest.mark.asyncio
async def test_missing_recipient_is_skipped(dispatcher, quote_store, notification_sink):
    request = quote_store.add_request(requester_id=999)
    response = quote_store.add_response(request)

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_EXPIRED,
        DispatchContext(quote_request=request, quote_response=response),
    )

    assert result.success is True
    assert [n.recipient_id for n in notification_sink.notifications] == [quote_store.partner_user.id]


@pytest.mark.asyncio
async def test_partner_application_goes_to_admins(dispatcher, notification_sink, quote_store):
    result = await dispatcher.dispatch(
        NotificationEvent.PARTNER_APPLICATION_CREATED,
        DispatchContext(
            extra={
                "applicantName": "Grace Hopper",
                "applicantCompany": "Hopper Repairs",
                "serviceCategory": "Plumbing",
                "relatedEntityId": 77,
            }
        ),
    )

    assert result.recipients == 1
    notification = notification_sink.notifications[0]
    assert notification.recipient_id == quote_store.admin.id
    assert notification.related_entity_type == "partner_application"
    assert notification.related_entity_id == 77
    assert "Grace Hopper (Hopper Repairs)" in notification.message


@pytest.mark.asyncio
async def test_recipient_lookup_failure_is_reported(dispatcher, quote_store, monkeypatch):
    async def boom(user_id):
        raise RuntimeError("db down")

    monkeypatch.setattr(quote_store, "get_user_by_id", boom)
    request = quote_store.add_request()

    result = await dispatcher.dispatch(
        NotificationEvent.QUOTE_REQUEST_CREATED, DispatchContext(quote_request=request)
    )

    assert result.success is False
    assert "db down" in result.error
