import asyncio
from uuid import uuid4

import pytest
from aioresponses import aioresponses

from webpush_dispatch.config_loader import WebPushPublisherSettings, WebPushSenderSettings
from webpush_dispatch.encryption import generate_key
from webpush_dispatch.models import Subscription, SubscriptionInfo, SubscriptionKeys, WebPushMessage
from webpush_dispatch.queue import InMemoryMessageQueue
from webpush_dispatch.senders import SenderState
from webpush_dispatch.service import WebPushDispatchService

PUSH_API_URL = "https://push-api.example"
DOMAIN = "example.com"


def contact(contact_id):
    return SubscriptionInfo(
        push_contact_id=contact_id,
        domain=DOMAIN,
        visitor_guid=f"visitor-{contact_id}",
        subscription=Subscription(
            endpoint=f"https://push.example/{contact_id}",
            keys=SubscriptionKeys(p256dh="p256", auth="auth"),
        ),
    )


def gateway_body(is_success, code=None):
    entry = {"isSuccess": is_success}
    if code is not None:
        entry["exception"] = {"messagingErrorCode": code, "message": "error"}
    return {"responses": [entry]}


@pytest.mark.asyncio
async def test_domain_send_flows_into_hourly_stats(tmp_path):
    queue = InMemoryMessageQueue(poll_interval=0.01)
    service = WebPushDispatchService(
        db_path=str(tmp_path / "service.db"),
        sender_settings=WebPushSenderSettings(push_api_url=PUSH_API_URL, concurrency=2),
        publisher_settings=WebPushPublisherSettings(batch_size=2),
        token_key=generate_key(),
        queue=queue,
    )
    await service.start()
    assert service.status()["sender_state"] == SenderState.SUBSCRIBED.value

    for contact_id in ("c1", "c2", "c3"):
        await service.persistence.add_push_contact(contact(contact_id))
    message = WebPushMessage(message_id=uuid4(), domain=DOMAIN, title="Hi", body="There")
    await service.persistence.add_message(message)

    with aioresponses() as m:
        m.post(f"{PUSH_API_URL}/webpush", status=200, payload=gateway_body(True))
        m.post(f"{PUSH_API_URL}/webpush", status=200, payload=gateway_body(True))
        m.post(f"{PUSH_API_URL}/webpush", status=200, payload=gateway_body(False, 410))

        processed = await service.publisher.publish_to_domain(DOMAIN, message)
        await asyncio.wait_for(queue.join(service.sender.queue_name), timeout=2)

    await service.stop()
    assert processed == 3
    assert service.sender.state is SenderState.STOPPED

    totals = await service.persistence.get_message_stats(DOMAIN, message.message_id)
    assert (totals.sent, totals.delivered, totals.not_delivered, totals.billable_sends) == (3, 2, 1, 3)
    remaining = [info async for info in service.persistence.stream_subscriptions_by_domain(DOMAIN)]
    assert len(remaining) == 2
    metrics = service.metrics.generate_latest()
    assert b"wpd_delivered_total 2.0" in metrics
    assert b"wpd_invalid_subscriptions_total 1.0" in metrics


def test_service_without_token_key_disables_callbacks(tmp_path):
    service = WebPushDispatchService(db_path=str(tmp_path / "service.db"))
    assert service.publisher._token_key is None
    assert service.status()["sender_state"] == SenderState.IDLE.value


@pytest.mark.asyncio
async def test_large_domain_send_keeps_every_hourly_count(tmp_path):
    contacts = 300
    queue = InMemoryMessageQueue(maxsize=20, poll_interval=0.01)
    service = WebPushDispatchService(
        db_path=str(tmp_path / "service.db"),
        sender_settings=WebPushSenderSettings(push_api_url=PUSH_API_URL, concurrency=4),
        publisher_settings=WebPushPublisherSettings(batch_size=25),
        token_key=generate_key(),
        queue=queue,
    )
    await service.start()
    for i in range(contacts):
        await service.persistence.add_push_contact(contact(f"c{i:03d}"))
    message = WebPushMessage(message_id=uuid4(), domain=DOMAIN, title="Hi", body="There")
    await service.persistence.add_message(message)

    with aioresponses() as m:
        m.post(f"{PUSH_API_URL}/webpush", status=200, payload=gateway_body(True), repeat=True)

        processed = await service.publisher.publish_to_domain(DOMAIN, message)
        await asyncio.wait_for(queue.join(service.sender.queue_name), timeout=30)

    await service.stop()
    assert processed == contacts

    totals = await service.persistence.get_message_stats(DOMAIN, message.message_id)
    assert totals.sent == contacts
    assert totals.sent == totals.delivered + totals.not_delivered
    assert totals.billable_sends == contacts
    counters = await service.persistence.get_message_counters(message.message_id)
    assert (counters.sent, counters.delivered) == (contacts, contacts)
    assert len(await service.persistence.list_web_push_events(message.message_id)) == contacts
