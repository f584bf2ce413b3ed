import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from webpush_dispatch.models import (
    MessageStats,
    Subscription,
    SubscriptionInfo,
    SubscriptionKeys,
    WebPushEvent,
    WebPushEventSubType,
    WebPushEventType,
    WebPushMessage,
)
from webpush_dispatch.persistence import Persistence
from webpush_dispatch.stats import map_event_to_stats, map_events_to_stats, sum_stats

DOMAIN = "example.com"
HOUR = datetime(2024, 5, 6, 7, 0, tzinfo=timezone.utc)


async def make_persistence(tmp_path, name="stats.db"):
    p = Persistence(str(tmp_path / name))
    await p.init_db()
    return p


def contact(contact_id, endpoint, visitor_guid="visitor-1", p256dh="key", auth="auth", domain=DOMAIN):
    return SubscriptionInfo(
        push_contact_id=contact_id,
        domain=domain,
        visitor_guid=visitor_guid,
        subscription=Subscription(endpoint=endpoint, keys=SubscriptionKeys(p256dh=p256dh, auth=auth)),
    )


@pytest.mark.asyncio
async def test_upsert_creates_then_increments(tmp_path):
    p = await make_persistence(tmp_path)
    message_id = uuid4()
    delta = MessageStats(domain=DOMAIN, message_id=message_id, date=HOUR, sent=2, delivered=1, not_delivered=1)

    await p.upsert_message_stats(delta)
    await p.upsert_message_stats(delta)

    rows = await p.list_message_stats(DOMAIN, [message_id])
    assert len(rows) == 1
    assert (rows[0].sent, rows[0].delivered, rows[0].not_delivered) == (4, 2, 2)
    assert rows[0].date == HOUR


@pytest.mark.asyncio
async def test_upsert_rejects_none(tmp_path):
    p = await make_persistence(tmp_path)
    with pytest.raises(ValueError):
        await p.upsert_message_stats(None)


@pytest.mark.asyncio
async def test_concurrent_upserts_do_not_lose_updates(tmp_path):
    p = await make_persistence(tmp_path)
    message_id = uuid4()
    delta = MessageStats(domain=DOMAIN, message_id=message_id, date=HOUR, sent=1, delivered=1, billable_sends=1)

    await asyncio.gather(*(p.upsert_message_stats(delta) for _ in range(25)))

    totals = await p.get_message_stats(DOMAIN, message_id)
    assert totals.sent == 25
    assert totals.delivered == 25
    assert totals.billable_sends == 25


@pytest.mark.asyncio
async def test_sequential_upserts_match_one_bulk_upsert(tmp_path):
    single = await make_persistence(tmp_path, "single.db")
    bulk = await make_persistence(tmp_path, "bulk.db")
    message_id = uuid4()
    events = [
        WebPushEvent(domain=DOMAIN, message_id=message_id, date=HOUR + timedelta(minutes=i), type=event_type)
        for i, event_type in enumerate(
            [WebPushEventType.DELIVERED, WebPushEventType.DELIVERY_FAILED, WebPushEventType.RECEIVED]
        )
    ]

    for event in events:
        await single.upsert_message_stats(map_event_to_stats(event))
    applied = await bulk.bulk_upsert_message_stats(map_events_to_stats(events))

    assert applied == 1
    assert await single.list_message_stats(DOMAIN) == await bulk.list_message_stats(DOMAIN)
    assert await bulk.bulk_upsert_message_stats([]) == 0


@pytest.mark.asyncio
async def test_stats_filters_and_totals(tmp_path):
    p = await make_persistence(tmp_path)
    first, second = uuid4(), uuid4()
    rows = [
        MessageStats(domain=DOMAIN, message_id=first, date=HOUR, sent=1, delivered=1),
        MessageStats(domain=DOMAIN, message_id=first, date=HOUR + timedelta(hours=1), sent=2, not_delivered=2),
        MessageStats(domain=DOMAIN, message_id=second, date=HOUR, click=3),
        MessageStats(domain="other.com", message_id=first, date=HOUR, sent=9, delivered=9),
    ]
    await p.bulk_upsert_message_stats(rows)

    assert len(await p.list_message_stats(DOMAIN)) == 3
    only_first = await p.list_message_stats(DOMAIN, [first])
    assert [row.date for row in only_first] == [HOUR, HOUR + timedelta(hours=1)]

    ranged = await p.list_message_stats(DOMAIN, date_from=HOUR + timedelta(hours=1), date_to=HOUR + timedelta(hours=1))
    assert len(ranged) == 1

    totals = await p.get_message_stats(DOMAIN)
    assert (totals.sent, totals.delivered, totals.not_delivered, totals.click) == (3, 1, 2, 3)
    assert totals == sum_stats(await p.list_message_stats(DOMAIN))

    empty = await p.get_message_stats("missing.com")
    assert empty.sent == 0


@pytest.mark.asyncio
async def test_message_counters(tmp_path):
    p = await make_persistence(tmp_path)
    message = WebPushMessage(message_id=uuid4(), domain=DOMAIN, title="Hi", body="There")
    await p.add_message(message)

    assert await p.increment_message_counters(message.message_id, 1, 1, 0, 1) is True
    assert await p.increment_message_counters(message.message_id, 1, 0, 1) is True

    counters = await p.get_message_counters(message.message_id)
    assert (counters.sent, counters.delivered, counters.not_delivered, counters.billable_sends) == (2, 1, 1, 1)
    row = await p.get_message(message.message_id)
    assert row["title"] == "Hi"
    assert await p.get_message_counters(uuid4()) is None


@pytest.mark.asyncio
async def test_message_counter_failures_are_swallowed(tmp_path):
    p = Persistence(str(tmp_path / "missing-dir" / "nope.db"))
    assert await p.increment_message_counters(uuid4(), 1, 1, 0) is False


@pytest.mark.asyncio
async def test_unknown_message_counter_update_returns_false(tmp_path):
    p = await make_persistence(tmp_path)
    assert await p.increment_message_counters(uuid4(), 1, 1, 0) is False


@pytest.mark.asyncio
async def test_event_log(tmp_path):
    p = await make_persistence(tmp_path)
    message_id = uuid4()
    event = WebPushEvent(
        domain=DOMAIN,
        message_id=message_id,
        date=HOUR,
        type=WebPushEventType.DELIVERY_FAILED,
        sub_type=WebPushEventSubType.INVALID_SUBSCRIPTION,
        push_contact_id="c1",
        error_message="gone",
    )
    assert await p.insert_web_push_event(event) is True
    assert await p.list_web_push_events(message_id) == [event]


@pytest.mark.asyncio
async def test_streaming_skips_deleted_contacts(tmp_path):
    p = await make_persistence(tmp_path)
    await p.add_push_contact(contact("c1", "https://push.example/1"))
    await p.add_push_contact(contact("c2", "https://push.example/2", visitor_guid="visitor-2"))
    await p.add_push_contact(contact("c3", "https://push.example/3", domain="other.com"))

    removed = await p.mark_deleted("https://push.example/2")
    assert removed == 1
    assert await p.mark_deleted("https://push.example/2") == 0

    streamed = [info.push_contact_id async for info in p.stream_subscriptions_by_domain(DOMAIN)]
    assert streamed == ["c1"]

    by_visitor = await p.get_subscriptions_by_visitor(DOMAIN, "visitor-1")
    assert [info.push_contact_id for info in by_visitor] == ["c1"]
    assert by_visitor[0].subscription.keys.p256dh == "key"
    assert await p.get_subscriptions_by_visitor(DOMAIN, "visitor-2") == []


@pytest.mark.asyncio
async def test_writes_succeed_while_stream_is_suspended(tmp_path):
    p = await make_persistence(tmp_path)
    for i in range(250):
        await p.add_push_contact(contact(f"c{i:03d}", f"https://push.example/{i}", visitor_guid=f"visitor-{i}"))

    stream = p.stream_subscriptions_by_domain(DOMAIN, page_size=100)
    first = await stream.__anext__()
    assert first.push_contact_id == "c000"

    message_id = uuid4()
    await asyncio.wait_for(
        p.upsert_message_stats(MessageStats(domain=DOMAIN, message_id=message_id, date=HOUR, sent=1, delivered=1)),
        timeout=2,
    )
    assert await asyncio.wait_for(p.mark_deleted("https://push.example/150"), timeout=2) == 1

    rest = [info.push_contact_id async for info in stream]
    assert len(rest) == 248
    assert "c150" not in rest
    assert rest[0] == "c001" and rest[-1] == "c249"
    totals = await p.get_message_stats(DOMAIN, message_id)
    assert (totals.sent, totals.delivered) == (1, 1)
