"""Pure aggregation of web push events into hour-bucketed message stats.

Every function here is side-effect free. The billing policy (which failed
deliveries the provider still charges for) is encoded once, in
:func:`billable_sends_count`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from .models import (
    CounterDeltas,
    MessageStats,
    MessageStatsPeriod,
    MessageStatsTotals,
    WebPushEvent,
    WebPushEventSubType,
    WebPushEventType,
)

NOT_DELIVERED_TYPES = frozenset(
    {
        WebPushEventType.DELIVERY_FAILED,
        WebPushEventType.PROCESSING_FAILED,
        WebPushEventType.DELIVERY_FAILED_BUT_RETRY,
    }
)

STATS_PERIODS = ("hour", "day", "month")

_COUNTER_FIELDS = (
    "sent",
    "delivered",
    "not_delivered",
    "received",
    "click",
    "action_click",
    "billable_sends",
)

GroupKey = Tuple[str, UUID, datetime]


def truncate_to_hour(value: datetime) -> datetime:
    """Return ``value`` at the top of its hour, in UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(minute=0, second=0, microsecond=0)


def _count_type(events: Iterable[WebPushEvent], event_type: WebPushEventType) -> int:
    return sum(1 for event in events if event.type == event_type)


def delivered_count(events: Optional[Iterable[WebPushEvent]]) -> int:
    if not events:
        return 0
    return _count_type(events, WebPushEventType.DELIVERED)


def not_delivered_count(events: Optional[Iterable[WebPushEvent]]) -> int:
    if not events:
        return 0
    return sum(1 for event in events if event.type in NOT_DELIVERED_TYPES)


def billable_sends_count(events: Optional[Iterable[WebPushEvent]]) -> int:
    """Delivered events plus failures caused by an invalid subscription."""
    if not events:
        return 0
    return sum(1 for event in events if _is_billable(event))


def _is_billable(event: WebPushEvent) -> bool:
    if event.type == WebPushEventType.DELIVERED:
        return True
    return (
        event.type == WebPushEventType.DELIVERY_FAILED
        and event.sub_type == WebPushEventSubType.INVALID_SUBSCRIPTION
    )


def _stats_for_group(domain: str, message_id: UUID, date: datetime, events: List[WebPushEvent]) -> MessageStats:
    delivered = delivered_count(events)
    not_delivered = not_delivered_count(events)
    return MessageStats(
        domain=domain,
        message_id=message_id,
        date=date,
        # sent is derived, never tallied on its own
        sent=delivered + not_delivered,
        delivered=delivered,
        not_delivered=not_delivered,
        billable_sends=billable_sends_count(events),
        received=_count_type(events, WebPushEventType.RECEIVED),
        click=_count_type(events, WebPushEventType.CLICKED),
        action_click=_count_type(events, WebPushEventType.ACTION_CLICK),
    )


def map_events_to_stats(events: Optional[Iterable[WebPushEvent]]) -> List[MessageStats]:
    """Group events by (domain, message_id, hour) and compute one stats row per group.

    Groups are returned in order of first appearance. ``None`` or an empty
    collection yields an empty list.
    """
    if events is None:
        return []

    groups: Dict[GroupKey, List[WebPushEvent]] = {}
    for event in events:
        key = (event.domain, event.message_id, truncate_to_hour(event.date))
        groups.setdefault(key, []).append(event)

    return [
        _stats_for_group(domain, message_id, date, group_events)
        for (domain, message_id, date), group_events in groups.items()
    ]


def map_event_to_stats(event: Optional[WebPushEvent]) -> Optional[MessageStats]:
    """Single-event form of :func:`map_events_to_stats`."""
    if event is None:
        return None
    return _stats_for_group(event.domain, event.message_id, truncate_to_hour(event.date), [event])


def message_counter_deltas(event: WebPushEvent) -> CounterDeltas:
    """Increments of the all-time message counters produced by one event."""
    delivered = 1 if event.type == WebPushEventType.DELIVERED else 0
    not_delivered = 1 if event.type in NOT_DELIVERED_TYPES else 0
    return CounterDeltas(
        sent=delivered + not_delivered,
        delivered=delivered,
        not_delivered=not_delivered,
        billable_sends=1 if _is_billable(event) else 0,
    )


def sum_stats(rows: Iterable[MessageStats]) -> MessageStatsTotals:
    """Add up the counters of any set of stats rows."""
    totals = {name: 0 for name in _COUNTER_FIELDS}
    for row in rows:
        for name in _COUNTER_FIELDS:
            totals[name] += getattr(row, name)
    return MessageStatsTotals(**totals)


def _period_start(value: datetime, period: str) -> datetime:
    bucket = truncate_to_hour(value)
    if period == "hour":
        return bucket
    if period == "day":
        return bucket.replace(hour=0)
    return bucket.replace(day=1, hour=0)


def group_stats_by_period(rows: Iterable[MessageStats], period: str = "day") -> List[MessageStatsPeriod]:
    """Roll hourly rows up into hour, day or month totals, ordered by period start."""
    if period not in STATS_PERIODS:
        raise ValueError(f"Unsupported period '{period}', expected one of {', '.join(STATS_PERIODS)}")

    grouped: Dict[datetime, List[MessageStats]] = {}
    for row in rows:
        grouped.setdefault(_period_start(row.date, period), []).append(row)

    return [
        MessageStatsPeriod(date=start, **sum_stats(grouped[start]).model_dump())
        for start in sorted(grouped)
    ]
