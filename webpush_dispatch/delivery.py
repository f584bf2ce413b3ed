"""Classify-and-record pipeline shared by every sender variant.

Turns the classification of one gateway call into at most one
:class:`WebPushEvent`, then feeds that event to the all-time message
counters, the hourly stats table and the event log. Invalid subscriptions
are also reported to the contact store. Nothing in here raises into the
delivery path: storage failures are logged and dropped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from .logger import get_logger
from .models import (
    ClassificationResult,
    DeliveryOutcome,
    PushTask,
    WebPushEvent,
    WebPushEventSubType,
    WebPushEventType,
)
from .ports import ContactStore, StatsRepository
from .prometheus import PushMetrics
from .stats import map_event_to_stats, message_counter_deltas

OUTCOME_EVENTS: Dict[DeliveryOutcome, Tuple[WebPushEventType, WebPushEventSubType]] = {
    DeliveryOutcome.DELIVERED: (WebPushEventType.DELIVERED, WebPushEventSubType.NONE),
    DeliveryOutcome.INVALID_SUBSCRIPTION: (
        WebPushEventType.DELIVERY_FAILED,
        WebPushEventSubType.INVALID_SUBSCRIPTION,
    ),
    DeliveryOutcome.UNKNOWN_FAILURE: (WebPushEventType.DELIVERY_FAILED, WebPushEventSubType.NONE),
    # TODO: route rate limited tasks to a delayed re-queue instead of counting them as sent
    DeliveryOutcome.RATE_LIMITED: (WebPushEventType.DELIVERY_FAILED_BUT_RETRY, WebPushEventSubType.NONE),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_event(task: PushTask, result: ClassificationResult, date: datetime) -> Optional[WebPushEvent]:
    """Return the event recorded for ``result``, or ``None`` when nothing must be recorded."""
    mapping = OUTCOME_EVENTS.get(result.outcome)
    if mapping is None:
        return None
    event_type, sub_type = mapping
    return WebPushEvent(
        domain=task.domain,
        message_id=task.message_id,
        push_contact_id=task.push_contact_id,
        date=date,
        type=event_type,
        sub_type=sub_type,
        error_message=result.error_message,
    )


class DeliveryRecorder:
    """Record delivery outcomes. Injected into senders."""

    def __init__(
        self,
        stats_repository: StatsRepository,
        contact_store: ContactStore,
        *,
        metrics: PushMetrics | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.stats_repository = stats_repository
        self.contact_store = contact_store
        self.metrics = metrics or PushMetrics()
        self.logger = logger or get_logger("DeliveryRecorder")
        self._clock = clock

    async def record(self, task: PushTask, result: ClassificationResult) -> Optional[WebPushEvent]:
        """Record the outcome of one gateway call and return the stored event, if any."""
        outcome = result.outcome
        self._log_outcome(task, result)
        self._count_outcome(outcome)

        event = build_event(task, result, self._clock())
        if event is None:
            return None

        await self._store_event(event)
        if outcome is DeliveryOutcome.INVALID_SUBSCRIPTION:
            await self._remove_subscription(task)
        return event

    def _log_outcome(self, task: PushTask, result: ClassificationResult) -> None:
        outcome = result.outcome
        endpoint = task.subscription.endpoint
        if outcome is DeliveryOutcome.DELIVERED:
            self.logger.debug("Web push delivered for message %s (push_contact_id=%s)", task.message_id, task.push_contact_id)
        elif outcome is DeliveryOutcome.RATE_LIMITED:
            self.logger.warning(
                "Too many requests for message %s: subscription=%s error=%s",
                task.message_id,
                endpoint,
                result.error_message,
            )
        elif outcome is DeliveryOutcome.INVALID_SUBSCRIPTION:
            self.logger.debug(
                "Invalid subscription for message %s: subscription=%s error=%s",
                task.message_id,
                endpoint,
                result.error_message,
            )
        elif outcome is DeliveryOutcome.UNKNOWN_FAILURE:
            self.logger.error(
                "Web push not delivered for message %s: subscription=%s error=%s",
                task.message_id,
                endpoint,
                result.error_message or "-",
            )
        elif outcome is DeliveryOutcome.NO_RESPONSE:
            self.logger.debug("Push gateway returned no response for message %s", task.message_id)

    def _count_outcome(self, outcome: DeliveryOutcome) -> None:
        if outcome is DeliveryOutcome.DELIVERED:
            self.metrics.inc_delivered()
        elif outcome is DeliveryOutcome.FAILED_PROCESSING:
            self.metrics.inc_processing_failed()
        elif outcome is DeliveryOutcome.RATE_LIMITED:
            self.metrics.inc_rate_limited()
            self.metrics.inc_not_delivered(outcome.value)
        elif outcome is DeliveryOutcome.INVALID_SUBSCRIPTION:
            self.metrics.inc_invalid_subscription()
            self.metrics.inc_not_delivered(outcome.value)
        elif outcome is DeliveryOutcome.UNKNOWN_FAILURE:
            self.metrics.inc_not_delivered(outcome.value)

    async def _store_event(self, event: WebPushEvent) -> None:
        deltas = message_counter_deltas(event)
        try:
            await self.stats_repository.increment_message_counters(
                event.message_id,
                deltas.sent,
                deltas.delivered,
                deltas.not_delivered,
                deltas.billable_sends,
            )
        except Exception as exc:
            self.logger.exception("Error updating message counters for message %s: %s", event.message_id, exc)
        try:
            await self.stats_repository.upsert_message_stats(map_event_to_stats(event))
        except Exception as exc:
            self.logger.exception("Error updating hourly stats for message %s: %s", event.message_id, exc)
        try:
            await self.stats_repository.insert_web_push_event(event)
        except Exception as exc:
            self.logger.exception("Error storing web push event for message %s: %s", event.message_id, exc)

    async def _remove_subscription(self, task: PushTask) -> None:
        endpoint = task.subscription.endpoint
        try:
            removed = await self.contact_store.mark_deleted(endpoint)
        except Exception as exc:
            self.logger.exception("Error marking subscription %s as deleted: %s", endpoint, exc)
            return
        self.logger.debug("Marked %s push contact(s) as deleted for endpoint %s", removed, endpoint)
