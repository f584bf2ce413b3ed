"""Port definitions for the collaborators the dispatcher talks to."""

from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol
from uuid import UUID

from .models import MessageStats, SendMessageResponse, SubscriptionInfo, WebPushEvent

JsonDict = Dict[str, Any]
MessageHandler = Callable[[JsonDict], Awaitable[None]]


class QueueSubscription(Protocol):
    """Disposable handle returned by :meth:`MessageQueue.subscribe`."""

    def dispose(self) -> None:
        """Stop taking new messages. In-flight handlers are left to finish."""

    async def wait_closed(self) -> None:
        """Wait until every consumer worker has exited."""


class MessageQueue(Protocol):
    """Durable publish/subscribe contract. Delivery is at-least-once."""

    async def publish(self, queue_name: str, message: JsonDict) -> None:
        """Publish one message on ``queue_name``."""

    async def subscribe(self, queue_name: str, handler: MessageHandler, *, concurrency: int = 1) -> QueueSubscription:
        """Start consuming ``queue_name`` with at most ``concurrency`` handlers in flight."""


class ContactStore(Protocol):
    """Recipient/subscription registry."""

    def stream_subscriptions_by_domain(self, domain: str) -> AsyncIterator[SubscriptionInfo]:
        """Return a lazy, finite stream of the active subscriptions of a domain."""

    async def get_subscriptions_by_visitor(self, domain: str, visitor_guid: str) -> List[SubscriptionInfo]:
        """Return the active subscriptions of one visitor."""

    async def mark_deleted(self, endpoint: str) -> int:
        """Flag contacts registered with ``endpoint`` as deleted."""


class StatsRepository(Protocol):
    """Counter storage used by the delivery pipeline."""

    async def upsert_message_stats(self, stats: MessageStats) -> None:
        """Atomically increment (or create) one hourly bucket."""

    async def increment_message_counters(
        self,
        message_id: UUID,
        sent: int,
        delivered: int,
        not_delivered: int,
        billable_sends: int = 0,
    ) -> bool:
        """Best-effort update of the all-time counters of a message."""

    async def insert_web_push_event(self, event: WebPushEvent) -> bool:
        """Best-effort append to the event log."""


class PushGateway(Protocol):
    """Client of the external service that speaks the web push protocol."""

    async def send(self, payload: JsonDict) -> Optional[SendMessageResponse]:
        """Send one notification request; raise on transport or protocol failure."""
