"""Fan-out of web push messages into per-recipient push tasks.

Two modes are supported:

* targeted: an explicit visitor list, optionally personalized per visitor;
  runs inside the caller and reports rejected visitors.
* domain-wide: every active subscription of a domain, consumed as a lazy
  stream and published in bounded chunks by a background task.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Iterable, List, Optional, Set

from pydantic import BaseModel, Field

from .config_loader import WebPushPublisherSettings
from .endpoints import build_event_endpoint, get_queue_name
from .logger import get_logger
from .models import PushTask, SubscriptionInfo, VisitorFields, WebPushMessage
from .personalization import find_missing_placeholders, resolve
from .ports import ContactStore, MessageQueue
from .prometheus import PushMetrics


class RejectedVisitor(BaseModel):
    """Visitor skipped because mandatory placeholders had no value."""

    visitor_guid: str
    missing_in_title: List[str] = Field(default_factory=list)
    missing_in_body: List[str] = Field(default_factory=list)


class PublishResult(BaseModel):
    published: int = 0
    rejected: List[RejectedVisitor] = Field(default_factory=list)


class WebPushPublisher:
    """Turn send requests into push tasks published on the delivery queues."""

    def __init__(
        self,
        settings: WebPushPublisherSettings,
        *,
        queue: MessageQueue,
        contact_store: ContactStore,
        token_key: bytes | None = None,
        metrics: PushMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings
        self.queue = queue
        self.contact_store = contact_store
        self.metrics = metrics or PushMetrics()
        self.logger = logger or get_logger("WebPushPublisher")
        self._token_key = token_key
        self._tasks: Set[asyncio.Task] = set()

    @property
    def batch_size(self) -> int:
        return self.settings.batch_size

    def get_queue_name(self, endpoint: Optional[str]) -> str:
        return get_queue_name(endpoint, self.settings.push_endpoint_mappings)

    def _event_endpoint(self, template: Optional[str], push_contact_id: str, message: WebPushMessage) -> Optional[str]:
        return build_event_endpoint(
            template,
            self.settings.push_contact_api_url,
            push_contact_id,
            str(message.message_id),
            self._token_key,
        )

    def build_task(self, message: WebPushMessage, info: SubscriptionInfo, domain: Optional[str] = None) -> PushTask:
        """Return the push task delivering ``message`` to the recipient described by ``info``."""
        return PushTask(
            message_id=message.message_id,
            domain=domain or message.domain,
            push_contact_id=info.push_contact_id,
            subscription=info.subscription,
            title=message.title,
            body=message.body,
            on_click_link=message.on_click_link,
            image_url=message.image_url,
            icon_url=message.icon_url,
            actions=message.actions,
            clicked_event_endpoint=self._event_endpoint(
                self.settings.clicked_event_endpoint_path, info.push_contact_id, message
            ),
            received_event_endpoint=self._event_endpoint(
                self.settings.received_event_endpoint_path, info.push_contact_id, message
            ),
            correlation_id=str(uuid.uuid4()),
        )

    async def _publish(self, message: WebPushMessage, info: SubscriptionInfo, domain: Optional[str] = None) -> None:
        task = self.build_task(message, info, domain)
        queue_name = self.get_queue_name(task.subscription.endpoint)
        await self.queue.publish(queue_name, task.model_dump(mode="json"))
        self.metrics.inc_published(queue_name)

    # ------------------------------------------------------------ targeted mode
    async def publish_to_visitors(
        self,
        message: WebPushMessage,
        visitors: Iterable[VisitorFields],
        replacement_is_mandatory: bool = False,
    ) -> PublishResult:
        """Publish ``message`` to the subscriptions of each visitor.

        Visitors carrying fields get a personalized title and body. When
        ``replacement_is_mandatory`` is set, a visitor whose fields leave any
        placeholder unresolved is rejected and nothing is published for it.
        """
        result = PublishResult()
        for visitor in visitors:
            visitor_message = message
            if visitor.replace_fields:
                missing_in_title = find_missing_placeholders(message.title, visitor.fields)
                missing_in_body = find_missing_placeholders(message.body, visitor.fields)
                if replacement_is_mandatory and (missing_in_title or missing_in_body):
                    rejected = RejectedVisitor(
                        visitor_guid=visitor.visitor_guid,
                        missing_in_title=sorted(missing_in_title),
                        missing_in_body=sorted(missing_in_body),
                    )
                    self.logger.warning(
                        "Missing replacements for message %s and visitor %s: title=%s body=%s",
                        message.message_id,
                        visitor.visitor_guid,
                        rejected.missing_in_title,
                        rejected.missing_in_body,
                    )
                    result.rejected.append(rejected)
                    continue
                visitor_message = message.model_copy(
                    update={
                        "title": resolve(message.title, visitor.fields),
                        "body": resolve(message.body, visitor.fields),
                    }
                )

            subscriptions = await self.contact_store.get_subscriptions_by_visitor(message.domain, visitor.visitor_guid)
            for info in subscriptions:
                if not info.is_valid():
                    continue
                await self._publish(visitor_message, info)
                result.published += 1

        self.logger.info(
            "Published %d push task(s) for message %s, %d visitor(s) rejected",
            result.published,
            message.message_id,
            len(result.rejected),
        )
        return result

    # --------------------------------------------------------- domain-wide mode
    def publish_to_domain(self, domain: str, message: WebPushMessage) -> asyncio.Task:
        """Start fanning ``message`` out to every subscription of ``domain`` and return immediately."""
        task = asyncio.create_task(self._fan_out_domain(domain, message), name=f"fan-out-{domain}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _publish_chunk(self, message: WebPushMessage, chunk: List[SubscriptionInfo], domain: str) -> None:
        results = await asyncio.gather(
            *(self._publish(message, info, domain) for info in chunk),
            return_exceptions=True,
        )
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome

    async def _fan_out_domain(self, domain: str, message: WebPushMessage) -> int:
        """Stream the domain subscriptions and publish them chunk by chunk. Returns the processed count."""
        self.logger.info("Starting to process webpush for domain %s, message %s", domain, message.message_id)
        processed = 0
        chunk_index = 0
        chunk: List[SubscriptionInfo] = []
        stream = self.contact_store.stream_subscriptions_by_domain(domain)
        try:
            async for info in stream:
                if not info.is_valid():
                    continue
                chunk.append(info)
                if len(chunk) >= self.batch_size:
                    await self._publish_chunk(message, chunk, domain)
                    processed += len(chunk)
                    chunk_index += 1
                    self.logger.debug("Processed subscriptions batch #%d, processed so far: %d", chunk_index, processed)
                    chunk = []
            if chunk:
                await self._publish_chunk(message, chunk, domain)
                processed += len(chunk)
                chunk_index += 1
                self.logger.debug("Processed final subscriptions batch #%d, processed: %d", chunk_index, processed)
        except Exception as exc:
            self.logger.error(
                "An unexpected error occurred processing webpush for domain %s and message %s: %s",
                domain,
                message.message_id,
                exc,
            )
            return processed
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self.logger.info("Finished processing %d subscription(s) for domain %s", processed, domain)
        return processed

    async def wait_closed(self) -> None:
        """Wait for every pending domain-wide fan-out."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
