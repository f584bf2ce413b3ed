"""Queue consumers that deliver push tasks through the push gateway.

Sender variants are looked up by configured type name in
:data:`SENDER_TYPES`. Every variant shares the classify-and-record pipeline
by composing a :class:`~webpush_dispatch.delivery.DeliveryRecorder`.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Type

from pydantic import ValidationError

from .classifier import classify_send_response, failed_processing_result
from .config_loader import WebPushSenderSettings
from .delivery import DeliveryRecorder
from .endpoints import build_action_event_endpoints
from .gateway import build_send_request
from .logger import get_logger
from .models import PushTask, WebPushEvent
from .ports import JsonDict, MessageQueue, PushGateway, QueueSubscription
from .prometheus import PushMetrics


class SenderState(str, Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    STOPPED = "stopped"


class WebPushSender(Protocol):
    """Capability shared by every sender variant."""

    state: SenderState

    async def start_listening(self) -> None:
        ...

    async def stop_listening(self) -> None:
        ...

    async def handle_message(self, task: PushTask) -> Optional[WebPushEvent]:
        ...


class DefaultWebPushSender:
    """Deliver each push task with one gateway call and record the outcome."""

    def __init__(
        self,
        settings: WebPushSenderSettings,
        *,
        queue: MessageQueue,
        gateway: PushGateway,
        recorder: DeliveryRecorder,
        token_key: bytes | None = None,
        metrics: PushMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings
        self.queue = queue
        self.gateway = gateway
        self.recorder = recorder
        self.metrics = metrics or recorder.metrics
        self.logger = logger or get_logger("WebPushSender")
        self._token_key = token_key
        self._subscription: Optional[QueueSubscription] = None
        self.state = SenderState.IDLE

    @property
    def queue_name(self) -> str:
        return self.settings.queue_name

    # ----------------------------------------------------------------- lifecycle
    async def start_listening(self) -> None:
        """Subscribe to the configured queue."""
        if self.state is SenderState.SUBSCRIBED:
            raise RuntimeError(f"Sender is already listening on {self.queue_name}")
        if self.state is SenderState.STOPPED:
            raise RuntimeError("A stopped sender cannot be restarted")
        self._subscription = await self.queue.subscribe(
            self.queue_name, self._on_message, concurrency=self.settings.concurrency
        )
        self.state = SenderState.SUBSCRIBED
        self.metrics.set_sender_active(True)
        self.logger.info("Listening on %s (concurrency=%d)", self.queue_name, self.settings.concurrency)

    async def stop_listening(self) -> None:
        """Stop intake of new tasks and wait for in-flight ones. Safe to call twice."""
        if self.state is SenderState.STOPPED:
            return
        was_subscribed = self.state is SenderState.SUBSCRIBED
        self.state = SenderState.STOPPED
        if self._subscription is not None:
            self._subscription.dispose()
            await self._subscription.wait_closed()
            self._subscription = None
        if was_subscribed:
            self.metrics.set_sender_active(False)
            self.logger.info("Stopped listening on %s", self.queue_name)

    # ------------------------------------------------------------------ messages
    async def _on_message(self, message: JsonDict) -> None:
        try:
            task = PushTask.model_validate(message)
        except ValidationError as exc:
            self.logger.error("Discarding malformed push task from %s: %s", self.queue_name, exc)
            return
        await self.handle_message(task)

    def _action_event_endpoints(self, task: PushTask) -> Dict[str, Optional[str]]:
        return build_action_event_endpoints(
            self.settings.action_click_event_endpoint_path,
            self.settings.push_contact_api_url,
            task.push_contact_id,
            str(task.message_id),
            self._token_key,
            (action.action for action in task.actions),
        )

    async def handle_message(self, task: PushTask) -> Optional[WebPushEvent]:
        """Send ``task`` through the gateway and record what happened."""
        payload = build_send_request(task, self._action_event_endpoints(task))
        try:
            response = await self.gateway.send(payload)
        except Exception as exc:
            self.logger.error(
                "An unexpected error occurred sending a web push to endpoint %s for push_contact_id %s: %s",
                task.subscription.endpoint,
                task.push_contact_id,
                exc,
            )
            result = failed_processing_result(str(exc))
        else:
            result = classify_send_response(response)
        return await self.recorder.record(task, result)


DEFAULT_SENDER_TYPE = "default"

SENDER_TYPES: Dict[str, Type[Any]] = {
    DEFAULT_SENDER_TYPE: DefaultWebPushSender,
}


def register_sender_type(name: str, sender_cls: Type[Any]) -> None:
    """Make ``sender_cls`` available under the configured type ``name``."""
    SENDER_TYPES[name.strip().lower()] = sender_cls


def create_sender(settings: WebPushSenderSettings, **collaborators: Any) -> WebPushSender:
    """Instantiate the sender variant configured in ``settings.type``.

    Unknown type names fall back to the default variant.
    """
    type_name = (settings.type or DEFAULT_SENDER_TYPE).strip().lower()
    sender_cls = SENDER_TYPES.get(type_name)
    if sender_cls is None:
        logger = collaborators.get("logger") or get_logger("WebPushSender")
        logger.warning("Unknown sender type '%s', using '%s'", settings.type, DEFAULT_SENDER_TYPE)
        sender_cls = SENDER_TYPES[DEFAULT_SENDER_TYPE]
    return sender_cls(settings, **collaborators)
