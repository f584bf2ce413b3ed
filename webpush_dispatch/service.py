"""Runtime wiring of the web push dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Dict

from .config_loader import WebPushPublisherSettings, WebPushSenderSettings
from .delivery import DeliveryRecorder
from .encryption import load_key
from .gateway import PushGatewayClient
from .logger import get_logger
from .persistence import Persistence
from .prometheus import PushMetrics
from .publisher import WebPushPublisher
from .queue import InMemoryMessageQueue
from .senders import create_sender


class WebPushDispatchService:
    """Own the collaborators of one dispatcher process and their lifecycle."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/webpush_dispatch.db",
        sender_settings: WebPushSenderSettings | None = None,
        publisher_settings: WebPushPublisherSettings | None = None,
        token_key: str | bytes | None = None,
        queue: Any = None,
        gateway: Any = None,
        metrics: PushMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        """Prepare the runtime collaborators; nothing is started yet."""
        self.logger = logger or get_logger()
        self.metrics = metrics or PushMetrics()
        self.sender_settings = sender_settings or WebPushSenderSettings()
        self.publisher_settings = publisher_settings or WebPushPublisherSettings()
        key = load_key(token_key) if token_key else None
        if key is None:
            self.logger.warning("No token key configured, interaction callback endpoints are disabled")

        self.persistence = Persistence(db_path or ":memory:", logger=get_logger("Persistence"))
        self.queue = queue or InMemoryMessageQueue(logger=get_logger("MessageQueue"))
        self.gateway = gateway or PushGatewayClient(
            self.sender_settings.push_api_url,
            timeout=self.sender_settings.request_timeout,
        )
        self.recorder = DeliveryRecorder(self.persistence, self.persistence, metrics=self.metrics)
        self.sender = create_sender(
            self.sender_settings,
            queue=self.queue,
            gateway=self.gateway,
            recorder=self.recorder,
            token_key=key,
            metrics=self.metrics,
        )
        self.publisher = WebPushPublisher(
            self.publisher_settings,
            queue=self.queue,
            contact_store=self.persistence,
            token_key=key,
            metrics=self.metrics,
        )

    async def start(self) -> None:
        """Create the schema and start consuming push tasks."""
        await self.persistence.init_db()
        await self.sender.start_listening()

    async def stop(self) -> None:
        """Stop intake, then wait for pending fan-outs and consumers."""
        await self.sender.stop_listening()
        await self.publisher.wait_closed()
        close = getattr(self.queue, "close", None)
        if close is not None:
            await close()

    def status(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "sender_state": self.sender.state.value,
            "queue_name": self.sender_settings.queue_name,
        }
