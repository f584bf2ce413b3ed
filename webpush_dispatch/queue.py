"""In-process implementation of the publish/subscribe queue contract.

Each named queue is a bounded :class:`asyncio.Queue`. Publishers wait for
room up to ``publish_timeout`` seconds; consumers run as a fixed pool of
worker tasks per subscription. Messages travel as JSON-compatible dicts so
handlers see exactly what a networked broker would hand them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .logger import get_logger
from .ports import JsonDict, MessageHandler


class QueueFullError(RuntimeError):
    """Raised when a message cannot be enqueued before the publish timeout expires."""

    def __init__(self, queue_name: str):
        super().__init__(f"Timed out while publishing into queue '{queue_name}'")
        self.queue_name = queue_name


class InMemorySubscription:
    """Worker pool consuming one named queue until disposed."""

    def __init__(
        self,
        queue_name: str,
        queue: asyncio.Queue,
        handler: MessageHandler,
        *,
        concurrency: int,
        poll_interval: float,
        logger: logging.Logger,
    ):
        self.queue_name = queue_name
        self._queue = queue
        self._handler = handler
        self._poll_interval = poll_interval
        self.logger = logger
        self._stop = asyncio.Event()
        self._workers: List[asyncio.Task] = [
            asyncio.create_task(self._worker_loop(), name=f"{queue_name}-worker-{index}")
            for index in range(max(1, int(concurrency)))
        ]

    @property
    def concurrency(self) -> int:
        return len(self._workers)

    @property
    def disposed(self) -> bool:
        return self._stop.is_set()

    def dispose(self) -> None:
        """Stop taking new messages. Handlers already running are left to finish."""
        self._stop.set()

    async def wait_closed(self) -> None:
        await asyncio.gather(*self._workers, return_exceptions=True)

    async def close(self) -> None:
        self.dispose()
        await self.wait_closed()

    async def _next_message(self) -> Optional[JsonDict]:
        try:
            async with asyncio.timeout(self._poll_interval):
                return await self._queue.get()
        except TimeoutError:
            return None

    async def _worker_loop(self) -> None:
        while not self._stop.is_set():
            message = await self._next_message()
            if message is None:
                continue
            try:
                await self._handler(message)
            except Exception as exc:
                self.logger.exception("Unhandled error while handling message from %s: %s", self.queue_name, exc)
            finally:
                self._queue.task_done()


class InMemoryMessageQueue:
    """Bounded in-process broker implementing :class:`ports.MessageQueue`."""

    def __init__(
        self,
        *,
        maxsize: int = 10000,
        publish_timeout: float = 5.0,
        poll_interval: float = 0.1,
        logger: logging.Logger | None = None,
    ):
        self._maxsize = max(0, int(maxsize))
        self._publish_timeout = publish_timeout
        self._poll_interval = poll_interval
        self.logger = logger or get_logger("MessageQueue")
        self._queues: Dict[str, asyncio.Queue] = {}
        self._subscriptions: List[InMemorySubscription] = []

    def _get_queue(self, queue_name: str) -> asyncio.Queue:
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._maxsize)
            self._queues[queue_name] = queue
        return queue

    @staticmethod
    def _serialise(message: Any) -> JsonDict:
        if isinstance(message, BaseModel):
            return message.model_dump(mode="json")
        return dict(message)

    async def publish(self, queue_name: str, message: Any) -> None:
        """Enqueue ``message`` on ``queue_name``, waiting for room up to the publish timeout."""
        queue = self._get_queue(queue_name)
        try:
            await asyncio.wait_for(queue.put(self._serialise(message)), timeout=self._publish_timeout)
        except asyncio.TimeoutError:
            self.logger.error("Timed out while publishing into %s queue", queue_name)
            raise QueueFullError(queue_name) from None

    async def subscribe(
        self, queue_name: str, handler: MessageHandler, *, concurrency: int = 1
    ) -> InMemorySubscription:
        subscription = InMemorySubscription(
            queue_name,
            self._get_queue(queue_name),
            handler,
            concurrency=concurrency,
            poll_interval=self._poll_interval,
            logger=self.logger,
        )
        self._subscriptions.append(subscription)
        self.logger.debug("Subscribed to %s with %d worker(s)", queue_name, subscription.concurrency)
        return subscription

    def qsize(self, queue_name: str) -> int:
        queue = self._queues.get(queue_name)
        return queue.qsize() if queue is not None else 0

    async def join(self, queue_name: str) -> None:
        """Wait until every message published on ``queue_name`` has been handled."""
        await self._get_queue(queue_name).join()

    async def close(self) -> None:
        """Dispose every subscription and wait for their workers to exit."""
        for subscription in self._subscriptions:
            subscription.dispose()
        await asyncio.gather(*(sub.wait_closed() for sub in self._subscriptions), return_exceptions=True)
        self._subscriptions.clear()
