import asyncio
import types
from uuid import uuid4

import pytest

from webpush_dispatch.models import PushTask, Subscription
from webpush_dispatch.queue import InMemoryMessageQueue, QueueFullError


def make_logger():
    records = []
    return types.SimpleNamespace(
        records=records,
        debug=lambda *a, **k: records.append(("debug", a)),
        info=lambda *a, **k: records.append(("info", a)),
        error=lambda *a, **k: records.append(("error", a)),
        exception=lambda *a, **k: records.append(("exception", a)),
    )


@pytest.mark.asyncio
async def test_publish_and_consume_json_messages():
    queue = InMemoryMessageQueue(poll_interval=0.01)
    received = []

    async def handler(message):
        received.append(message)

    subscription = await queue.subscribe("default.webpush.queue", handler, concurrency=2)
    task = PushTask(
        message_id=uuid4(),
        domain="example.com",
        subscription=Subscription(endpoint="https://push.example/1"),
        title="t",
        body="b",
    )
    await queue.publish("default.webpush.queue", task)
    await queue.publish("default.webpush.queue", {"hello": "world"})
    await asyncio.wait_for(queue.join("default.webpush.queue"), timeout=1)

    assert len(received) == 2
    assert {"hello": "world"} in received
    task_message = next(item for item in received if "message_id" in item)
    assert task_message["message_id"] == str(task.message_id)
    assert PushTask.model_validate(task_message) == task
    assert subscription.concurrency == 2
    await queue.close()


@pytest.mark.asyncio
async def test_publish_times_out_when_queue_is_full():
    logger = make_logger()
    queue = InMemoryMessageQueue(maxsize=1, publish_timeout=0.01, logger=logger)
    await queue.publish("q", {"n": 1})
    with pytest.raises(QueueFullError):
        await queue.publish("q", {"n": 2})
    assert queue.qsize("q") == 1
    assert any(level == "error" for level, _ in logger.records)


@pytest.mark.asyncio
async def test_handler_errors_are_logged_and_consumption_continues():
    logger = make_logger()
    queue = InMemoryMessageQueue(poll_interval=0.01, logger=logger)
    handled = []

    async def handler(message):
        if message["n"] == 1:
            raise RuntimeError("boom")
        handled.append(message["n"])

    await queue.subscribe("q", handler)
    for n in range(3):
        await queue.publish("q", {"n": n})
    await asyncio.wait_for(queue.join("q"), timeout=1)

    assert handled == [0, 2]
    assert any(level == "exception" for level, _ in logger.records)
    await queue.close()


@pytest.mark.asyncio
async def test_dispose_stops_intake_but_lets_in_flight_handlers_finish():
    queue = InMemoryMessageQueue(poll_interval=0.01)
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def handler(message):
        started.set()
        await release.wait()
        finished.append(message["n"])

    subscription = await queue.subscribe("q", handler)
    await queue.publish("q", {"n": 1})
    await asyncio.wait_for(started.wait(), timeout=1)

    subscription.dispose()
    await queue.publish("q", {"n": 2})
    release.set()
    await asyncio.wait_for(subscription.wait_closed(), timeout=1)

    assert finished == [1]
    assert queue.qsize("q") == 1
    assert subscription.disposed is True
