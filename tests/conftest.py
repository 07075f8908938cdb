import asyncio
import json
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from tortoise import Tortoise

from order_outbox.core.db import MODELS_MODULES


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database with all tables for each test."""
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": MODELS_MODULES})
    await Tortoise.generate_schemas()
    yield
    await Tortoise._drop_databases()


class RecordingPublisher:
    """Stands in for MessageBus.publish; optionally fails the first N calls."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.published: List[dict] = []
        self.calls = 0

    async def publish(self, routing_key: str, body: bytes, message_id: str):
        self.calls += 1
        # Yield like a real network round-trip so concurrent dispatchers interleave
        await asyncio.sleep(0)
        if self.calls <= self.fail_times:
            raise ConnectionError("broker unreachable")
        self.published.append({
            "routing_key": routing_key,
            "body": json.loads(body),
            "message_id": message_id,
        })


class FakeIncomingMessage:
    """Mimics aio_pika's AbstractIncomingMessage surface used by the consumer."""

    def __init__(self, body: bytes, routing_key: str = "OrderCreated", message_id: Optional[str] = None):
        self.body = body
        self.routing_key = routing_key
        self.message_id = message_id
        self.ack = AsyncMock()
        self.nack = AsyncMock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def flaky_publisher():
    """Publisher whose first publish call raises."""
    return RecordingPublisher(fail_times=1)


@pytest.fixture
def make_message():
    def factory(published: dict = None, **kwargs):
        if published is not None:
            return FakeIncomingMessage(
                body=json.dumps(published["body"]).encode(),
                routing_key=published["routing_key"],
                message_id=published["message_id"],
            )
        return FakeIncomingMessage(**kwargs)
    return factory
