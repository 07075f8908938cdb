"""
RabbitMQ access for the dispatcher and the consumer.

One MessageBus is created per process at startup and passed to the
components that need it; nothing here is a module-level singleton.
"""
import logging
from typing import Awaitable, Callable, Iterable, Optional

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from order_outbox.core.config import EXCHANGE_NAME, RABBIT_URL

log = logging.getLogger(__name__)

MessageCallback = Callable[[AbstractIncomingMessage], Awaitable[None]]


class MessageBus:
    """Durable topic exchange with publisher confirms and manual-ack consumers."""

    def __init__(self, url: str = RABBIT_URL, exchange_name: str = EXCHANGE_NAME):
        self.url = url
        self.exchange_name = exchange_name
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None

    @property
    def connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self):
        """Opens the connection and declares the exchange. Failure here is fatal to the caller."""
        try:
            self._connection = await aio_pika.connect_robust(self.url)
            # publisher_confirms makes publish() wait for the broker to persist the message
            self._channel = await self._connection.channel(publisher_confirms=True)
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            log.critical(f"Could not connect to RabbitMQ at {self.url}: {e}")
            raise
        log.info(f"Connected to RabbitMQ, exchange '{self.exchange_name}' ready")

    async def publish(self, routing_key: str, body: bytes, message_id: str):
        """Publishes a persistent JSON message. Raises on broker nack or lost connection."""
        if self._exchange is None:
            raise RuntimeError("MessageBus.publish called before connect()")

        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message_id,
        )
        await self._exchange.publish(message, routing_key=routing_key)

    async def consume(
        self,
        queue_name: str,
        routing_keys: Iterable[str],
        callback: MessageCallback,
        prefetch: int = 10,
    ) -> AbstractQueue:
        """Declares a durable queue bound to ``routing_keys`` and starts consuming with manual ack."""
        if self._channel is None or self._exchange is None:
            raise RuntimeError("MessageBus.consume called before connect()")

        # Bounds how many unacknowledged messages this consumer holds at once
        await self._channel.set_qos(prefetch_count=prefetch)
        routing_keys = list(routing_keys)
        queue = await self._channel.declare_queue(queue_name, durable=True)
        for routing_key in routing_keys:
            await queue.bind(self._exchange, routing_key=routing_key)
        await queue.consume(callback, no_ack=False)

        log.info(f"Consuming queue '{queue_name}' bound to {routing_keys} (prefetch={prefetch})")
        return queue

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None
        log.info("Disconnected from RabbitMQ")
