"""
Idempotent Consumer

Per message: identity check -> inbox insert (unique message_id) -> handler -> ack.

The inbox insert is the dedup gate. Once it has committed, the message is
acknowledged no matter what the handler does; a failing handler leaves the
inbox row in ``failed`` and InboxRetrySweeper re-runs it from the stored
payload instead of relying on bus redelivery.
"""
import asyncio
import json
import logging
import signal
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from aio_pika.abc import AbstractIncomingMessage
from tortoise import timezone
from tortoise.exceptions import IntegrityError, ValidationError
from tortoise.expressions import F, Q
from tortoise.transactions import in_transaction

from order_outbox.consumers.order_events import HANDLERS
from order_outbox.core.bus import MessageBus
from order_outbox.core.config import (
    CONSUMER_PREFETCH,
    INBOX_MAX_ATTEMPTS,
    INBOX_STALE_SECONDS,
    INBOX_SWEEP_INTERVAL,
    QUEUE_NAME,
    ROUTING_KEYS,
)
from order_outbox.core.db import STORE_ERRORS, close_db, init_db
from order_outbox.core.errors import ClaimLostError, MalformedMessageError
from order_outbox.core.log import configure_logging
from order_outbox.models.inbox import (
    MESSAGE_ID_MAX_LENGTH,
    ROUTING_KEY_MAX_LENGTH,
    InboxRecord,
    InboxStatus,
)

log = logging.getLogger(__name__)

# handler(payload, message_id, conn): runs inside the transaction that marks the inbox row done
Handler = Callable[[Any, str, Any], Awaitable[None]]

MAX_ERROR_LENGTH = 1000


def decode_message(message: AbstractIncomingMessage) -> Tuple[str, Any]:
    """Returns (message_id, payload); raises MalformedMessageError when either is unusable."""
    try:
        body = json.loads(message.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedMessageError(f"Undecodable body: {e}") from e

    envelope_id = body.get("messageId") if isinstance(body, dict) else None
    message_id = message.message_id or envelope_id
    if not message_id:
        raise MalformedMessageError("Message has no messageId and cannot be deduplicated")
    if len(str(message_id)) > MESSAGE_ID_MAX_LENGTH:
        raise MalformedMessageError(f"messageId longer than {MESSAGE_ID_MAX_LENGTH} characters")
    if len(message.routing_key or "") > ROUTING_KEY_MAX_LENGTH:
        raise MalformedMessageError(f"Routing key longer than {ROUTING_KEY_MAX_LENGTH} characters")

    # Envelope {type, messageId, payload}; a bare body is treated as the payload itself
    if isinstance(body, dict) and "payload" in body and "type" in body:
        return str(message_id), body["payload"]
    return str(message_id), body


class IdempotentConsumer:
    def __init__(self, handlers: Dict[str, Handler]):
        self.handlers = handlers

    async def handle_message(self, message: AbstractIncomingMessage):
        routing_key = message.routing_key or ""

        # 1. Malformed: can never be deduplicated, reject without requeue
        try:
            message_id, payload = decode_message(message)
        except MalformedMessageError as e:
            log.warning(f"Rejecting message on '{routing_key}': {e}")
            await message.nack(requeue=False)
            return

        # 2./3. Dedup gate
        try:
            record = await InboxRecord.create(
                message_id=message_id,
                routing_key=routing_key,
                payload=payload,
                status=InboxStatus.PENDING,
                claimed_at=timezone.now(),
            )
        except IntegrityError:
            log.info(f"Duplicate message {message_id} on '{routing_key}', acknowledged without processing")
            await message.ack()
            return
        except ValidationError as e:
            log.warning(f"Rejecting message {message_id} on '{routing_key}': {e}")
            await message.nack(requeue=False)
            return
        except STORE_ERRORS as e:
            log.error(f"Inbox insert failed for {message_id}, requeueing: {e}")
            await message.nack(requeue=True)
            return

        # 4. Claimed: apply effects, then ack whatever the outcome; a row left pending is swept later
        try:
            await self.process(record)
        finally:
            await message.ack()

    async def process(self, record: InboxRecord) -> bool:
        """
        Runs the handler for a claimed inbox row and records done/failed. Returns True on success.

        Both status writes are conditional on the claim (pending, same attempts). If the
        sweeper reclaimed the row meanwhile, the handler's effects are rolled back and the
        row is left to the newer claim.
        """
        handler = self.handlers.get(record.routing_key)
        ours = InboxRecord.filter(id=record.id, status=InboxStatus.PENDING, attempts=record.attempts)
        try:
            async with in_transaction() as conn:
                if handler is None:
                    log.warning(f"No handler registered for '{record.routing_key}', recording {record.message_id} as done")
                else:
                    await handler(record.payload, record.message_id, conn)
                marked = await ours.using_db(conn).update(
                    status=InboxStatus.DONE,
                    processed_at=timezone.now(),
                    last_error=None,
                )
                if not marked:
                    raise ClaimLostError(f"Inbox record {record.message_id} was reclaimed (attempt {record.attempts})")
        except ClaimLostError as e:
            log.warning(f"{e}; discarding this run")
            return False
        except Exception as e:
            message = (str(e) or e.__class__.__name__)[:MAX_ERROR_LENGTH]
            log.error(f"Handler for {record.message_id} ('{record.routing_key}') failed: {message}")
            if not await ours.update(status=InboxStatus.FAILED, last_error=message):
                log.warning(f"Inbox record {record.message_id} was reclaimed, not recording this failure")
                return False
            record.status = InboxStatus.FAILED
            record.last_error = message
            return False

        record.status = InboxStatus.DONE
        log.info(f"Processed {record.message_id} ('{record.routing_key}')")
        return True

    async def start(
        self,
        bus: MessageBus,
        queue_name: str = QUEUE_NAME,
        routing_keys=None,
        prefetch: int = CONSUMER_PREFETCH,
    ):
        routing_keys = routing_keys or list(self.handlers)
        return await bus.consume(queue_name, routing_keys, self.handle_message, prefetch=prefetch)


class InboxRetrySweeper:
    """
    Re-runs handlers for inbox rows left ``failed`` (handler raised) or stuck in
    ``pending`` (consumer died mid-handler). Reclaiming is a conditional update on
    (status, attempts), so concurrent sweepers never run the same row twice.
    """

    def __init__(
        self,
        consumer: IdempotentConsumer,
        interval: float = INBOX_SWEEP_INTERVAL,
        max_attempts: int = INBOX_MAX_ATTEMPTS,
        stale_after: float = INBOX_STALE_SECONDS,
    ):
        self.consumer = consumer
        self.interval = interval
        self.max_attempts = max_attempts
        self.stale_after = stale_after
        self._running = False

    def _retryable(self, now) -> Q:
        stale = now - timedelta(seconds=self.stale_after)
        return Q(attempts__lt=self.max_attempts) & (
            Q(status=InboxStatus.FAILED)
            | Q(status=InboxStatus.PENDING, claimed_at__lt=stale)
        )

    async def reclaim(self, record: InboxRecord) -> bool:
        now = timezone.now()
        reclaimed = await InboxRecord.filter(
            id=record.id, status=record.status, attempts=record.attempts
        ).update(status=InboxStatus.PENDING, attempts=F("attempts") + 1, claimed_at=now)
        if reclaimed:
            record.claimed_at = now
            record.status = InboxStatus.PENDING
            record.attempts += 1
        return bool(reclaimed)

    async def sweep_once(self, limit: int = 50) -> int:
        """Retries one batch; returns how many rows were re-processed successfully."""
        now = timezone.now()
        records = await InboxRecord.filter(self._retryable(now)).order_by("received_at").limit(limit)
        succeeded = 0
        for record in records:
            if not await self.reclaim(record):
                continue
            log.info(f"Retrying {record.message_id} (attempt {record.attempts})")
            if await self.consumer.process(record):
                succeeded += 1
        return succeeded

    async def run_forever(self):
        self._running = True
        while self._running:
            try:
                await self.sweep_once()
            except STORE_ERRORS as e:
                log.error(f"Inbox sweep encountered a DB error: {e}.")
            except Exception:
                log.exception("Inbox sweep failed")
            await asyncio.sleep(self.interval)

    def stop(self):
        self._running = False


async def start_consumer(handlers: Optional[Dict[str, Handler]] = None):
    """Process entry point for the orders-service consumer."""
    configure_logging()
    await init_db()
    bus = MessageBus()
    try:
        await bus.connect()
    except Exception:
        await close_db()
        raise

    consumer = IdempotentConsumer(handlers or HANDLERS)
    sweeper = InboxRetrySweeper(consumer)
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await consumer.start(bus, routing_keys=ROUTING_KEYS)
        sweep_task = asyncio.create_task(sweeper.run_forever())
        log.info(f"Consumer started. queue={QUEUE_NAME} routingKeys={ROUTING_KEYS}")
        await shutdown.wait()
        sweeper.stop()
        await sweep_task
    finally:
        await bus.close()
        await close_db()


if __name__ == "__main__":
    asyncio.run(start_consumer())
