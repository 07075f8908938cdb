"""
Outbox Dispatcher

Moves OutboxEvent rows from pending to published:
claim (conditional UPDATE) -> publish to RabbitMQ -> mark.

Several dispatchers may run against the same database. The claim is a
compare-and-set on ``attempts``, so at most one of them wins a given row;
``locked_at`` is a lease that expires after ``lease_seconds``.
"""
import asyncio
import logging
import signal
from datetime import timedelta
from typing import Optional, Protocol

from tortoise import timezone
from tortoise.expressions import F, Q

from order_outbox.core.bus import MessageBus
from order_outbox.core.config import FAILURE_BACKOFF, OUTBOX_LEASE_SECONDS, POLLING_INTERVAL
from order_outbox.core.db import STORE_ERRORS, close_db, init_db
from order_outbox.core.log import configure_logging
from order_outbox.models.outbox import OutboxEvent
from order_outbox.schemas.event import EventEnvelope

log = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
CLAIM_CANDIDATES = 10 # Rows inspected per claim attempt before giving up to the next poll


class Publisher(Protocol):
    async def publish(self, routing_key: str, body: bytes, message_id: str): ...


class OutboxDispatcher:
    def __init__(
        self,
        publisher: Publisher,
        poll_interval: float = POLLING_INTERVAL,
        failure_backoff: float = FAILURE_BACKOFF,
        lease_seconds: float = OUTBOX_LEASE_SECONDS,
    ):
        self.publisher = publisher
        self.poll_interval = poll_interval
        self.failure_backoff = failure_backoff
        self.lease_seconds = lease_seconds
        self._running = False

    def _claimable(self, now) -> Q:
        unlocked = Q(locked_at__isnull=True)
        if self.lease_seconds > 0:
            # Expired leases come from dispatchers that crashed between claim and mark
            unlocked |= Q(locked_at__lt=now - timedelta(seconds=self.lease_seconds))
        return Q(published_at__isnull=True) & unlocked

    async def claim_next(self) -> Optional[OutboxEvent]:
        """
        Claims the oldest pending record, setting locked_at and incrementing attempts.
        Returns None (without writing anything) when nothing is claimable.
        """
        now = timezone.now()
        candidates = await (
            OutboxEvent.filter(self._claimable(now))
            .order_by("created_at", "id")
            .limit(CLAIM_CANDIDATES)
        )
        for candidate in candidates:
            # attempts is bumped by every claim, so it doubles as the row version
            claimed = await OutboxEvent.filter(
                self._claimable(now),
                id=candidate.id,
                attempts=candidate.attempts,
            ).update(locked_at=now, attempts=F("attempts") + 1)
            if claimed:
                candidate.locked_at = now
                candidate.attempts += 1
                return candidate
            log.debug(f"Lost claim race for {candidate}, trying next candidate")
        return None

    async def publish(self, event: OutboxEvent):
        envelope = EventEnvelope(type=event.event_type, message_id=str(event.id), payload=event.payload)
        await self.publisher.publish(
            routing_key=event.event_type,
            body=envelope.to_bytes(),
            message_id=str(event.id),
        )

    async def mark_published(self, event: OutboxEvent):
        now = timezone.now()
        await OutboxEvent.filter(id=event.id).update(published_at=now, last_error=None, locked_at=None)
        event.published_at = now
        event.last_error = None
        event.locked_at = None

    async def mark_failed(self, event: OutboxEvent, error: Exception):
        """Records the failure and releases the claim, unless another dispatcher has re-claimed it since."""
        message = (str(error) or error.__class__.__name__)[:MAX_ERROR_LENGTH]
        await OutboxEvent.filter(id=event.id, attempts=event.attempts).update(last_error=message, locked_at=None)
        event.last_error = message
        event.locked_at = None

    async def run_once(self) -> bool:
        """One claim -> publish -> mark pass. Returns False when there was nothing to claim."""
        event = await self.claim_next()
        if event is None:
            return False

        try:
            await self.publish(event)
        except Exception as e:
            log.error(f"Publish failed for {event} (attempt {event.attempts}): {e}")
            await self.mark_failed(event, e)
            await asyncio.sleep(self.failure_backoff)
            return True

        await self.mark_published(event)
        log.info(f"Published {event.event_type} {event.id} (attempt {event.attempts})")
        return True

    async def run_forever(self):
        """Main loop; only stop() or cancellation of the surrounding task ends it."""
        self._running = True
        log.info("--- Outbox Dispatcher Started ---")
        while self._running:
            try:
                handled = await self.run_once()
            except STORE_ERRORS as e:
                log.error(f"Dispatcher encountered a DB error: {e}.")
                handled = False
            except Exception:
                log.exception("Dispatcher iteration failed")
                handled = False
            if not handled:
                await asyncio.sleep(self.poll_interval)
        log.info("--- Outbox Dispatcher Stopped ---")

    def stop(self):
        self._running = False


async def start_outbox_dispatcher():
    """Process entry point: store and bus must both be reachable, otherwise the process exits."""
    configure_logging()
    await init_db()
    bus = MessageBus()
    try:
        await bus.connect()
    except Exception:
        await close_db()
        raise

    dispatcher = OutboxDispatcher(publisher=bus)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, dispatcher.stop)

    try:
        await dispatcher.run_forever()
    finally:
        await bus.close()
        await close_db()


if __name__ == "__main__":
    asyncio.run(start_outbox_dispatcher())
