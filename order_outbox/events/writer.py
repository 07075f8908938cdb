"""
Transactional writer: one business mutation plus its Event Record(s),
committed as a single unit or not at all.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type, Union
from uuid import UUID

from tortoise import models
from tortoise.transactions import in_transaction

from order_outbox.core.db import STORE_ERRORS
from order_outbox.core.errors import NotFoundError, StoreError
from order_outbox.events.outbox_utility import create_outbox_event

log = logging.getLogger(__name__)

PayloadSource = Union[Dict[str, Any], Callable[[models.Model], Dict[str, Any]]]


@dataclass
class Mutation:
    """An insert (entity_id is None) or an update of one business entity."""
    model: Type[models.Model]
    values: Dict[str, Any] = field(default_factory=dict)
    entity_id: Optional[UUID] = None
    # Optional guard run on the locked entity before an update; raise to abort the unit
    precondition: Optional[Callable[[models.Model], None]] = None

    @property
    def is_insert(self) -> bool:
        return self.entity_id is None


async def _apply(mutation: Mutation, conn) -> models.Model:
    if mutation.is_insert:
        return await mutation.model.create(**mutation.values, using_db=conn)

    entity = await mutation.model.filter(id=mutation.entity_id).using_db(conn).select_for_update().first()
    if entity is None:
        raise NotFoundError(mutation.model.__name__, mutation.entity_id)
    if mutation.precondition is not None:
        mutation.precondition(entity)

    for name, value in mutation.values.items():
        setattr(entity, name, value)
    await entity.save(using_db=conn)
    return entity


async def submit_mutation_with_events(
    mutation: Mutation,
    events: Sequence[Tuple[str, PayloadSource]],
    aggregate_type: Optional[str] = None,
) -> Tuple[UUID, List[UUID]]:
    """
    Applies ``mutation`` and inserts one OutboxEvent per ``(event_type, payload)``
    pair inside one transaction, in the given order.

    A payload may be a callable receiving the mutated entity, so an insert can
    embed its store-assigned id. Returns ``(entity_id, [event_id, ...])``.

    Raises NotFoundError when the update target is absent and StoreError on any
    store failure; in both cases nothing is committed.
    """
    if not events:
        raise ValueError("At least one event is required.")
    aggregate_type = aggregate_type or mutation.model.__name__.lower()
    event_types = ", ".join(event_type for event_type, _ in events)
    try:
        async with in_transaction() as conn:
            entity = await _apply(mutation, conn)
            event_ids = []
            for event_type, payload in events:
                body = payload(entity) if callable(payload) else payload
                event = await create_outbox_event(
                    aggregate_type=aggregate_type,
                    aggregate_id=entity.pk,
                    event_type=event_type,
                    payload=body,
                    conn=conn
                )
                event_ids.append(event.id)
    except STORE_ERRORS as e:
        log.error(f"Store failure writing {event_types} for {aggregate_type}: {e}")
        raise StoreError(f"Could not commit {event_types}: {e}") from e

    log.info(f"Committed {aggregate_type} {entity.pk} with outbox events {event_types} ({len(event_ids)})")
    return entity.pk, event_ids


async def submit_mutation_with_event(
    mutation: Mutation,
    event_type: str,
    payload: PayloadSource,
    aggregate_type: Optional[str] = None,
) -> Tuple[UUID, UUID]:
    """Single-event form of submit_mutation_with_events. Returns ``(entity_id, event_id)``."""
    entity_id, (event_id,) = await submit_mutation_with_events(
        mutation, [(event_type, payload)], aggregate_type=aggregate_type
    )
    return entity_id, event_id
