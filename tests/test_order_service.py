import pytest
from unittest.mock import patch
from uuid import uuid4

from tortoise.exceptions import OperationalError

from order_outbox.core.errors import InvalidTransitionError, NotFoundError, StoreError
from order_outbox.events import writer
from order_outbox.events.writer import Mutation, submit_mutation_with_event, submit_mutation_with_events
from order_outbox.models.order import Order, OrderStatus
from order_outbox.models.outbox import OutboxEvent
from order_outbox.services.order_service import (
    cancel_order,
    list_recent_orders,
    place_order,
    update_order_status,
)


@pytest.mark.asyncio
async def test_place_order_writes_exactly_one_pending_event(db):
    """Scenario A: the order and one OrderCreated event commit together."""
    order_id, event_id = await place_order("cust-1", [{"sku": "X", "qty": 1}])

    order = await Order.get(id=order_id)
    assert order.status == OrderStatus.CREATED

    events = await OutboxEvent.filter(aggregate_id=order_id)
    assert len(events) == 1
    event = events[0]
    assert event.id == event_id
    assert event.event_type == "OrderCreated"
    assert event.aggregate_type == "order"
    assert event.payload == {"orderId": str(order_id), "customerId": "cust-1", "items": [{"sku": "X", "qty": 1}]}
    assert event.published_at is None
    assert event.locked_at is None
    assert event.attempts == 0
    assert event.last_error is None


@pytest.mark.asyncio
async def test_each_mutation_gets_its_own_event(db):
    ids = [await place_order(f"cust-{n}", [{"sku": "A", "qty": n + 1}]) for n in range(3)]

    for order_id, event_id in ids:
        assert await OutboxEvent.filter(aggregate_id=order_id).count() == 1
    assert await OutboxEvent.all().count() == 3


@pytest.mark.asyncio
async def test_update_of_missing_order_leaves_store_untouched(db):
    """Scenario D: not found, no event, nothing changed."""
    await place_order("cust-1", [{"sku": "X", "qty": 1}])
    before = await OutboxEvent.all().count()

    with pytest.raises(NotFoundError):
        await update_order_status(uuid4(), OrderStatus.CONFIRMED)

    assert await OutboxEvent.all().count() == before
    assert await Order.filter(status=OrderStatus.CONFIRMED).count() == 0


@pytest.mark.asyncio
async def test_status_update_emits_event_in_same_unit(db):
    order_id, _ = await place_order("cust-1", [{"sku": "X", "qty": 1}])

    _, event_id = await update_order_status(order_id, OrderStatus.CONFIRMED)

    event = await OutboxEvent.get(id=event_id)
    assert event.event_type == "OrderStatusChanged"
    assert event.payload["status"] == "CONFIRMED"
    assert (await Order.get(id=order_id)).status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancel_carries_items_and_final_state_blocks_changes(db):
    order_id, _ = await place_order("cust-1", [{"sku": "X", "qty": 2}])

    _, event_id = await cancel_order(order_id)
    event = await OutboxEvent.get(id=event_id)
    assert event.event_type == "OrderCancelled"
    assert event.payload["items"] == [{"sku": "X", "qty": 2}]

    with pytest.raises(InvalidTransitionError):
        await update_order_status(order_id, OrderStatus.CONFIRMED)
    # The rejected transition must not have left an event behind
    assert await OutboxEvent.filter(aggregate_id=order_id).count() == 2


@pytest.mark.asyncio
async def test_failure_inside_unit_rolls_back_the_mutation(db):
    """If the event insert fails, the order insert is rolled back too."""
    with patch("order_outbox.events.writer.create_outbox_event", side_effect=OperationalError("disk I/O error")):
        with pytest.raises(StoreError) as excinfo:
            await place_order("cust-1", [{"sku": "X", "qty": 1}])

    assert excinfo.value.retryable
    assert await Order.all().count() == 0
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_submit_mutation_with_static_payload(db):
    entity_id, event_id = await submit_mutation_with_event(
        Mutation(model=Order, values={"customer_id": "c", "items": []}),
        event_type="OrderImported",
        payload={"source": "batch"},
    )

    event = await OutboxEvent.get(id=event_id)
    assert event.aggregate_id == entity_id
    assert event.payload == {"source": "batch"}


@pytest.mark.asyncio
async def test_place_order_requires_items(db):
    with pytest.raises(ValueError):
        await place_order("cust-1", [])
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_list_recent_orders_respects_limit(db):
    first, _ = await place_order("cust-1", [{"sku": "X", "qty": 1}])
    second, _ = await place_order("cust-2", [{"sku": "Y", "qty": 1}])

    assert len(await list_recent_orders(limit=1)) == 1
    assert {o.id for o in await list_recent_orders()} == {first, second}


@pytest.mark.asyncio
async def test_several_events_commit_with_one_mutation(db):
    entity_id, event_ids = await submit_mutation_with_events(
        Mutation(model=Order, values={"customer_id": "c", "items": [{"sku": "X", "qty": 1}]}),
        events=[
            ("OrderCreated", lambda order: {"orderId": str(order.id)}),
            ("OrderAudited", {"source": "import"}),
        ],
    )

    assert len(event_ids) == 2
    events = {e.id: e for e in await OutboxEvent.filter(aggregate_id=entity_id)}
    assert set(events) == set(event_ids)
    assert events[event_ids[0]].event_type == "OrderCreated"
    assert events[event_ids[0]].payload == {"orderId": str(entity_id)}
    assert events[event_ids[1]].event_type == "OrderAudited"


@pytest.mark.asyncio
async def test_failure_on_second_event_rolls_back_the_whole_unit(db):
    real_create = writer.create_outbox_event
    written = []

    async def fail_on_second(**kwargs):
        written.append(kwargs["event_type"])
        if len(written) == 2:
            raise OperationalError("disk full")
        return await real_create(**kwargs)

    with patch("order_outbox.events.writer.create_outbox_event", side_effect=fail_on_second):
        with pytest.raises(StoreError):
            await submit_mutation_with_events(
                Mutation(model=Order, values={"customer_id": "c", "items": []}),
                events=[("OrderCreated", {}), ("OrderAudited", {})],
            )

    assert written == ["OrderCreated", "OrderAudited"]
    assert await Order.all().count() == 0
    assert await OutboxEvent.all().count() == 0


@pytest.mark.asyncio
async def test_submit_requires_at_least_one_event(db):
    with pytest.raises(ValueError):
        await submit_mutation_with_events(Mutation(model=Order, values={"customer_id": "c", "items": []}), events=[])
    assert await Order.all().count() == 0
