from typing import List, Dict, Optional, Tuple
from uuid import UUID

from order_outbox.core.errors import InvalidTransitionError
from order_outbox.events.writer import Mutation, submit_mutation_with_event
from order_outbox.models.order import Order, OrderStatus, ALLOWED_TRANSITIONS

ORDER_CREATED = "OrderCreated"
ORDER_STATUS_CHANGED = "OrderStatusChanged"
ORDER_CANCELLED = "OrderCancelled"


async def place_order(customer_id: str, items: List[Dict]) -> Tuple[UUID, UUID]:
    """
    Creates the Order and its OrderCreated OutboxEvent atomically.
    Returns (order_id, event_id).
    """
    items = [{"sku": str(it["sku"]), "qty": int(it["qty"])} for it in items]
    if not items:
        raise ValueError("Order must contain items.")

    return await submit_mutation_with_event(
        Mutation(model=Order, values={
            "customer_id": customer_id,
            "items": items,
            "status": OrderStatus.CREATED,
        }),
        event_type=ORDER_CREATED,
        payload=lambda order: {
            "orderId": str(order.id),
            "customerId": customer_id,
            "items": items,
        },
    )


async def get_order_by_id(order_id: UUID) -> Optional[Order]:
    return await Order.get_or_none(id=order_id)


async def list_recent_orders(limit: int = 20) -> List[Order]:
    """Newest orders first."""
    return await Order.all().order_by("-created_at").limit(limit)


def _transition_guard(new_status: OrderStatus):
    def check(order: Order):
        # Block status updates if the order is in a final, irreversible state.
        if new_status not in ALLOWED_TRANSITIONS.get(order.status, set()):
            raise InvalidTransitionError(
                f"Order {order.id} cannot move from {order.status.value} to {new_status.value}."
            )
    return check


async def update_order_status(order_id: UUID, new_status: OrderStatus) -> Tuple[UUID, UUID]:
    """
    Updates order status, enforces state machine rules, and emits OrderStatusChanged
    (or OrderCancelled for a cancellation) in the same transaction.
    Raises NotFoundError when the order does not exist.
    """
    if new_status == OrderStatus.CANCELLED:
        return await cancel_order(order_id)

    return await submit_mutation_with_event(
        Mutation(
            model=Order,
            entity_id=order_id,
            values={"status": new_status},
            precondition=_transition_guard(new_status),
        ),
        event_type=ORDER_STATUS_CHANGED,
        payload=lambda order: {
            "orderId": str(order.id),
            "status": new_status.value,
            "customerId": order.customer_id,
        },
    )


async def cancel_order(order_id: UUID) -> Tuple[UUID, UUID]:
    """Cancels an order; the OrderCancelled event carries the items for downstream compensation."""
    return await submit_mutation_with_event(
        Mutation(
            model=Order,
            entity_id=order_id,
            values={"status": OrderStatus.CANCELLED},
            precondition=_transition_guard(OrderStatus.CANCELLED),
        ),
        event_type=ORDER_CANCELLED,
        payload=lambda order: {
            "orderId": str(order.id),
            "customerId": order.customer_id,
            "items": order.items,
        },
    )
