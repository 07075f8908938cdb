import logging
from typing import Dict, Any
from uuid import UUID

from order_outbox.models.order import Order, OrderStatus
from order_outbox.services.order_service import ORDER_CREATED

log = logging.getLogger(__name__)


async def handle_order_created(event_payload: Dict[str, Any], message_id: str, conn: Any):
    """
    Consumer logic for 'OrderCreated'. Moves the Order status from CREATED to CONFIRMED.
    Runs inside the transaction that marks the inbox row done.
    """
    order_id = UUID(event_payload["orderId"])

    order = await Order.filter(id=order_id).using_db(conn).select_for_update().first()
    if not order:
        log.warning(f"Order {order_id} from message {message_id} not found, nothing to confirm.")
        return

    # Only update if still in the initial CREATED state
    if order.status == OrderStatus.CREATED:
        order.status = OrderStatus.CONFIRMED
        await order.save(update_fields=['status', 'updated_at'], using_db=conn)
        log.info(f"Status UPDATE: Order {order_id} moved to CONFIRMED.")
    else:
        log.info(f"Order {order_id} already {order.status.value}, leaving it as is.")


HANDLERS = {
    ORDER_CREATED: handle_order_created,
}
