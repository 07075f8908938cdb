import logging
from fastapi import APIRouter, HTTPException, status
from order_outbox.schemas.response import SuccessResponse
from order_outbox.services.order_service import (
    place_order,
    get_order_by_id,
    list_recent_orders,
    update_order_status,
    cancel_order,
)
from order_outbox.models.order import Order
from order_outbox.schemas.order import (
    OrderRequest,
    OrderPlacementResponse,
    OrderStatusUpdate,
    OrderDetailResponse,
)
from uuid import UUID

router = APIRouter()
log = logging.getLogger(__name__)


def _order_detail(order: Order) -> dict:
    return OrderDetailResponse(
        id=order.id,
        customer_id=order.customer_id,
        status=order.status,
        items=order.items,
        created_at=str(order.created_at),
    ).model_dump(mode="json")


def _placement(order_id: UUID, event_id: UUID) -> dict:
    return OrderPlacementResponse(order_id=order_id, event_id=event_id).model_dump(mode="json", by_alias=True)


# NotFoundError (404), InvalidTransitionError (400) and StoreError (503) are
# mapped by core.exception_handlers, so routes only deal with the happy path.

@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_order_endpoint(request_data: OrderRequest):
    """
    Places a new order. 201 is only returned once the order and its
    OrderCreated outbox event have committed together.
    """
    if not request_data.items:
        raise HTTPException(status_code=400, detail="Provide customerId and items[]")

    order_id, event_id = await place_order(
        customer_id=request_data.customer_id,
        items=[item.model_dump() for item in request_data.items],
    )
    log.info(f"Order {order_id} placed for customer {request_data.customer_id}.")
    return SuccessResponse(data=_placement(order_id, event_id))


@router.get("/", response_model=SuccessResponse)
async def list_orders_endpoint():
    """Lists the 20 most recent orders."""
    orders = await list_recent_orders(limit=20)
    return SuccessResponse(data=[_order_detail(o) for o in orders])


@router.get("/{order_id}", response_model=SuccessResponse)
async def get_order_endpoint(order_id: UUID):
    """Fetches details for a specific order."""
    order = await get_order_by_id(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return SuccessResponse(data=_order_detail(order))


@router.patch("/{order_id}/status", response_model=SuccessResponse)
async def update_status_endpoint(order_id: UUID, payload: OrderStatusUpdate):
    """Updates status (e.g. 'CONFIRMED', 'CANCELLED') and emits the matching event."""
    order_id, event_id = await update_order_status(order_id, payload.status)
    return SuccessResponse(data=_placement(order_id, event_id))


@router.post("/{order_id}/cancel", response_model=SuccessResponse)
async def cancel_order_endpoint(order_id: UUID):
    """Cancels the order and queues an OrderCancelled event."""
    order_id, event_id = await cancel_order(order_id)
    return SuccessResponse(data=_placement(order_id, event_id))
