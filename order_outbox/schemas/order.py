from typing import List
from pydantic import BaseModel, ConfigDict, Field
import uuid
from order_outbox.models.order import OrderStatus


class OrderItemRequest(BaseModel):
    """Schema for a single item in the order request."""
    sku: str = Field(..., min_length=1)
    qty: int = Field(..., gt=0)


class OrderRequest(BaseModel):
    """Schema for the full order placement request body."""
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(..., alias="customerId", min_length=1, max_length=64)
    items: List[OrderItemRequest]


class OrderPlacementResponse(BaseModel):
    """Response schema for a newly placed order (201 Created)."""
    model_config = ConfigDict(populate_by_name=True)

    order_id: uuid.UUID = Field(..., serialization_alias="orderId")
    event_id: uuid.UUID = Field(..., serialization_alias="eventId")


class OrderStatusUpdate(BaseModel):
    """Schema for updating an order status."""
    status: OrderStatus


class OrderDetailResponse(BaseModel):
    """Schema for fetching detailed order information."""
    id: uuid.UUID
    customer_id: str
    status: OrderStatus
    items: List[OrderItemRequest]
    created_at: str
