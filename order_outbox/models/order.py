from enum import Enum
from tortoise import fields, models
import uuid


class OrderStatus(str, Enum):
    CREATED = "CREATED"  # Initial state, OrderCreated event pending/published
    CONFIRMED = "CONFIRMED" # Set by the orders-service consumer once OrderCreated is applied
    CANCELLED = "CANCELLED"


# Transitions allowed by update_order_status; final states have no entry
ALLOWED_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.CANCELLED},
}


class Order(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    customer_id = fields.CharField(max_length=64)
    items = fields.JSONField(default=list) # [{"sku": "X", "qty": 1}, ...]
    status = fields.CharEnumField(OrderStatus, default=OrderStatus.CREATED)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"
        indexes = [
            ("customer_id",),            # Customer order history
            ("created_at",),             # Newest-first listing
            ("status", "created_at"),    # Composite: status with time
        ]
