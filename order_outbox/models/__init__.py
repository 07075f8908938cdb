# order_outbox/models/__init__.py
from .order import Order, OrderStatus
from .outbox import OutboxEvent
from .inbox import InboxRecord, InboxStatus

# Export all models
__all__ = [
    "InboxRecord",
    "InboxStatus",
    "Order",
    "OrderStatus",
    "OutboxEvent",
]
