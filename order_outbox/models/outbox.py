from tortoise import fields, models
import uuid


class OutboxEvent(models.Model):
    """
    The Outbox table stores events atomically with the database transaction.
    This is the core of the Transactional Outbox Pattern.

    Lifecycle: inserted by the writer in the business transaction, then only
    touched by the dispatcher (claim, publish mark, failure mark). Rows are
    never deleted and double as the delivery audit trail.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    aggregate_type = fields.CharField(max_length=64) # e.g., 'order'
    aggregate_id = fields.UUIDField(null=True) # Weak reference to the entity, no FK
    event_type = fields.CharField(max_length=128) # Routing key, e.g., 'OrderCreated'
    payload = fields.JSONField() # The actual event data
    created_at = fields.DatetimeField(auto_now_add=True)
    published_at = fields.DatetimeField(null=True) # NULL = pending
    attempts = fields.IntField(default=0) # Incremented on every claim
    last_error = fields.TextField(null=True)
    locked_at = fields.DatetimeField(null=True) # Claim lease; set while a dispatcher holds it

    class Meta:
        table = "outbox_events"
        indexes = [
            ("published_at", "created_at"),  # Oldest-pending claim scan
            ("locked_at",),                  # Lease expiry scan
            ("aggregate_id",),
        ]

    @property
    def is_pending(self) -> bool:
        return self.published_at is None

    def __str__(self):
        return f"{self.event_type}:{self.id}"
