from enum import Enum
from tortoise import fields, models
import uuid


MESSAGE_ID_MAX_LENGTH = 128
ROUTING_KEY_MAX_LENGTH = 128


class InboxStatus(str, Enum):
    PENDING = "pending" # Dedup gate passed, handler running (or crashed)
    DONE = "done"
    FAILED = "failed" # Handler raised; picked up by the retry sweep


class InboxRecord(models.Model):
    """
    Table used for Idempotency in Consumers. Stores the messageId of every
    delivered bus message; the unique constraint on message_id is the only
    deduplication mechanism.
    """
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    message_id = fields.CharField(max_length=MESSAGE_ID_MAX_LENGTH, unique=True)
    routing_key = fields.CharField(max_length=ROUTING_KEY_MAX_LENGTH)
    payload = fields.JSONField(null=True) # Kept so failed handlers can be re-run without redelivery
    status = fields.CharEnumField(InboxStatus, default=InboxStatus.PENDING)
    attempts = fields.IntField(default=1)
    last_error = fields.TextField(null=True)
    received_at = fields.DatetimeField(auto_now_add=True)
    claimed_at = fields.DatetimeField(null=True) # Last time a consumer or sweeper started the handler
    processed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "inbox_records"
        indexes = [
            ("status", "received_at"),  # Retry sweep scan
        ]
