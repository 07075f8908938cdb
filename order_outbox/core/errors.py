"""
Error taxonomy shared by the writer, dispatcher and consumer.

Uniqueness violations are not listed here: they surface as
``tortoise.exceptions.IntegrityError`` and are the consumer's dedup signal,
not an error.
"""


class OutboxError(Exception):
    """Base class for all service errors."""


class NotFoundError(OutboxError):
    """The business entity targeted by an update does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(OutboxError):
    """The requested change is not allowed from the entity's current state."""


class StoreError(OutboxError):
    """The durable store failed (connection, timeout, conflict). The whole unit was rolled back."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class MalformedMessageError(OutboxError):
    """A bus message cannot be deduplicated or decoded and is rejected for good."""


class ClaimLostError(OutboxError):
    """A claimed record was reclaimed by another worker before this one finished with it."""
