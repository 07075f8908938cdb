from typing import Any
from pydantic import BaseModel, ConfigDict, Field


class EventEnvelope(BaseModel):
    """Wire format published to the bus: {type, messageId, payload}."""
    model_config = ConfigDict(populate_by_name=True)

    type: str
    message_id: str = Field(alias="messageId")
    payload: Any = None

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")
