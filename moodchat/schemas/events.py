from typing import Any, Literal

from pydantic import BaseModel

EventType = Literal["INSERT", "UPDATE", "DELETE"]


class ChangeEventResponse(BaseModel):
    """Row change pushed over the realtime channel"""

    table: str
    event_type: EventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
