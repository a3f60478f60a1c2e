"""Message schemas for API requests and responses."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MessageCreate(BaseModel):
    """Encrypted message produced by the sender's client."""
    content: str = Field(..., min_length=1, max_length=16_000)
    iv: str = Field(..., min_length=1, max_length=64)
    sender_public_key: str | None = Field(None, max_length=128)


class MessageResponse(BaseModel):
    """Stored message row."""
    id: UUID
    room_id: UUID
    sender_id: UUID
    content: str
    iv: str
    sender_public_key: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageListResponse(BaseModel):
    """Full history of a room, oldest first."""
    messages: list[MessageResponse]
    total: int
