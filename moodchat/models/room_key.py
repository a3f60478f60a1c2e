import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from moodchat.database import Base
from moodchat.models.room import utcnow


class RoomKey(Base):
    """Shared symmetric key of a room, wrapped with the server secret."""

    __tablename__ = "room_keys"

    # One key per room; a second insert for the same room is a conflict
    room_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("rooms.id", ondelete="CASCADE"),
        primary_key=True,
    )
    encrypted_room_key: Mapped[str] = mapped_column(Text, nullable=False)
    shared_by: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
