import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from moodchat.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # One of: happy, sad, excited, anxious, calm, angry
    mood: Mapped[str] = mapped_column(String(20), nullable=False)

    # Creator is set at insert; joiner stays null until the room is claimed
    user1_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    user2_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    # Status: waiting, active, ended
    status: Mapped[str] = mapped_column(String(20), default="waiting", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('waiting', 'active', 'ended')", name="room_status_check"
        ),
        CheckConstraint(
            "user2_id IS NULL OR user2_id != user1_id", name="room_distinct_users_check"
        ),
        Index("ix_rooms_mood_status_created", "mood", "status", "created_at"),
    )
