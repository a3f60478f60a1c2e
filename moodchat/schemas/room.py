from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class Mood(str, Enum):
    happy = "happy"
    sad = "sad"
    excited = "excited"
    anxious = "anxious"
    calm = "calm"
    angry = "angry"


class RoomStatus(str, Enum):
    waiting = "waiting"
    active = "active"
    ended = "ended"


class JoinRoomRequest(BaseModel):
    """Pick a mood and get paired"""

    mood: Mood


class RoomResponse(BaseModel):
    """Room row as seen by a participant"""

    id: UUID
    mood: Mood
    user1_id: UUID
    user2_id: UUID | None = None
    status: RoomStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_active(self) -> bool:
        return self.status == RoomStatus.active and self.user2_id is not None

    @property
    def is_ended(self) -> bool:
        return self.status == RoomStatus.ended

    def has_participant(self, user_id: UUID) -> bool:
        return user_id in (self.user1_id, self.user2_id)
