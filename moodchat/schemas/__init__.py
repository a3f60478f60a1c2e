from moodchat.schemas.events import ChangeEventResponse
from moodchat.schemas.identity import (
    AnonymousSession,
    IdentityResponse,
    TokenPayload,
)
from moodchat.schemas.message import (
    MessageCreate,
    MessageListResponse,
    MessageResponse,
)
from moodchat.schemas.room import (
    JoinRoomRequest,
    Mood,
    RoomResponse,
    RoomStatus,
)

__all__ = [
    "AnonymousSession",
    "IdentityResponse",
    "TokenPayload",
    "Mood",
    "RoomStatus",
    "JoinRoomRequest",
    "RoomResponse",
    "MessageCreate",
    "MessageResponse",
    "MessageListResponse",
    "ChangeEventResponse",
]
