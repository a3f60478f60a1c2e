from moodchat.models.identity import AnonymousIdentity
from moodchat.models.message import Message
from moodchat.models.room import Room
from moodchat.models.room_key import RoomKey

__all__ = [
    "AnonymousIdentity",
    "Room",
    "Message",
    "RoomKey",
]
