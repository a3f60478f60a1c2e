"""Room matchmaking and room lifecycle writes."""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import or_

from moodchat.core.exceptions import MatchmakingError, NotFoundError, StoreUnavailableError
from moodchat.models.room import Room
from moodchat.schemas.room import Mood, RoomResponse, RoomStatus
from moodchat.services.store import StoreGateway

logger = logging.getLogger(__name__)

OPEN_STATUSES = (RoomStatus.waiting.value, RoomStatus.active.value)


async def get_room(store: StoreGateway, room_id: UUID) -> RoomResponse | None:
    """Get room by ID."""
    rows = await store.select("rooms", id=room_id)
    return RoomResponse.model_validate(rows[0]) if rows else None


async def get_open_room_for_user(store: StoreGateway, user_id: UUID) -> RoomResponse | None:
    """The waiting or active room this user already holds, if any."""
    rows = await store.select(
        "rooms",
        or_(Room.user1_id == user_id, Room.user2_id == user_id),
        Room.status.in_(OPEN_STATUSES),
        order_by="created_at",
        descending=True,
        limit=1,
    )
    return RoomResponse.model_validate(rows[0]) if rows else None


async def find_joinable_room(store: StoreGateway, mood: Mood, user_id: UUID) -> RoomResponse | None:
    """Oldest waiting room for this mood that someone else created."""
    rows = await store.select(
        "rooms",
        Room.user1_id != user_id,
        mood=mood,
        status=RoomStatus.waiting,
        user2_id=None,
        order_by="created_at",
        limit=1,
    )
    return RoomResponse.model_validate(rows[0]) if rows else None


async def claim_room(store: StoreGateway, room_id: UUID, user_id: UUID) -> RoomResponse | None:
    """
    Compare-and-swap join: succeeds only if the room is still waiting and unjoined.
    Returns None when another joiner got there first.
    """
    rows = await store.update(
        "rooms",
        {
            "user2_id": user_id,
            "status": RoomStatus.active,
            "updated_at": datetime.now(timezone.utc),
        },
        Room.user2_id.is_(None),
        Room.user1_id != user_id,
        id=room_id,
        status=RoomStatus.waiting,
    )
    if len(rows) != 1:
        return None
    return RoomResponse.model_validate(rows[0])


async def create_room(store: StoreGateway, mood: Mood, user_id: UUID) -> RoomResponse:
    row = await store.insert(
        "rooms",
        {
            "mood": mood,
            "user1_id": user_id,
            "user2_id": None,
            "status": RoomStatus.waiting,
        },
    )
    return RoomResponse.model_validate(row)


async def join_or_create(store: StoreGateway, mood: Mood, user_id: UUID) -> RoomResponse:
    """
    Pair the user with someone in the same mood, or open a new waiting room.

    1. A user that already holds a waiting/active room gets that room back.
    2. Otherwise the oldest joinable room is claimed with a conditional update.
    3. A missing candidate or a lost race falls through to creating a room.
    """
    mood = Mood(mood)
    try:
        existing = await get_open_room_for_user(store, user_id)
        if existing is not None:
            logger.info("User %s already holds room %s (%s)", user_id, existing.id, existing.status.value)
            return existing

        candidate = await find_joinable_room(store, mood, user_id)
        if candidate is not None:
            joined = await claim_room(store, candidate.id, user_id)
            if joined is not None:
                logger.info("User %s joined %s room %s", user_id, mood.value, joined.id)
                return joined
            logger.info("User %s lost the race for room %s, creating a new one", user_id, candidate.id)

        room = await create_room(store, mood, user_id)
        logger.info("User %s created %s room %s", user_id, mood.value, room.id)
        return room
    except StoreUnavailableError as e:
        raise MatchmakingError() from e


async def leave_room(store: StoreGateway, room_id: UUID) -> RoomResponse | None:
    """End the room. Already-ended rooms are left untouched."""
    rows = await store.update(
        "rooms",
        {"status": RoomStatus.ended, "updated_at": datetime.now(timezone.utc)},
        Room.status.in_(OPEN_STATUSES),
        id=room_id,
    )
    if rows:
        logger.info("Room %s ended", room_id)
        return RoomResponse.model_validate(rows[0])
    return None


async def cancel_waiting_room(store: StoreGateway, room_id: UUID, user_id: UUID) -> bool:
    """Delete a room the user created that nobody has joined yet."""
    deleted = await store.delete(
        "rooms",
        Room.user2_id.is_(None),
        id=room_id,
        user1_id=user_id,
        status=RoomStatus.waiting,
    )
    if deleted:
        logger.info("Waiting room %s cancelled by its creator", room_id)
    return deleted > 0


async def require_room(store: StoreGateway, room_id: UUID) -> RoomResponse:
    room = await get_room(store, room_id)
    if room is None:
        raise NotFoundError("Room not found", resource="room")
    return room
