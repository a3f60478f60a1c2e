from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from moodchat.api.v1.endpoints.auth import get_current_identity, get_store
from moodchat.core.exceptions import AuthorizationError, ConflictError, NotFoundError
from moodchat.schemas.identity import IdentityResponse
from moodchat.schemas.room import JoinRoomRequest, RoomResponse
from moodchat.services import room_service
from moodchat.services.store import StoreGateway

router = APIRouter(prefix="", tags=["rooms"])


async def get_participant_room(
    room_id: UUID,
    current_identity: Annotated[IdentityResponse, Depends(get_current_identity)],
    store: Annotated[StoreGateway, Depends(get_store)],
) -> RoomResponse:
    room = await room_service.require_room(store, room_id)
    if not room.has_participant(current_identity.id):
        raise AuthorizationError("You are not a participant of this room")
    return room


@router.post("/join", response_model=RoomResponse)
async def join_room(
    request: JoinRoomRequest,
    current_identity: Annotated[IdentityResponse, Depends(get_current_identity)],
    store: Annotated[StoreGateway, Depends(get_store)],
) -> RoomResponse:
    """
    Join the oldest waiting room with the same mood, or open a new one.

    Returns `active` when paired right away and `waiting` otherwise; in the
    latter case follow the room over its events websocket.
    """
    return await room_service.join_or_create(store, request.mood, current_identity.id)


# NOTE: must stay above /{room_id}
@router.get("/current", response_model=RoomResponse)
async def get_current_room(
    current_identity: Annotated[IdentityResponse, Depends(get_current_identity)],
    store: Annotated[StoreGateway, Depends(get_store)],
) -> RoomResponse:
    room = await room_service.get_open_room_for_user(store, current_identity.id)
    if room is None:
        raise NotFoundError("You are not in a room", resource="room")
    return room


@router.get("/{room_id}", response_model=RoomResponse)
async def get_room(
    room: Annotated[RoomResponse, Depends(get_participant_room)],
) -> RoomResponse:
    return room


@router.post("/{room_id}/leave", response_model=RoomResponse)
async def leave_room(
    room: Annotated[RoomResponse, Depends(get_participant_room)],
    store: Annotated[StoreGateway, Depends(get_store)],
) -> RoomResponse:
    """End the chat for both participants. Leaving an ended room is a no-op."""
    ended = await room_service.leave_room(store, room.id)
    return ended or room


@router.delete("/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_room(
    room: Annotated[RoomResponse, Depends(get_participant_room)],
    current_identity: Annotated[IdentityResponse, Depends(get_current_identity)],
    store: Annotated[StoreGateway, Depends(get_store)],
) -> None:
    """Stop waiting: delete a room nobody has joined yet."""
    cancelled = await room_service.cancel_waiting_room(store, room.id, current_identity.id)
    if not cancelled:
        raise ConflictError("Room can no longer be cancelled")
