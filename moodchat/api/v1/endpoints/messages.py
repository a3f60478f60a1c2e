"""Encrypted message history and sending.

Message bodies are sealed by the clients with the room key; the server stores
ciphertext only. Reads and writes go through the room policy, so both fail
with ROOM_ACCESS_DENIED once the room has ended.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status

from moodchat.api.v1.endpoints.auth import get_current_identity, get_store
from moodchat.schemas.identity import IdentityResponse
from moodchat.schemas.message import MessageCreate, MessageListResponse, MessageResponse
from moodchat.services.store import StoreGateway

router = APIRouter(prefix="", tags=["messages"])


@router.get("/{room_id}/messages", response_model=MessageListResponse)
async def get_messages(
    room_id: UUID,
    store: Annotated[StoreGateway, Depends(get_store)],
) -> MessageListResponse:
    rows = await store.select("messages", room_id=room_id, order_by="created_at")
    return MessageListResponse(
        messages=[MessageResponse.model_validate(row) for row in rows],
        total=len(rows),
    )


@router.post(
    "/{room_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    room_id: UUID,
    message: MessageCreate,
    current_identity: Annotated[IdentityResponse, Depends(get_current_identity)],
    store: Annotated[StoreGateway, Depends(get_store)],
) -> MessageResponse:
    row = await store.insert(
        "messages",
        {
            "room_id": room_id,
            "sender_id": current_identity.id,
            **message.model_dump(),
        },
    )
    return MessageResponse.model_validate(row)
