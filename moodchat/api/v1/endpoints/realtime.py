import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moodchat.api.v1.endpoints.auth import resolve_identity
from moodchat.core.exceptions import AppException
from moodchat.core.tasks import TaskScope
from moodchat.database import get_db, get_session_maker
from moodchat.services import room_service
from moodchat.services.realtime import ChangeFeed, Subscription, get_change_feed
from moodchat.services.store import StoreGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["realtime"])


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(jsonable_encoder(event.to_response()))


@router.websocket("/{room_id}/events")
async def room_events(
    websocket: WebSocket,
    room_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)],
    feed: Annotated[ChangeFeed, Depends(get_change_feed)],
    token: str = Query(...),
):
    """
    Push channel for one room: room row updates/deletes and new messages.

    Delivery is best-effort; clients keep polling the REST endpoints as a
    fallback and merge by id.
    """
    try:
        identity = await resolve_identity(db, token)
        store = StoreGateway(session_maker, feed, identity.id)
        room = await room_service.require_room(store, room_id)
    except AppException as e:
        logger.info("Rejected events socket for room %s: %s", room_id, e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.code.value)
        return

    if not room.has_participant(identity.id) or room.is_ended:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="ROOM_ACCESS_DENIED")
        return

    scope = TaskScope(f"events-{room_id}-{identity.id}")
    # Subscribe before accepting so no change made after the handshake is missed
    subscriptions = [
        store.subscribe("rooms", "UPDATE", id=room_id),
        store.subscribe("rooms", "DELETE", id=room_id),
        store.subscribe("messages", "INSERT", room_id=room_id),
    ]
    for subscription in subscriptions:
        scope.attach(subscription)

    await websocket.accept()
    for subscription in subscriptions:
        scope.spawn(
            _forward(websocket, subscription),
            f"{subscription.table}-{subscription.event_type.lower()}",
        )

    try:
        # Inbound frames are ignored; receiving only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Events socket for room %s disconnected", room_id)
    finally:
        scope.close()
        await scope.wait_closed()
