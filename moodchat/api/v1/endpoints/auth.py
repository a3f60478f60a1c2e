import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moodchat.core.exceptions import TokenInvalidError
from moodchat.core.security import create_access_token, decode_access_token
from moodchat.database import get_db, get_session_maker
from moodchat.schemas.identity import AnonymousSession, IdentityResponse
from moodchat.services import identity_service
from moodchat.services.realtime import ChangeFeed, get_change_feed
from moodchat.services.store import StoreGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["auth"])

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/anonymous")


async def resolve_identity(db: AsyncSession, token: str) -> IdentityResponse:
    payload = decode_access_token(token)
    if payload is None:
        raise TokenInvalidError()

    try:
        identity_id = UUID(payload.sub)
    except ValueError:
        raise TokenInvalidError()

    identity = await identity_service.get_active_identity(db, identity_id)
    if identity is None:
        raise TokenInvalidError("Session has ended. Start a new one.")

    return IdentityResponse.model_validate(identity)


async def get_current_identity(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> IdentityResponse:
    return await resolve_identity(db, token)


def get_store(
    identity: Annotated[IdentityResponse, Depends(get_current_identity)],
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)],
    feed: Annotated[ChangeFeed, Depends(get_change_feed)],
) -> StoreGateway:
    """Store handle bound to the caller's identity, so the room policy applies."""
    return StoreGateway(session_maker, feed, identity.id)


@router.post("/anonymous", response_model=AnonymousSession, status_code=status.HTTP_201_CREATED)
async def sign_in_anonymously(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)],
    feed: Annotated[ChangeFeed, Depends(get_change_feed)],
) -> AnonymousSession:
    store = StoreGateway(session_maker, feed)
    identity = await store.sign_in_anonymously()
    return AnonymousSession(
        identity=IdentityResponse.model_validate(identity),
        access_token=create_access_token(str(identity["id"])),
    )


@router.post("/sign-out", status_code=status.HTTP_204_NO_CONTENT)
async def sign_out(
    store: Annotated[StoreGateway, Depends(get_store)],
) -> None:
    await store.sign_out()


@router.get("/me", response_model=IdentityResponse)
async def get_me(
    current_identity: Annotated[IdentityResponse, Depends(get_current_identity)],
) -> IdentityResponse:
    return current_identity
