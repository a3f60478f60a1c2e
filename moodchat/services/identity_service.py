from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from moodchat.models.identity import AnonymousIdentity


async def get_identity(db: AsyncSession, identity_id: UUID) -> AnonymousIdentity | None:
    """Get anonymous identity by ID."""
    result = await db.execute(select(AnonymousIdentity).where(AnonymousIdentity.id == identity_id))
    return result.scalar_one_or_none()


async def get_active_identity(db: AsyncSession, identity_id: UUID) -> AnonymousIdentity | None:
    """Identity that has not signed out yet."""
    identity = await get_identity(db, identity_id)
    if identity is None or identity.signed_out_at is not None:
        return None
    return identity
