from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class IdentityResponse(BaseModel):
    id: UUID
    created_at: datetime
    signed_out_at: datetime | None = None

    model_config = {"from_attributes": True}


class AnonymousSession(BaseModel):
    """Result of an anonymous sign-in"""

    identity: IdentityResponse
    access_token: str
    token_type: str = "bearer"


class TokenPayload(BaseModel):
    sub: str
    exp: int
