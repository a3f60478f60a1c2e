from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from moodchat.config import settings
from moodchat.schemas.identity import TokenPayload

ALGORITHM = "HS256"


def create_access_token(identity_id: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": identity_id,
        "exp": int(expire.timestamp()),
        "anon": True,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> TokenPayload | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        return TokenPayload(sub=payload["sub"], exp=payload["exp"])
    except (JWTError, KeyError):
        return None
