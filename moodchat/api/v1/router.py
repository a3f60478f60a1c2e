from fastapi import APIRouter

from moodchat.api.v1.endpoints import auth, messages, realtime, rooms

router = APIRouter()

router.include_router(auth.router, prefix="/auth")
router.include_router(rooms.router, prefix="/rooms")
router.include_router(messages.router, prefix="/rooms")
router.include_router(realtime.router, prefix="/rooms")
