# roomchat/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.
    """
    return {
        "message": "Roomchat - Live Group Chat",
        "version": "1.0",
        "features": ["rooms", "invite_codes", "image_messages", "live_sync"],
        "endpoints": {
            "websocket": "/ws/rooms/{room_id}",
            "rooms": "/rooms",
            "auth": "/auth",
            "health": "/health",
        },
    }
