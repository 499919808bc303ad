# roomchat/api/routes/rooms.py

from fastapi import APIRouter, Depends, HTTPException

from roomchat.api.routes.utils import current_user, to_http_error
from roomchat.core import state
from roomchat.core.errors import ChatError
from roomchat.models.models import CreateRoomRequest, JoinRoomRequest, UserProfile

router = APIRouter()

# ============================================================================
# ROOM LIFECYCLE ENDPOINTS
# ============================================================================

@router.post("/rooms")
async def create_room(request: CreateRoomRequest, user: UserProfile = Depends(current_user)):
    """
    Create a new room owned by the caller.

    Returns:
        dict: the new room id, used right away to open the room view

    Raises:
        HTTPException: 400 if name is empty, 502 if the store rejects the write
    """
    try:
        room_id = await state.room_manager.create_room(request.name, user)
    except ChatError as e:
        raise to_http_error(e)
    return {"room_id": room_id}


@router.post("/rooms/join")
async def join_room(request: JoinRoomRequest, user: UserProfile = Depends(current_user)):
    """
    Join a room by invite code. Joining a room twice is a no-op.

    Raises:
        HTTPException: 400 for an unknown code (nothing is written)
    """
    try:
        room_id = await state.room_manager.join_room(request.code, user)
    except ChatError as e:
        raise to_http_error(e)
    return {"room_id": room_id}


@router.get("/rooms/{room_id}")
async def get_room(room_id: str, user: UserProfile = Depends(current_user)):
    """Get details of a specific room, with its derived member count."""
    try:
        room = await state.room_manager.get_room(room_id)
    except ChatError as e:
        raise to_http_error(e)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.model_dump(mode="json")


@router.delete("/rooms/{room_id}")
async def delete_room(room_id: str, user: UserProfile = Depends(current_user)):
    """
    Delete a room and its messages. Owner only.

    Everyone viewing the room is sent away by their room subscription.

    Raises:
        HTTPException: 404 if room not found, 403 if the caller is not the owner
    """
    try:
        room = await state.room_manager.get_room(room_id)
        if not room:
            raise HTTPException(status_code=404, detail="Room not found")
        if room.owner_id != user.uid:
            raise HTTPException(status_code=403, detail="Only the owner can delete this room")
        await state.room_manager.delete_room(room_id)
    except ChatError as e:
        raise to_http_error(e)
    return {"status": "deleted", "room_id": room_id}
