from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from roomchat.core.errors import InvalidInputError, InvalidRoomCodeError, WriteFailedError
from roomchat.models.models import Room, UserProfile
from roomchat.services.document_store import DocumentStore, StoreError

logger = logging.getLogger(__name__)

ROOMS_COLLECTION = "rooms"


def messages_collection(room_id: str) -> str:
    return f"{ROOMS_COLLECTION}/{room_id}/messages"


# ============================================================================
# ROOM LIFECYCLE MANAGER
# ============================================================================
class RoomManager:
    """
    Creates, joins and deletes rooms in the remote store.

    Each operation is a single request/response against the store; nothing
    here touches local view state. Open room views learn about the result
    through their own subscriptions.

    Storage Format (rooms/{room_id}):
        {
            "name": "Friday Hangout",
            "ownerId": "uid-alice",
            "createdAt": <server timestamp>,
            "joiners": ["uid-alice", "uid-bob"],
            "joinerCount": 1
        }

    ``joinerCount`` is written once at creation for older readers; the live
    count is always derived from ``joiners``.

    Usage:
        rooms = RoomManager(store)
        room_id = await rooms.create_room("Friday Hangout", alice)
        await rooms.join_room(room_id, bob)
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_room(self, name: str, owner: UserProfile) -> str:
        """
        Create a new room owned by ``owner``, who is its first member.

        Returns:
            The new room id, which is also its invite code.

        Raises:
            InvalidInputError: empty name
            WriteFailedError: the store rejected the write
        """
        name = (name or "").strip()
        if not name:
            raise InvalidInputError("Room name required.")

        try:
            room_id = await self.store.add(ROOMS_COLLECTION, Room.new_document(name, owner.uid))
        except StoreError as e:
            logger.error(f"Create room failed: {e}")
            raise WriteFailedError("Failed to create room.") from e

        logger.info(f"✓ Created room '{name}' ({room_id}) for {owner.uid}")
        return room_id

    async def get_room(self, room_id: str) -> Optional[Room]:
        """
        Get a room by id.

        Returns:
            Room object if found, None otherwise
        """
        try:
            snap = await self.store.get(ROOMS_COLLECTION, room_id)
        except StoreError as e:
            logger.error(f"Read room {room_id} failed: {e}")
            raise WriteFailedError("Failed to load room.") from e
        if not snap.exists:
            return None
        try:
            return Room.from_document(snap.id, snap.data)
        except ValidationError as e:
            logger.warning(f"Room {room_id} has malformed data: {e}")
            return None

    async def join_room(self, code: str, user: UserProfile) -> str:
        """
        Add ``user`` to the room whose invite code is ``code``.

        The membership write is a set-union, so joining twice is harmless
        and concurrent joins by different users never overwrite each other.

        Raises:
            InvalidRoomCodeError: no such room; nothing is written
            WriteFailedError: the lookup or the membership write failed
        """
        room_id = (code or "").strip()
        if not room_id or "/" in room_id:
            raise InvalidRoomCodeError()

        try:
            snap = await self.store.get(ROOMS_COLLECTION, room_id)
            if not snap.exists:
                logger.info(f"Join rejected, unknown room code '{room_id}'")
                raise InvalidRoomCodeError()
            await self.store.add_to_set(ROOMS_COLLECTION, room_id, "joiners", user.uid)
        except StoreError as e:
            logger.error(f"Join room {room_id} failed: {e}")
            raise WriteFailedError("Failed to join room.") from e

        logger.info(f"→ {user.uid} joined room {room_id}")
        return room_id

    async def delete_room(self, room_id: str) -> None:
        """
        Permanently delete a room and its message log.

        Messages go first and the room document last, so a failure part way
        leaves the room in place and the delete can simply be retried.
        Viewers are sent away when the room document disappears.

        Note:
            Only the owner may delete; the caller checks that before calling.
        """
        try:
            purged = await self.store.delete_collection(messages_collection(room_id))
            await self.store.delete(ROOMS_COLLECTION, room_id)
        except StoreError as e:
            logger.error(f"Delete room {room_id} failed: {e}")
            raise WriteFailedError("Error deleting room.") from e

        logger.info(f"✓ Deleted room {room_id} ({purged} messages)")
