# roomchat/services/live_sync.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from pydantic import ValidationError

from roomchat.models.models import Message, Room
from roomchat.services.document_store import DocumentSnapshot, DocumentStore, Subscription
from roomchat.services.room_manager import ROOMS_COLLECTION, messages_collection
from roomchat.services.send_coordinator import ComposeState

logger = logging.getLogger(__name__)

ROOM_UPDATED = "room"
MESSAGES_UPDATED = "messages"
ROOM_DELETED = "room_deleted"


class RoomView:
    """
    Local projection of the room currently on screen.

    ``room`` and ``messages`` are replaced wholesale from the store's
    snapshots and never edited in place. ``deleted`` is terminal: once the
    room document is gone the view is closed and ignores further updates.
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.room: Optional[Room] = None
        self.messages: List[Message] = []
        self.deleted = False
        self.closed = False
        self.loaded = False
        self.compose = ComposeState()
        self.subscriptions: List[Subscription] = []

    @property
    def joiner_count(self) -> int:
        return self.room.joiner_count if self.room else 0

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "room": self.room.model_dump(mode="json") if self.room else None,
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "deleted": self.deleted,
        }


@dataclass(frozen=True)
class ViewEvent:
    kind: str
    room_id: str
    view: RoomView


ViewListener = Callable[[ViewEvent], None]


# ============================================================================
# LIVE SYNC ENGINE
# ============================================================================

class LiveSyncEngine:
    """
    Keeps one RoomView in step with the remote store.

    Subscriptions (per open view):
        rooms/{room_id}                      -> room metadata
        rooms/{room_id}/messages by timestamp -> full ordered message log

    Lifecycle:
        1. open(room_id) closes the previous view, then subscribes both
        2. every delivery replaces the matching part of the view and
           notifies the listener
        3. the room document disappearing closes the view and emits
           ROOM_DELETED, which consumers treat as "navigate away"
        4. close() cancels both subscriptions and releases the compose
           attachment

    Deliveries for a view that is closed or no longer current are dropped,
    so a late callback from a previous room never reaches the new one.
    There is no ordering between the two subscriptions; ROOM_DELETED wins
    whenever it arrives.
    """

    def __init__(self, store: DocumentStore, listener: Optional[ViewListener] = None) -> None:
        self.store = store
        self.listener = listener
        self.view: Optional[RoomView] = None

    def open(self, room_id: str) -> RoomView:
        self.close()

        view = RoomView(room_id)
        self.view = view
        view.subscriptions.append(
            self.store.watch_document(ROOMS_COLLECTION, room_id, lambda snap: self._on_room(view, snap))
        )
        view.subscriptions.append(
            self.store.watch_collection(
                messages_collection(room_id), "timestamp", lambda snaps: self._on_messages(view, snaps)
            )
        )
        logger.info(f"✓ Watching room {room_id}")
        return view

    def close(self) -> None:
        view = self.view
        if view is None:
            return
        self.view = None
        self._close_view(view)
        logger.info(f"✗ Stopped watching room {view.room_id}")

    @staticmethod
    def _close_view(view: RoomView) -> None:
        view.closed = True
        for sub in view.subscriptions:
            sub.cancel()
        view.compose.clear_attachment()

    def _is_current(self, view: RoomView) -> bool:
        return view is self.view and not view.closed

    def _on_room(self, view: RoomView, snap: DocumentSnapshot) -> None:
        if not self._is_current(view):
            return
        view.loaded = True

        if not snap.exists:
            logger.info(f"Room {view.room_id} no longer exists")
            view.deleted = True
            self.view = None
            self._close_view(view)
            self._emit(ROOM_DELETED, view)
            return

        try:
            view.room = Room.from_document(snap.id, snap.data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed room update for {view.room_id}: {e}")
            return
        self._emit(ROOM_UPDATED, view)

    def _on_messages(self, view: RoomView, snaps: List[DocumentSnapshot]) -> None:
        if not self._is_current(view):
            return

        messages: List[Message] = []
        for snap in snaps:
            try:
                messages.append(Message.from_document(snap.id, snap.data or {}))
            except ValidationError as e:
                logger.warning(f"Skipping malformed message {snap.id} in room {view.room_id}: {e}")
        view.messages = messages

        # Echoed writes are confirmed
        echoed = {m.client_id for m in messages if m.client_id}
        view.compose.pending -= echoed

        self._emit(MESSAGES_UPDATED, view)

    def _emit(self, kind: str, view: RoomView) -> None:
        if self.listener is None:
            return
        try:
            self.listener(ViewEvent(kind, view.room_id, view))
        except Exception as e:
            # A broken consumer must not take the subscription down with it
            logger.error(f"View listener failed on {kind} for room {view.room_id}: {e}")
