# roomchat/api/websocket.py

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from roomchat.api.routes.utils import COOKIE_NAME, lookup_session
from roomchat.core import state
from roomchat.core.errors import InvalidInputError, InvalidRoomCodeError
from roomchat.services.attachments import decode_attachment
from roomchat.services.live_sync import MESSAGES_UPDATED, ROOM_DELETED, ROOM_UPDATED, LiveSyncEngine, ViewEvent

logger = logging.getLogger(__name__)

router = APIRouter()


def frame_for(event: ViewEvent) -> dict:
    view = event.view
    if event.kind == ROOM_DELETED:
        return {"type": "room_deleted", "room_id": event.room_id}
    if event.kind == ROOM_UPDATED:
        return {"type": "room", "room_id": event.room_id, "room": view.room.model_dump(mode="json")}
    return {
        "type": "messages",
        "room_id": event.room_id,
        "messages": [m.model_dump(mode="json") for m in view.messages],
        "compose": view.compose.to_dict(),
    }


def _string_field(message: dict, key: str) -> Optional[str]:
    value = message.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidInputError(f"Field '{key}' must be a string")
    return value


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws/rooms/{room_id}")
async def room_view_endpoint(websocket: WebSocket, room_id: str):
    """
    Live view of one room for a signed-in user.

    Protocol:
    =========

    Client -> Server Actions:
    -------------------------
    Edit compose text:
        {"action": "compose", "text": "hello"}

    Attach an image (replaces any previous one):
        {"action": "attach", "filename": "cat.png", "content_type": "image/png", "data": "<base64>"}

    Drop the attachment:
        {"action": "clear_attachment"}

    Send what is composed:
        {"action": "send"}

    View another room:
        {"action": "switch_room", "room_id": "<room_id>"}

    Server -> Client Messages:
    -------------------------
    Room metadata:   {"type": "room", "room_id": "...", "room": {..., "joiner_count": 2}}
    Message log:     {"type": "messages", "room_id": "...", "messages": [...], "compose": {...}}
    Room deleted:    {"type": "room_deleted", "room_id": "..."}   (leave the room view)
    Compose state:   {"type": "compose", "text": "...", "attachment": {...}, "sending": false,
                      "notice": null, "pending": 0}
    Signed out:      {"type": "signed_out"}
    Error:           {"type": "error", "message": "..."}

    Sent messages are not echoed locally; they appear in the next
    "messages" frame once the store has them.
    """
    session = lookup_session(websocket.cookies.get(COOKIE_NAME))
    if session is None or session.current_user is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()

    outbox: asyncio.Queue = asyncio.Queue()
    engine = LiveSyncEngine(state.store, lambda event: outbox.put_nowait(frame_for(event)))

    def on_auth_change(user) -> None:
        if user is None:
            outbox.put_nowait({"type": "signed_out"})

    unsubscribe_auth = session.on_change(on_auth_change)
    engine.open(room_id)
    state.active_views += 1
    sender = asyncio.create_task(_pump(websocket, outbox))

    def compose_frame() -> dict:
        return {"type": "compose", **engine.view.compose.to_dict()}

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                if not isinstance(message, dict):
                    outbox.put_nowait({"type": "error", "message": "Expected a JSON object"})
                    continue
                action = message.get("action")
                logger.debug(f"Websocket input: Action: {action}")

                if action == "switch_room":
                    new_room_id = (_string_field(message, "room_id") or "").strip()
                    if not new_room_id or "/" in new_room_id:
                        raise InvalidRoomCodeError()
                    engine.open(new_room_id)
                    continue

                if engine.view is None:
                    outbox.put_nowait({"type": "error", "message": "This room is no longer available."})
                    continue

                compose = engine.view.compose

                if action == "compose":
                    compose.set_text(_string_field(message, "text") or "")

                elif action == "attach":
                    compose.attach(
                        decode_attachment(message.get("filename"), message.get("content_type"), message.get("data"))
                    )
                    outbox.put_nowait(compose_frame())

                elif action == "clear_attachment":
                    compose.clear_attachment()
                    outbox.put_nowait(compose_frame())

                elif action == "send":
                    view = engine.view
                    user = await session.ensure_fresh()
                    outbox.put_nowait({"type": "compose", **view.compose.to_dict(), "sending": True})
                    await state.send_coordinator.send(view.room_id, view.compose, user)
                    outbox.put_nowait({"type": "compose", **view.compose.to_dict()})

                else:
                    outbox.put_nowait({"type": "error", "message": f"Unknown action: {action}"})

            except json.JSONDecodeError:
                outbox.put_nowait({"type": "error", "message": "Invalid JSON"})
            except InvalidInputError as e:
                outbox.put_nowait({"type": "error", "message": e.user_message})

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("WebSocket error: %s", e)
    finally:
        engine.close()
        unsubscribe_auth()
        sender.cancel()
        state.active_views -= 1
