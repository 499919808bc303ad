# roomchat/services/send_coordinator.py

from __future__ import annotations

import logging
import uuid
from typing import Optional, Set

from pydantic import ValidationError

from roomchat.core.errors import ChatError, NotAuthenticatedError, WriteFailedError
from roomchat.models.models import Message, MessageType, UserProfile
from roomchat.services.attachments import Attachment, AttachmentPipeline
from roomchat.services.document_store import DocumentStore, StoreError
from roomchat.services.room_manager import messages_collection

logger = logging.getLogger(__name__)


class ComposeState:
    """
    What the user is about to send in the room being viewed.

    ``pending`` holds correlation ids of messages written to the store but
    not yet echoed back through the message subscription. ``sending`` is
    the per-send indicator shown while a send is in flight.
    """

    def __init__(self) -> None:
        self.text: str = ""
        self.attachment: Optional[Attachment] = None
        self.sending: bool = False
        self.notice: Optional[str] = None
        self.pending: Set[str] = set()
        self._correlation_id: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or self.attachment is not None

    @property
    def correlation_id(self) -> str:
        # Reused across retries of unchanged content until a send succeeds
        if self._correlation_id is None:
            self._correlation_id = uuid.uuid4().hex
        return self._correlation_id

    def set_text(self, text: str) -> None:
        text = text or ""
        if text != self.text:
            # An id only ever covers one content
            self._correlation_id = None
        self.text = text

    def attach(self, attachment: Attachment) -> None:
        self.clear_attachment()
        self.attachment = attachment
        self._correlation_id = None

    def clear_attachment(self) -> None:
        if self.attachment is not None:
            self.attachment.release()
            self.attachment = None
            self._correlation_id = None

    def clear(self) -> None:
        self.text = ""
        self.clear_attachment()
        self._correlation_id = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "attachment": self.attachment.describe() if self.attachment else None,
            "sending": self.sending,
            "notice": self.notice,
            "pending": len(self.pending),
        }


class SendCoordinator:
    """
    Sends one message: optional image upload, then a single store write.

    Flow:
        1. Check there is something to send and someone to send it as
        2. Upload the attachment, if any (failure aborts the whole send)
        3. Write the message with the sender snapshot and a server timestamp
        4. Clear the compose input

    The new message is not inserted into any local list. It shows up when
    the room's message subscription delivers it, at which point its
    correlation id leaves ``compose.pending``.

    On failure the compose input is left as it was and ``compose.notice``
    carries the message to show. Retrying is always safe: the message
    document id is the compose's correlation id, so a retry after an
    ambiguous failure rewrites the same document. Editing the text or the
    attachment starts a new id, so an edit never overwrites a message that
    already landed.
    """

    def __init__(self, store: DocumentStore, pipeline: AttachmentPipeline) -> None:
        self.store = store
        self.pipeline = pipeline
        self.sent_count = 0

    async def send(self, room_id: str, compose: ComposeState, user: Optional[UserProfile]) -> bool:
        if not compose.has_content or not room_id or compose.sending:
            return False

        compose.notice = None
        compose.sending = True
        token = compose.correlation_id
        try:
            if user is None:
                raise NotAuthenticatedError()

            image_url = None
            if compose.attachment is not None:
                image_url = await self.pipeline.upload(compose.attachment)

            try:
                message = Message(
                    text=compose.text,
                    image_url=image_url,
                    sender_id=user.uid,
                    sender_name=user.display_name,
                    sender_photo=user.photo_url,
                    type=MessageType.IMAGE if image_url else MessageType.TEXT,
                    client_id=token,
                )
            except ValidationError as e:
                raise WriteFailedError("Failed to send message.") from e

            compose.pending.add(token)
            try:
                await self.store.add(messages_collection(room_id), message.to_document(), doc_id=token)
            except StoreError as e:
                compose.pending.discard(token)
                raise WriteFailedError("Failed to send message.") from e
        except ChatError as e:
            logger.error(f"Send to room {room_id} failed: {e.user_message} ({e.__cause__ or e})")
            compose.notice = e.user_message
            return False
        finally:
            compose.sending = False

        self.sent_count += 1
        logger.info(f"📨 Sent message {token} to room {room_id}")
        compose.clear()
        return True
