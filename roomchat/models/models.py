# roomchat/models/models.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from roomchat.services.document_store import SERVER_TIMESTAMP


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


class UserProfile(BaseModel):
    """Snapshot of the signed-in user as reported by the identity provider."""

    uid: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    email: Optional[str] = None


class Room(BaseModel):
    """
    Room metadata as stored under ``rooms/{id}``.

    The id doubles as the invite code. ``joiners`` is a set, so the
    derived ``joiner_count`` is always its cardinality.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    owner_id: str = Field(alias="ownerId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    joiners: Set[str] = Field(default_factory=set)

    @field_validator("joiners", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return set() if value is None else value

    @computed_field
    @property
    def joiner_count(self) -> int:
        return len(self.joiners)

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Room":
        return cls(id=doc_id, **{k: v for k, v in data.items() if k != "id"})

    @staticmethod
    def new_document(name: str, owner_id: str) -> Dict[str, Any]:
        return {
            "name": name,
            "ownerId": owner_id,
            "createdAt": SERVER_TIMESTAMP,
            "joiners": [owner_id],
            "joinerCount": 1,
        }


class Message(BaseModel):
    """
    One entry of a room's message log (``rooms/{id}/messages/{messageId}``).

    Sender fields are a snapshot taken at send time and are never
    re-resolved. ``timestamp`` is assigned by the store and may be None
    while a write is still pending on the server.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    text: str = ""
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    sender_id: str = Field(alias="senderId")
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    sender_photo: Optional[str] = Field(default=None, alias="senderPhoto")
    timestamp: Optional[datetime] = None
    type: MessageType = MessageType.TEXT
    client_id: Optional[str] = Field(default=None, alias="clientId")

    @field_validator("text", mode="before")
    @classmethod
    def _none_as_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @model_validator(mode="after")
    def _has_body_or_image(self) -> "Message":
        if not self.text.strip() and not self.image_url:
            raise ValueError("message needs text or an image")
        return self

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Message":
        return cls(id=doc_id, **{k: v for k, v in data.items() if k != "id"})

    def to_document(self) -> Dict[str, Any]:
        """Store representation; the timestamp is always left to the server."""
        doc = self.model_dump(by_alias=True, exclude={"id", "timestamp"}, mode="json")
        doc["timestamp"] = SERVER_TIMESTAMP
        return doc


# ============================================================================
# REQUEST BODIES
# ============================================================================

class SignInRequest(BaseModel):
    email: str
    password: str


class ImageUpload(BaseModel):
    """An image sent inline as base64, e.g. a profile picture."""

    filename: str = "image"
    content_type: str = "application/octet-stream"
    data: str


class SignUpRequest(BaseModel):
    email: str
    password: str
    display_name: str = ""
    profile_image: Optional[ImageUpload] = None


class CreateRoomRequest(BaseModel):
    name: str


class JoinRoomRequest(BaseModel):
    code: str
