# roomchat/core/errors.py
from __future__ import annotations


class ChatError(Exception):
    """
    Base class for failures reported back to the user.

    Every remote operation (create, join, send, delete) catches store,
    transport and upload errors at its boundary and re-raises them as one
    of these, carrying a message that is safe to show in the UI.
    """

    default_message = "Something went wrong."

    def __init__(self, user_message: str | None = None) -> None:
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class InvalidInputError(ChatError):
    default_message = "Invalid input."


class InvalidRoomCodeError(InvalidInputError):
    default_message = "Invalid Room Code. Please check and try again."


class NotAuthenticatedError(ChatError):
    default_message = "You need to sign in first."


class UploadFailedError(ChatError):
    default_message = "Image upload failed."


class WriteFailedError(ChatError):
    default_message = "Failed to save changes."
