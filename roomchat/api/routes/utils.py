# roomchat/api/routes/utils.py

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from roomchat.core import state
from roomchat.core.errors import ChatError, InvalidInputError, NotAuthenticatedError
from roomchat.models.models import UserProfile
from roomchat.services.identity import AuthSession

COOKIE_NAME = "session_token"


def to_http_error(error: ChatError) -> HTTPException:
    """
    Map a user-facing chat error to an HTTP response.

        InvalidInputError     -> 400
        NotAuthenticatedError -> 401
        anything else         -> 502 (upload or store failure upstream)
    """
    if isinstance(error, InvalidInputError):
        return HTTPException(status_code=400, detail=error.user_message)
    if isinstance(error, NotAuthenticatedError):
        return HTTPException(status_code=401, detail=error.user_message)
    return HTTPException(status_code=502, detail=error.user_message)


def lookup_session(session_id: Optional[str]) -> Optional[AuthSession]:
    if state.sessions is None:
        return None
    return state.sessions.get(session_id)


async def current_user(request: Request) -> UserProfile:
    """
    Route guard: the signed-in user behind the session cookie.
    Use as dependency for protected endpoints.
    """
    session = lookup_session(request.cookies.get(COOKIE_NAME))
    if session is None:
        raise HTTPException(401, "Not authenticated")
    user = await session.ensure_fresh()
    if user is None:
        raise HTTPException(401, "Session expired")
    return user
