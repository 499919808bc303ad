# roomchat/api/routes/auth.py

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from roomchat.api.routes.utils import COOKIE_NAME, current_user, lookup_session, to_http_error
from roomchat.core import state
from roomchat.core.config import settings
from roomchat.core.errors import ChatError
from roomchat.core.logging import get_logger
from roomchat.models.models import SignInRequest, SignUpRequest, UserProfile
from roomchat.services.attachments import decode_attachment

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _set_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(
        key=COOKIE_NAME,
        value=session_id,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=settings.SESSION_MAX_AGE,
    )


@router.post("/signin")
async def sign_in(request: SignInRequest, response: Response):
    """Sign in with email and password; starts a cookie session."""
    session_id, session = state.sessions.create()
    try:
        user = await session.sign_in(request.email, request.password)
    except ChatError as e:
        state.sessions.delete(session_id)
        raise to_http_error(e)
    _set_cookie(response, session_id)
    return {"authenticated": True, "user": user.model_dump()}


@router.post("/signup")
async def sign_up(request: SignUpRequest, response: Response):
    """
    Create an account, set its profile and sign it in.

    An optional ``profile_image`` (base64) is compressed and uploaded as the
    profile photo; without one, or if its upload fails, a generated avatar
    is used.

    Raises:
        HTTPException: 400 for a weak password, taken email or bad image data
    """
    profile_image = None
    if request.profile_image is not None:
        image = request.profile_image
        try:
            profile_image = decode_attachment(image.filename, image.content_type, image.data)
        except ChatError as e:
            raise to_http_error(e)

    session_id, session = state.sessions.create()
    try:
        user = await session.sign_up(request.email, request.password, request.display_name, profile_image)
    except ChatError as e:
        state.sessions.delete(session_id)
        raise to_http_error(e)
    finally:
        if profile_image is not None:
            profile_image.release()
    _set_cookie(response, session_id)
    return {"authenticated": True, "user": user.model_dump()}


@router.post("/signout")
async def sign_out(request: Request, response: Response):
    """Sign out and drop the session."""
    session_id = request.cookies.get(COOKIE_NAME)
    session = lookup_session(session_id)
    if session is not None:
        await session.sign_out()
        state.sessions.delete(session_id)
    response.delete_cookie(key=COOKIE_NAME)
    return {"authenticated": False}


@router.get("/me")
async def me(user: UserProfile = Depends(current_user)):
    """Get current user profile."""
    return {"authenticated": True, "user": user.model_dump()}
