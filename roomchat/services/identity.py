"""
Identity provider access - Firebase Authentication over its REST API

Features:
- Email/password sign-in and sign-up
- Profile update (display name, photo) right after sign-up
- ID token refresh shortly before expiry
- Per-client auth sessions with change notifications
- Process-wide session registry keyed by an opaque cookie value
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from jose import jwt, JWTError

from roomchat.core.errors import ChatError, InvalidInputError, NotAuthenticatedError
from roomchat.models.models import UserProfile

logger = logging.getLogger(__name__)

IDENTITY_URL = "https://identitytoolkit.googleapis.com/v1"
TOKEN_URL = "https://securetoken.googleapis.com/v1/token"

# Refresh this long before the ID token actually expires
REFRESH_MARGIN = timedelta(seconds=60)

# Provider error codes shown to the user
ERROR_MESSAGES = {
    "EMAIL_NOT_FOUND": "Invalid email or password.",
    "INVALID_PASSWORD": "Invalid email or password.",
    "INVALID_LOGIN_CREDENTIALS": "Invalid email or password.",
    "USER_DISABLED": "This account has been disabled.",
    "EMAIL_EXISTS": "An account with this email already exists.",
    "INVALID_EMAIL": "Please enter a valid email address.",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many attempts. Try again later.",
}


def default_avatar_url(name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote(name)}&background=ff4b5c&color=fff"


@dataclass
class AuthTokens:
    id_token: str
    refresh_token: str
    expires_at: datetime

    @classmethod
    def from_response(cls, id_token: str, refresh_token: str, expires_in: Any) -> "AuthTokens":
        """Prefer the token's own ``exp`` claim; fall back to ``expires_in``."""
        try:
            exp = jwt.get_unverified_claims(id_token).get("exp")
        except JWTError:
            exp = None
        if exp:
            expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc)
        else:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in or 3600))
        return cls(id_token=id_token, refresh_token=refresh_token, expires_at=expires_at)

    def expiring(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at - REFRESH_MARGIN


# ============================================================================
# REST CLIENT
# ============================================================================

class IdentityClient:
    """Thin async client for the identity provider's REST endpoints."""

    def __init__(self, api_key: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self.api_key = api_key
        self._client = client

    async def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.post(url, params={"key": self.api_key}, **kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, params={"key": self.api_key}, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise ChatError("Authentication service unavailable.") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            code = (body.get("error") or {}).get("message", "") if isinstance(body, dict) else ""
            # Codes may carry a detail suffix, e.g. "WEAK_PASSWORD : Password should be ..."
            key = code.split(" ")[0]
            logger.warning(f"Identity provider rejected request: {response.status_code} {code}")
            if key == "WEAK_PASSWORD":
                raise InvalidInputError("Password should be at least 6 characters.")
            if key in ("EMAIL_EXISTS", "INVALID_EMAIL"):
                raise InvalidInputError(ERROR_MESSAGES[key])
            raise NotAuthenticatedError(ERROR_MESSAGES.get(key, "Authentication failed."))
        return body

    async def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        return await self._post(
            f"{IDENTITY_URL}/accounts:signInWithPassword",
            json={"email": email, "password": password, "returnSecureToken": True},
        )

    async def sign_up(self, email: str, password: str) -> Dict[str, Any]:
        return await self._post(
            f"{IDENTITY_URL}/accounts:signUp",
            json={"email": email, "password": password, "returnSecureToken": True},
        )

    async def update_profile(self, id_token: str, display_name: str, photo_url: str) -> Dict[str, Any]:
        return await self._post(
            f"{IDENTITY_URL}/accounts:update",
            json={"idToken": id_token, "displayName": display_name, "photoUrl": photo_url, "returnSecureToken": True},
        )

    async def lookup(self, id_token: str) -> UserProfile:
        body = await self._post(f"{IDENTITY_URL}/accounts:lookup", json={"idToken": id_token})
        users = body.get("users") or []
        if not users:
            raise NotAuthenticatedError("Session expired.")
        user = users[0]
        return UserProfile(
            uid=user["localId"],
            display_name=user.get("displayName"),
            photo_url=user.get("photoUrl"),
            email=user.get("email"),
        )

    async def refresh(self, refresh_token: str) -> AuthTokens:
        body = await self._post(TOKEN_URL, data={"grant_type": "refresh_token", "refresh_token": refresh_token})
        return AuthTokens.from_response(
            body["id_token"], body.get("refresh_token", refresh_token), body.get("expires_in")
        )


# ============================================================================
# AUTH SESSION
# ============================================================================

AuthListener = Callable[[Optional[UserProfile]], None]


class AuthSession:
    """
    Signed-in state of one client.

    ``current_user`` is a snapshot; callers read it at the moment they need
    it (e.g. when sending) and never keep it. Listeners registered with
    ``on_change`` hear about every sign-in and sign-out.
    """

    def __init__(self, identity: IdentityClient, pipeline=None) -> None:
        self.identity = identity
        self.pipeline = pipeline
        self.user: Optional[UserProfile] = None
        self.tokens: Optional[AuthTokens] = None
        self._listeners: List[AuthListener] = []

    @property
    def current_user(self) -> Optional[UserProfile]:
        return self.user

    def on_change(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, user: Optional[UserProfile], tokens: Optional[AuthTokens]) -> None:
        self.user = user
        self.tokens = tokens
        for listener in list(self._listeners):
            try:
                listener(user)
            except Exception as e:
                logger.error(f"Auth listener failed: {e}")

    async def sign_in(self, email: str, password: str) -> UserProfile:
        body = await self.identity.sign_in(email, password)
        tokens = AuthTokens.from_response(body["idToken"], body["refreshToken"], body.get("expiresIn"))
        user = await self.identity.lookup(tokens.id_token)
        self._set(user, tokens)
        logger.info(f"User signed in: {user.uid}")
        return user

    async def sign_up(self, email: str, password: str, display_name: str = "", profile_image=None) -> UserProfile:
        """Create the account, then set its display name and photo."""
        body = await self.identity.sign_up(email, password)
        name = display_name.strip() or email.split("@")[0]

        photo_url = None
        if profile_image is not None and self.pipeline is not None:
            try:
                photo_url = await self.pipeline.upload(profile_image)
            except ChatError as e:
                logger.warning(f"Profile image upload failed, using generated avatar: {e}")
            finally:
                profile_image.release()
        photo_url = photo_url or default_avatar_url(name)

        updated = await self.identity.update_profile(body["idToken"], name, photo_url)
        tokens = AuthTokens.from_response(
            updated.get("idToken", body["idToken"]),
            updated.get("refreshToken", body["refreshToken"]),
            updated.get("expiresIn", body.get("expiresIn")),
        )
        user = UserProfile(uid=body["localId"], display_name=name, photo_url=photo_url, email=email)
        self._set(user, tokens)
        logger.info(f"User signed up: {user.uid}")
        return user

    async def sign_out(self) -> None:
        if self.user is not None:
            logger.info(f"User signed out: {self.user.uid}")
        self._set(None, None)

    async def ensure_fresh(self) -> Optional[UserProfile]:
        """Refresh the ID token if it is about to expire; sign out if that fails."""
        if self.tokens is None:
            return None
        if self.tokens.expiring():
            try:
                self.tokens = await self.identity.refresh(self.tokens.refresh_token)
                logger.info("Refreshed ID token")
            except ChatError as e:
                logger.error(f"Token refresh failed: {e}")
                await self.sign_out()
                return None
        return self.user


# ============================================================================
# SESSION REGISTRY
# ============================================================================

class SessionRegistry:
    """
    Auth sessions of all connected clients, keyed by cookie value.

    Explicit lifecycle: ``start()`` launches expiry cleanup, ``close()``
    stops it and signs everyone out. Only the composition root (route
    guards) reads from here; the chat core is handed a user snapshot.
    """

    def __init__(self, identity: IdentityClient, pipeline=None, max_age: int = 3600) -> None:
        self.identity = identity
        self.pipeline = pipeline
        self.max_age = timedelta(seconds=max_age)
        self.sessions: Dict[str, AuthSession] = {}
        self._expires: Dict[str, datetime] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    def create(self) -> tuple[str, AuthSession]:
        session_id = secrets.token_urlsafe(32)
        session = AuthSession(self.identity, self.pipeline)
        self.sessions[session_id] = session
        self.touch(session_id)
        return session_id, session

    def touch(self, session_id: str) -> None:
        self._expires[session_id] = datetime.now(timezone.utc) + self.max_age

    def get(self, session_id: Optional[str]) -> Optional[AuthSession]:
        """Get session if it exists and hasn't expired."""
        if not session_id:
            return None
        session = self.sessions.get(session_id)
        if session is None:
            return None
        if datetime.now(timezone.utc) > self._expires.get(session_id, datetime.min.replace(tzinfo=timezone.utc)):
            self.delete(session_id)
            return None
        self.touch(session_id)
        return session

    def delete(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self._expires.pop(session_id, None)

    def cleanup_expired(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [sid for sid, at in self._expires.items() if at < now]
        for sid in expired:
            self.delete(sid)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def _periodic_cleanup(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.cleanup_expired()

    def start(self, interval: float = 300) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup(interval))

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        for session in list(self.sessions.values()):
            await session.sign_out()
        self.sessions.clear()
        self._expires.clear()
