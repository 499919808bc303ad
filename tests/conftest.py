import asyncio
import io
import json
import os
import time

# The app reads its settings at import time
os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("FIREBASE_API_KEY", "test-key")
os.environ.setdefault("IMGBB_API_KEY", "test-key")

import httpx
from jose import jwt
from PIL import Image

from roomchat.models.models import UserProfile


ALICE = UserProfile(uid="uid-alice", display_name="Alice", photo_url="https://img.test/alice.png", email="alice@test")
BOB = UserProfile(uid="uid-bob", display_name="Bob", photo_url=None, email="bob@test")


async def settle(rounds: int = 10) -> None:
    """Let scheduled store notifications run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def image_bytes(size=(64, 48), fmt="PNG", mode="RGB", noise=False, quality=95) -> bytes:
    if noise:
        img = Image.effect_noise(size, 80).convert(mode)
    else:
        img = Image.new(mode, size, color="red" if mode == "RGB" else None)
    out = io.BytesIO()
    kwargs = {"quality": quality} if fmt == "JPEG" else {}
    img.save(out, format=fmt, **kwargs)
    return out.getvalue()


class FakeImageHost:
    """Records what would have been uploaded."""

    def __init__(self, url="https://i.img.test/abc.jpg", error=None):
        self.url = url
        self.error = error
        self.payloads = []

    async def upload(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.url


def make_token(uid="uid-alice", expires_in=3600):
    return jwt.encode({"user_id": uid, "exp": int(time.time()) + expires_in}, "secret", algorithm="HS256")


class FakeProvider:
    """Answers the identity REST endpoints from memory."""

    def __init__(self):
        self.calls = []
        self.profile = {"localId": "uid-alice", "email": "alice@test", "displayName": "Alice", "photoUrl": "p.png"}
        self.token_expires_in = 3600

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        assert request.url.params["key"] == "api-key"
        if path.endswith("accounts:signInWithPassword"):
            body = json.loads(request.content)
            if body["password"] != "secret1":
                return httpx.Response(400, json={"error": {"message": "INVALID_LOGIN_CREDENTIALS"}})
            return httpx.Response(
                200,
                json={
                    "localId": "uid-alice",
                    "idToken": make_token(expires_in=self.token_expires_in),
                    "refreshToken": "r1",
                    "expiresIn": "3600",
                },
            )
        if path.endswith("accounts:signUp"):
            body = json.loads(request.content)
            if len(body["password"]) < 6:
                return httpx.Response(
                    400, json={"error": {"message": "WEAK_PASSWORD : Password should be at least 6 characters"}}
                )
            return httpx.Response(
                200, json={"localId": "uid-new", "idToken": make_token("uid-new"), "refreshToken": "r2", "expiresIn": "3600"}
            )
        if path.endswith("accounts:update"):
            body = json.loads(request.content)
            self.profile.update(displayName=body["displayName"], photoUrl=body["photoUrl"])
            return httpx.Response(200, json={"localId": "uid-new", "idToken": make_token("uid-new"), "refreshToken": "r3"})
        if path.endswith("accounts:lookup"):
            return httpx.Response(200, json={"users": [self.profile]})
        if path.endswith("/v1/token"):
            return httpx.Response(200, json={"id_token": make_token(), "refresh_token": "r9", "expires_in": "3600"})
        return httpx.Response(404)
