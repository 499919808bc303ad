import base64
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from roomchat.api.routes.utils import COOKIE_NAME
from roomchat.core import state
from roomchat.main import app
from roomchat.services.attachments import AttachmentPipeline
from roomchat.services.identity import AuthTokens, IdentityClient

from conftest import ALICE, BOB, FakeImageHost, FakeProvider, image_bytes


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def sign_in(user):
    """Start a session for ``user`` without talking to the identity provider."""
    session_id, session = state.sessions.create()
    session.user = user
    session.tokens = AuthTokens("id-token", "refresh-token", datetime.now(timezone.utc) + timedelta(hours=1))
    return {"cookie": f"{COOKIE_NAME}={session_id}"}


def receive_until(ws, frame_type, limit=20):
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["type"] == frame_type:
            return frame
    raise AssertionError(f"no {frame_type} frame")


def test_root_and_health(client):
    assert client.get("/").json()["endpoints"]["websocket"] == "/ws/rooms/{room_id}"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["store"] == "memory"


def test_room_routes_require_sign_in(client):
    assert client.post("/rooms", json={"name": "x"}).status_code == 401
    assert client.get("/auth/me").status_code == 401


def test_me_returns_session_user(client):
    alice = sign_in(ALICE)
    body = client.get("/auth/me", headers=alice).json()
    assert body["user"]["uid"] == ALICE.uid


def test_create_join_and_get_room(client):
    alice, bob = sign_in(ALICE), sign_in(BOB)

    room_id = client.post("/rooms", json={"name": "Friday Hangout"}, headers=alice).json()["room_id"]
    joined = client.post("/rooms/join", json={"code": room_id}, headers=bob)
    again = client.post("/rooms/join", json={"code": room_id}, headers=bob)

    assert joined.status_code == 200
    assert again.status_code == 200
    room = client.get(f"/rooms/{room_id}", headers=bob).json()
    assert room["name"] == "Friday Hangout"
    assert room["owner_id"] == ALICE.uid
    assert sorted(room["joiners"]) == sorted([ALICE.uid, BOB.uid])
    assert room["joiner_count"] == 2


def test_invalid_inputs(client):
    bob = sign_in(BOB)

    unknown = client.post("/rooms/join", json={"code": "ZZZZZZ"}, headers=bob)
    blank = client.post("/rooms", json={"name": "   "}, headers=bob)

    assert unknown.status_code == 400
    assert unknown.json()["detail"] == "Invalid Room Code. Please check and try again."
    assert blank.status_code == 400
    assert client.get("/rooms/ZZZZZZ", headers=bob).status_code == 404


def test_only_owner_can_delete(client):
    alice, bob = sign_in(ALICE), sign_in(BOB)
    room_id = client.post("/rooms", json={"name": "Friday Hangout"}, headers=alice).json()["room_id"]

    assert client.delete(f"/rooms/{room_id}", headers=bob).status_code == 403
    assert client.delete(f"/rooms/{room_id}", headers=alice).json() == {"status": "deleted", "room_id": room_id}
    assert client.delete(f"/rooms/{room_id}", headers=alice).status_code == 404


def test_signout_drops_session(client):
    alice = sign_in(ALICE)
    assert client.post("/auth/signout", headers=alice).json() == {"authenticated": False}
    assert client.get("/auth/me", headers=alice).status_code == 401


def test_websocket_rejects_anonymous(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/rooms/anything"):
            pass


def test_live_room_session(client):
    alice, bob = sign_in(ALICE), sign_in(BOB)
    room_id = client.post("/rooms", json={"name": "Friday Hangout"}, headers=alice).json()["room_id"]
    client.post("/rooms/join", json={"code": room_id}, headers=bob)

    with client.websocket_connect(f"/ws/rooms/{room_id}", headers=bob) as bob_ws:
        room = receive_until(bob_ws, "room")
        assert room["room"]["joiner_count"] == 2
        assert receive_until(bob_ws, "messages")["messages"] == []

        with client.websocket_connect(f"/ws/rooms/{room_id}", headers=alice) as alice_ws:
            receive_until(alice_ws, "messages")
            alice_ws.send_json({"action": "compose", "text": "hi"})
            alice_ws.send_json({"action": "send"})

            assert receive_until(alice_ws, "compose")["sending"] is True
            after = receive_until(alice_ws, "compose")
            assert after["text"] == ""
            assert after["notice"] is None

            frame = receive_until(bob_ws, "messages")
            assert [(m["text"], m["type"], m["sender_id"]) for m in frame["messages"]] == [("hi", "text", ALICE.uid)]

            alice_ws.send_json({"action": "dance"})
            assert receive_until(alice_ws, "error")["message"] == "Unknown action: dance"

        client.delete(f"/rooms/{room_id}", headers=alice)
        assert receive_until(bob_ws, "room_deleted")["room_id"] == room_id

        bob_ws.send_json({"action": "send"})
        assert receive_until(bob_ws, "error")["message"] == "This room is no longer available."


def test_websocket_attachment_lifecycle(client):
    alice = sign_in(ALICE)
    room_id = client.post("/rooms", json={"name": "Pics"}, headers=alice).json()["room_id"]

    with client.websocket_connect(f"/ws/rooms/{room_id}", headers=alice) as ws:
        receive_until(ws, "messages")

        ws.send_json({"action": "attach", "filename": "a.png", "content_type": "image/png", "data": "not base64!"})
        assert receive_until(ws, "error")["message"] == "Attachment is not valid base64."

        ws.send_json({"action": "attach", "filename": "a.png", "content_type": "image/png", "data": "cG5n"})
        attached = receive_until(ws, "compose")["attachment"]
        assert attached["filename"] == "a.png"
        assert attached["preview_uri"].startswith("file://")

        ws.send_json({"action": "clear_attachment"})
        assert receive_until(ws, "compose")["attachment"] is None


def test_websocket_rejects_fields_of_the_wrong_type(client):
    alice = sign_in(ALICE)
    room_id = client.post("/rooms", json={"name": "Friday Hangout"}, headers=alice).json()["room_id"]

    with client.websocket_connect(f"/ws/rooms/{room_id}", headers=alice) as ws:
        receive_until(ws, "messages")

        ws.send_json({"action": "compose", "text": 5})
        assert receive_until(ws, "error")["message"] == "Field 'text' must be a string"

        ws.send_json({"action": "attach", "filename": ["a.png"], "content_type": "image/png", "data": "cG5n"})
        assert receive_until(ws, "error")["message"] == "Attachment fields must be strings."

        ws.send_json({"action": "switch_room", "room_id": {"id": room_id}})
        assert receive_until(ws, "error")["message"] == "Field 'room_id' must be a string"

        # The view is still up
        ws.send_json({"action": "compose", "text": "still here"})
        ws.send_json({"action": "send"})
        frame = receive_until(ws, "messages")
        while not frame["messages"]:
            frame = receive_until(ws, "messages")
        assert [m["text"] for m in frame["messages"]] == ["still here"]


def test_websocket_switch_room(client):
    alice = sign_in(ALICE)
    first = client.post("/rooms", json={"name": "First"}, headers=alice).json()["room_id"]
    second = client.post("/rooms", json={"name": "Second"}, headers=alice).json()["room_id"]

    with client.websocket_connect(f"/ws/rooms/{first}", headers=alice) as ws:
        assert receive_until(ws, "room")["room"]["name"] == "First"

        ws.send_json({"action": "switch_room", "room_id": "rooms/../" + second})
        assert receive_until(ws, "error")["message"] == "Invalid Room Code. Please check and try again."

        ws.send_json({"action": "switch_room", "room_id": f"  {second}  "})
        room = receive_until(ws, "room")
        assert room["room_id"] == second
        assert room["room"]["name"] == "Second"


def _fake_identity(provider, host):
    state.sessions.identity = IdentityClient("api-key", client=httpx.AsyncClient(transport=httpx.MockTransport(provider)))
    state.sessions.pipeline = AttachmentPipeline(host)


def test_signup_uploads_profile_image(client):
    provider = FakeProvider()
    host = FakeImageHost(url="https://i.img.test/me.jpg")
    _fake_identity(provider, host)
    photo = base64.b64encode(image_bytes(size=(2400, 1800), fmt="PNG")).decode()

    response = client.post(
        "/auth/signup",
        json={
            "email": "new@test",
            "password": "secret1",
            "display_name": "Ada",
            "profile_image": {"filename": "me.png", "content_type": "image/png", "data": photo},
        },
    )

    assert response.status_code == 200
    assert response.json()["user"]["photo_url"] == host.url
    assert provider.profile["photoUrl"] == host.url
    assert host.payloads[0].content_type == "image/jpeg"
    assert COOKIE_NAME in response.cookies


def test_signup_with_bad_profile_image_creates_nothing(client):
    provider = FakeProvider()
    _fake_identity(provider, FakeImageHost())

    response = client.post(
        "/auth/signup",
        json={"email": "new@test", "password": "secret1", "profile_image": {"data": "not base64!"}},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Attachment is not valid base64."
    assert provider.calls == []
