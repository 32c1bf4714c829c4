import pytest
from starlette.websockets import WebSocketDisconnect

import messaging
from auth import create_token
from conftest import auth_headers
from errors import ForbiddenError, ValidationError


@pytest.fixture
def classroom(store, make_user, make_course, enroll):
    tutor, student = make_user("tutor"), make_user("student")
    course = make_course(tutor)
    enroll(student, course)
    return tutor, student, course["group_id"]


def test_direct_room_is_created_once(store, make_user):
    alice, bob = make_user("student", name="Alice"), make_user("student", name="Bob")
    first = messaging.open_direct_room(store, alice, str(bob["_id"]))
    again = messaging.open_direct_room(store, bob, str(alice["_id"]))
    assert first["_id"] == again["_id"]
    assert first["name"] == "Alice & Bob"
    assert store.count("chatroom", {"type": "direct"}) == 1


def test_direct_room_with_self_is_rejected(store, make_user):
    alice = make_user("student")
    with pytest.raises(ValidationError):
        messaging.open_direct_room(store, alice, str(alice["_id"]))


def test_history_is_oldest_first_and_members_only(store, make_user, classroom):
    tutor, student, room_id = classroom
    for text in ("one", "two", "three"):
        messaging.post_message(store, student, room_id, text)

    assert [m["content"] for m in messaging.history(store, tutor, room_id, limit=2)] == ["two", "three"]
    with pytest.raises(ForbiddenError):
        messaging.history(store, make_user("student"), room_id)


def test_post_message_validates_content(store, classroom):
    _, student, room_id = classroom
    with pytest.raises(ValidationError):
        messaging.post_message(store, student, room_id, "   ")
    with pytest.raises(ValidationError):
        messaging.post_message(store, student, room_id, "x" * (messaging.MAX_MESSAGE_LENGTH + 1))


def test_only_sender_or_room_admin_deletes(store, classroom):
    tutor, student, room_id = classroom
    message = messaging.post_message(store, tutor, room_id, "welcome")
    with pytest.raises(ForbiddenError):
        messaging.delete_message(store, student, str(message["_id"]))

    mine = messaging.post_message(store, student, room_id, "hi")
    messaging.delete_message(store, tutor, str(mine["_id"]))
    assert store.get("message", mine["_id"]) is None


def test_rooms_over_http(client, classroom):
    tutor, student, room_id = classroom
    rooms = client.get("/chat/rooms", headers=auth_headers(student)).json()
    assert [r["id"] for r in rooms["data"]] == [room_id]

    res = client.post("/chat/rooms/direct", json={"userId": str(tutor["_id"])}, headers=auth_headers(student))
    assert res.status_code == 200
    assert res.json()["data"]["type"] == "direct"


# ----------------------
# Websocket
# ----------------------
def test_socket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as info:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert info.value.code == 1008


def test_socket_rejects_deactivated_user(client, make_user):
    user = make_user("student", is_active=False)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws?token={create_token(user)}"):
            pass


def socket(client, user):
    return client.websocket_connect("/ws", headers=auth_headers(user))


def join(ws, room_id):
    ws.send_json({"event": "join_room", "data": {"room_id": room_id}})
    reply = ws.receive_json()
    assert reply["event"] == "room_joined"
    return reply


def test_message_flow_between_room_members(client, store, classroom):
    tutor, student, room_id = classroom
    with socket(client, tutor) as tutor_ws, socket(client, student) as student_ws:
        join(tutor_ws, room_id)
        join(student_ws, room_id)

        student_ws.send_json({"event": "send_message", "data": {"room_id": room_id, "content": "hello", "client_id": "c-1"}})
        received = tutor_ws.receive_json()
        ack = student_ws.receive_json()

        assert received["event"] == "new_message"
        assert received["data"]["content"] == "hello"
        assert received["data"]["sender"]["name"] == student["name"]
        assert ack["event"] == "message_sent"
        assert ack["client_id"] == "c-1"
        assert ack["data"]["id"] == received["data"]["id"]

        tutor_ws.send_json({"event": "delete_message", "data": {"message_id": received["data"]["id"]}})
        for ws in (tutor_ws, student_ws):
            deleted = ws.receive_json()
            assert deleted == {"event": "message_deleted", "data": {"id": received["data"]["id"], "room_id": room_id}}

    assert store.count("message") == 0


def test_socket_reports_errors_without_closing(client, make_user, classroom):
    _, _, room_id = classroom
    outsider = make_user("student")
    with socket(client, outsider) as ws:
        ws.send_text("not json")
        assert ws.receive_json()["data"]["message"] == "Malformed frame"

        ws.send_json({"event": "join_room", "data": {"room_id": room_id}})
        error = ws.receive_json()
        assert error["event"] == "error"
        assert error["data"]["error"] == "forbidden"

        ws.send_json({"event": "dance", "data": {}})
        assert ws.receive_json()["data"]["error"] == "validation_error"


def test_socket_rejects_binary_frames(client, make_user):
    with socket(client, make_user("student")) as ws:
        ws.send_bytes(b"\x00\x01")
        error = ws.receive_json()
        assert error["event"] == "error"
        assert error["data"]["message"] == "Malformed frame"

        ws.send_json({"event": "dance", "data": {}})
        assert ws.receive_json()["data"]["error"] == "validation_error"


def test_unexpected_handler_failure_keeps_socket_open(client, classroom, monkeypatch):
    tutor, _, room_id = classroom

    def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(messaging, "post_message", broken)
    with socket(client, tutor) as ws:
        join(ws, room_id)
        ws.send_json({"event": "send_message", "data": {"room_id": room_id, "content": "hello"}})
        error = ws.receive_json()
        assert error["event"] == "error"
        assert error["data"]["error"] == "internal_error"
        assert error["data"]["event"] == "send_message"

        ws.send_json({"event": "leave_room", "data": {"room_id": room_id}})
        assert ws.receive_json()["event"] == "room_left"


def test_room_state_is_released_when_room_empties(client, gateway, classroom):
    tutor, _, room_id = classroom
    with socket(client, tutor) as ws:
        join(ws, room_id)
        ws.send_json({"event": "send_message", "data": {"room_id": room_id, "content": "hello"}})
        assert ws.receive_json()["event"] == "message_sent"
        assert room_id in gateway._room_locks

        ws.send_json({"event": "leave_room", "data": {"room_id": room_id}})
        assert ws.receive_json()["event"] == "room_left"
        assert gateway.rooms == {}
        assert gateway._room_locks == {}


def test_socket_opens_direct_room_by_peer(client, make_user):
    alice, bob = make_user("student"), make_user("student")
    with socket(client, alice) as ws:
        ws.send_json({"event": "join_room", "data": {"peer_id": str(bob["_id"])}})
        reply = ws.receive_json()
        assert reply["data"]["room"]["type"] == "direct"


def test_http_delete_announces_to_room(client, store, classroom):
    tutor, student, room_id = classroom
    message = messaging.post_message(store, student, room_id, "oops")
    with socket(client, tutor) as ws:
        join(ws, room_id)
        res = client.delete(f"/chat/messages/{message['_id']}", headers=auth_headers(student))
        assert res.status_code == 200
        assert ws.receive_json()["event"] == "message_deleted"


def test_notifications_are_pushed_to_connected_users(client, store, classroom):
    tutor, student, _ = classroom
    with socket(client, student) as ws:
        res = client.post("/assignments", json={
            "course_id": str(store.find_one("course", {})["_id"]),
            "title": "Homework",
            "description": "Chapter 2",
            "due_date": "2031-01-01T00:00:00Z",
        }, headers=auth_headers(tutor))
        assert res.status_code == 201
        pushed = ws.receive_json()
        assert pushed["event"] == "notification"
        assert pushed["data"]["type"] == "new_assignment"
