"""Chat rooms and messages: the persistence half of the realtime gateway."""
import logging
from typing import Any, Dict, List, Optional

import policy
from database import DataStore
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import ChatRoom, Message, Participant

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]

MAX_MESSAGE_LENGTH = 5000


def create_course_room(store: DataStore, course_id: str, course_title: str, owner_id: str) -> Doc:
    room = ChatRoom(
        name=f"{course_title} - Group Chat",
        type="course",
        course_id=course_id,
        participants=[Participant(user_id=owner_id, role="admin")],
    )
    return store.insert("chatroom", room)


def add_participant(store: DataStore, room_id: str, user_id: str, role: str = "member") -> Optional[Doc]:
    room = store.require("chatroom", room_id, "Chat room")
    record = Participant(user_id=user_id, role=role).model_dump()
    store.collection("chatroom").update_one(
        {"_id": room["_id"], "participants.user_id": {"$ne": user_id}},
        {"$push": {"participants": record}},
    )
    return store.get("chatroom", room_id)


def remove_participant(store: DataStore, room_id: str, user_id: str) -> None:
    store.update("chatroom", room_id, {}, pull={"participants": {"user_id": user_id}})


def list_rooms(store: DataStore, user: Doc) -> List[Doc]:
    return store.find(
        "chatroom",
        {"participants.user_id": policy.user_id(user)},
        sort=[("updated_at", -1)],
    )


def open_direct_room(store: DataStore, user: Doc, peer_id: str) -> Doc:
    """Return the direct room between two users, creating it on first contact."""
    uid = policy.user_id(user)
    if peer_id == uid:
        raise ValidationError("Cannot open a direct chat with yourself")
    peer = store.require("user", peer_id, "User")
    existing = store.find_one("chatroom", {
        "type": "direct",
        "participants": {"$size": 2},
        "$and": [{"participants.user_id": uid}, {"participants.user_id": peer_id}],
    })
    if existing:
        return existing
    room = ChatRoom(
        name=f"{user.get('name', 'User')} & {peer.get('name', 'User')}",
        type="direct",
        participants=[Participant(user_id=uid, role="member"), Participant(user_id=peer_id, role="member")],
    )
    logger.info("Direct room opened between %s and %s", uid, peer_id)
    return store.insert("chatroom", room)


def room_for_member(store: DataStore, user: Doc, room_id: str) -> Doc:
    room = store.require("chatroom", room_id, "Chat room")
    if not policy.is_room_participant(policy.user_id(user), room):
        raise ForbiddenError("You are not a participant of this room")
    return room


def history(store: DataStore, user: Doc, room_id: str, limit: int = 100) -> List[Doc]:
    """Latest ``limit`` messages of a room, oldest first."""
    room = room_for_member(store, user, room_id)
    latest = store.find(
        "message", {"room_id": str(room["_id"])},
        sort=[("created_at", -1), ("_id", -1)], limit=max(1, min(limit, 500)),
    )
    latest.reverse()
    return latest


def post_message(store: DataStore, user: Doc, room_id: str, content: str) -> Doc:
    room = room_for_member(store, user, room_id)
    content = (content or "").strip()
    if not content:
        raise ValidationError("Message content is required")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message is longer than {MAX_MESSAGE_LENGTH} characters")
    message = store.insert("message", Message(room_id=str(room["_id"]), sender_id=policy.user_id(user), content=content))
    store.update("chatroom", room["_id"], {"last_message_at": message["created_at"]})
    message["sender"] = {"id": policy.user_id(user), "name": user.get("name"), "avatar_url": user.get("avatar_url")}
    return message


def delete_message(store: DataStore, user: Doc, message_id: str) -> Doc:
    message = store.get("message", message_id)
    if not message:
        raise NotFoundError("Message not found")
    room = store.require("chatroom", message["room_id"], "Chat room")
    policy.ensure(policy.can_delete_message(user, message, room), "Not authorized to delete this message")
    store.delete("message", message_id)
    return message
