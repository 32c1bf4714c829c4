"""Authorization checks. Every predicate is pure: it only looks at the documents it is given."""
from typing import Any, Dict, Optional

from errors import ForbiddenError

Doc = Dict[str, Any]

ADMIN_ROLES = ("admin", "superadmin")


def user_id(user: Doc) -> str:
    return str(user["_id"])


def is_admin(user: Doc) -> bool:
    return user.get("role") in ADMIN_ROLES


def owns_course(user: Doc, course: Doc) -> bool:
    return course.get("tutor_id") == user_id(user)


def can_manage_course(user: Doc, course: Doc) -> bool:
    return owns_course(user, course) or is_admin(user)


def can_create_course(user: Doc) -> bool:
    if is_admin(user):
        return True
    return user.get("role") == "tutor" and bool(user.get("verified_tutor"))


def is_enrolled(student_id: str, course: Doc) -> bool:
    return any(e.get("student_id") == student_id for e in course.get("enrolled_students", []))


def can_view_schedule(user: Doc, course: Doc) -> bool:
    return is_enrolled(user_id(user), course) or can_manage_course(user, course)


def room_role(uid: str, room: Doc) -> Optional[str]:
    for p in room.get("participants", []):
        if p.get("user_id") == uid:
            return p.get("role", "member")
    return None


def is_room_participant(uid: str, room: Doc) -> bool:
    return room_role(uid, room) is not None


def can_delete_message(user: Doc, message: Doc, room: Doc) -> bool:
    uid = user_id(user)
    if message.get("sender_id") == uid:
        return True
    return room_role(uid, room) == "admin" or is_admin(user)


def owns_conversation(user: Doc, conversation: Doc) -> bool:
    return conversation.get("user_id") == user_id(user)


def ensure(allowed: bool, message: str = "Forbidden") -> None:
    if not allowed:
        raise ForbiddenError(message)
