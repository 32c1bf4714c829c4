"""
Course catalog, enrollment and rating.

Enrollment and course creation touch several documents (course, user, chat
room). They run as sagas so a failure part way undoes the earlier writes
instead of leaving a student half enrolled.
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as SchemaError

import config
import messaging
import policy
from database import DataStore
from errors import AlreadyEnrolledError, CourseFullError, ForbiddenError, ValidationError
from notifications import Outbox
from saga import Saga
from schemas import Course, EnrollmentRecord, RatingRecord

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]

UPDATABLE_FIELDS = {
    "title", "description", "price", "currency", "category", "level", "syllabus",
    "max_students", "start_date", "end_date", "tags", "thumbnail", "is_published", "schedule",
}
SORT_KEYS = {"created_at", "price", "average_rating", "title"}


@dataclass
class PaymentRequired:
    amount: float
    currency: str
    course_id: str


# ----------------------
# Catalog
# ----------------------
def parse_sort(sort: Optional[str]):
    sort = (sort or "-created_at").strip()
    direction = -1 if sort.startswith("-") else 1
    key = sort.lstrip("-+")
    if key not in SORT_KEYS:
        key, direction = "created_at", -1
    return [(key, direction)]


def list_courses(
    store: DataStore,
    actor: Optional[Doc] = None,
    category: Optional[str] = None,
    level: Optional[str] = None,
    search: Optional[str] = None,
    tutor_id: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    enrolled: bool = False,
    page: int = 1,
    limit: int = 12,
    sort: Optional[str] = None,
) -> Dict[str, Any]:
    q: Dict[str, Any] = {"is_published": True}
    if category:
        q["category"] = category
    if level:
        q["level"] = level
    if tutor_id == "me" and actor:
        q["tutor_id"] = policy.user_id(actor)
        q.pop("is_published")
    elif tutor_id:
        q["tutor_id"] = tutor_id
    if min_price is not None or max_price is not None:
        q["price"] = {}
        if min_price is not None:
            q["price"]["$gte"] = min_price
        if max_price is not None:
            q["price"]["$lte"] = max_price
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        q["$or"] = [{"title": pattern}, {"description": pattern}]
    if enrolled and actor:
        q["enrolled_students.student_id"] = policy.user_id(actor)

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = store.count("course", q)
    items = store.find("course", q, sort=parse_sort(sort), skip=(page - 1) * limit, limit=limit)
    tutors = store.related("user", [c["tutor_id"] for c in items], {"name": 1, "email": 1, "avatar_url": 1, "verified_tutor": 1})
    for c in items:
        c["tutor"] = _public_user(tutors.get(c["tutor_id"]))
    return {
        "items": items,
        "total": total,
        "total_pages": math.ceil(total / limit) if total else 0,
        "current_page": page,
    }


def _public_user(user: Optional[Doc]) -> Optional[Doc]:
    if not user:
        return None
    return {k: v for k, v in user.items() if k not in ("password_hash", "enrolled_courses")}


def get_course(store: DataStore, course_id: str, actor: Optional[Doc] = None) -> Dict[str, Any]:
    course = store.require("course", course_id, "Course")
    tutor = store.get("user", course["tutor_id"])
    course["tutor"] = _public_user(tutor)
    is_enrolled = bool(actor) and policy.is_enrolled(policy.user_id(actor), course)
    return {"course": course, "is_enrolled": is_enrolled}


def create_course(store: DataStore, actor: Doc, data: Dict[str, Any]) -> Doc:
    policy.ensure(policy.can_create_course(actor), "Only verified tutors can create courses")
    if not (data.get("title") or "").strip() or not (data.get("description") or "").strip():
        raise ValidationError("Please provide title and description")

    fields = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS and v is not None}
    fields.setdefault("price", 0)
    fields.setdefault("currency", config.DEFAULT_CURRENCY)
    fields.setdefault("max_students", config.DEFAULT_MAX_STUDENTS)
    try:
        course = Course(tutor_id=policy.user_id(actor), **fields)
    except SchemaError as e:
        raise ValidationError(f"Invalid course data: {e.errors()[0]['msg']}")
    owner_id = policy.user_id(actor)

    def insert_course(ctx):
        return store.insert("course", course)

    def remove_course(ctx):
        store.delete("course", ctx["course"]["_id"])

    def open_group_chat(ctx):
        return messaging.create_course_room(store, str(ctx["course"]["_id"]), course.title, owner_id)

    def close_group_chat(ctx):
        store.delete("chatroom", ctx["room"]["_id"])

    def link_group(ctx):
        return store.update("course", ctx["course"]["_id"], {"group_id": str(ctx["room"]["_id"])})

    ctx = (
        Saga("Course creation")
        .step("course", insert_course, remove_course)
        .step("room", open_group_chat, close_group_chat)
        .step("linked", link_group)
        .run()
    )
    logger.info("Course %s created by %s", ctx["linked"]["_id"], owner_id)
    return ctx["linked"]


def update_course(store: DataStore, actor: Doc, course_id: str, data: Dict[str, Any]) -> Doc:
    course = store.require("course", course_id, "Course")
    policy.ensure(policy.can_manage_course(actor, course), "Not authorized to update this course")
    changes = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS and v is not None}
    if not changes:
        return course
    enrolled = len(course.get("enrolled_students", []))
    if "max_students" in changes and changes["max_students"] < enrolled:
        raise ValidationError(f"max_students cannot be lower than the {enrolled} students already enrolled")
    # validate the merged document before writing
    merged = {**course, **changes}
    try:
        Course(**{k: merged[k] for k in Course.model_fields if k in merged})
    except SchemaError as e:
        raise ValidationError(f"Invalid course data: {e.errors()[0]['msg']}")
    return store.update("course", course_id, changes)


def delete_course(store: DataStore, actor: Doc, course_id: str) -> None:
    course = store.require("course", course_id, "Course")
    policy.ensure(policy.can_manage_course(actor, course), "Not authorized to delete this course")
    store.delete("course", course_id)
    if course.get("group_id"):
        store.delete("chatroom", course["group_id"])
    logger.info("Course %s deleted by %s", course_id, policy.user_id(actor))


def get_schedule(store: DataStore, actor: Doc, course_id: str) -> Dict[str, Any]:
    course = store.require("course", course_id, "Course")
    policy.ensure(policy.can_view_schedule(actor, course), "Not authorized to view this schedule")
    tutor = store.get("user", course["tutor_id"])
    return {
        "course_title": course["title"],
        "tutor": tutor.get("name") if tutor else None,
        "schedule": sorted(course.get("schedule", []), key=lambda e: e.get("start_time")),
    }


# ----------------------
# Enrollment
# ----------------------
def check_enrollable(course: Doc, student_id: str) -> None:
    if policy.is_enrolled(student_id, course):
        raise AlreadyEnrolledError("Already enrolled in this course")
    if len(course.get("enrolled_students", [])) >= course.get("max_students", config.DEFAULT_MAX_STUDENTS):
        raise CourseFullError("Course is full")


def enroll(store: DataStore, actor: Doc, course_id: str, outbox: Outbox):
    """Enroll the actor in a free course, or return ``PaymentRequired`` for a priced one."""
    course = store.require("course", course_id, "Course")
    student_id = policy.user_id(actor)
    check_enrollable(course, student_id)
    if course.get("price", 0) > 0:
        return PaymentRequired(amount=course["price"], currency=course.get("currency", config.DEFAULT_CURRENCY),
                               course_id=str(course["_id"]))
    return admit_student(store, course, student_id, outbox)


def admit_student(store: DataStore, course: Doc, student_id: str, outbox: Outbox) -> Doc:
    """Write the enrollment. Eligibility is checked again against the stored course, so a payment callback can call this directly."""
    course = store.require("course", course["_id"], "Course")
    check_enrollable(course, student_id)
    cid = str(course["_id"])
    cap = course.get("max_students", config.DEFAULT_MAX_STUDENTS)
    record = EnrollmentRecord(student_id=student_id).model_dump()
    members = store.collection("course")

    def add_membership(ctx):
        # conditional push: racing requests can neither add the student twice nor pass the cap
        res = members.update_one(
            {
                "_id": course["_id"],
                "enrolled_students.student_id": {"$ne": student_id},
                f"enrolled_students.{cap - 1}": {"$exists": False},
            },
            {"$push": {"enrolled_students": record}},
        )
        if res.modified_count == 0:
            check_enrollable(store.require("course", cid, "Course"), student_id)
            raise CourseFullError("Course is full")

    def remove_membership(ctx):
        members.update_one({"_id": course["_id"]}, {"$pull": {"enrolled_students": {"student_id": student_id}}})

    def add_to_user(ctx):
        store.update("user", student_id, {}, addToSet={"enrolled_courses": cid})

    def remove_from_user(ctx):
        store.update("user", student_id, {}, pull={"enrolled_courses": cid})

    def join_group_chat(ctx):
        if not course.get("group_id"):
            logger.warning("Course %s has no group chat; skipping room membership", cid)
            return None
        return messaging.add_participant(store, course["group_id"], student_id)

    def leave_group_chat(ctx):
        if course.get("group_id"):
            messaging.remove_participant(store, course["group_id"], student_id)

    (
        Saga("Enrollment")
        .step("membership", add_membership, remove_membership)
        .step("user", add_to_user, remove_from_user)
        .step("group_chat", join_group_chat, leave_group_chat)
        .run()
    )

    outbox.notify(
        student_id,
        "course_enrollment",
        "Course Enrollment Successful",
        f"You have successfully enrolled in {course['title']}",
        {"course_id": cid},
    )
    logger.info("Student %s enrolled in course %s", student_id, cid)
    return store.get("course", cid)


# ----------------------
# Rating
# ----------------------
def average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


def rate(store: DataStore, actor: Doc, course_id: str, rating: int, review: Optional[str] = None) -> Doc:
    student_id = policy.user_id(actor)
    if rating is None or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")
    record = RatingRecord(student_id=student_id, rating=rating, review=review).model_dump()
    with store.lock("course-rating", course_id):
        course = store.require("course", course_id, "Course")
        if not policy.is_enrolled(student_id, course):
            raise ForbiddenError("You must be enrolled to rate this course")
        ratings = [r for r in course.get("ratings", []) if r.get("student_id") != student_id]
        previous = next((r for r in course.get("ratings", []) if r.get("student_id") == student_id), None)
        if previous:
            record["created_at"] = previous.get("created_at", record["created_at"])
        ratings.append(record)
        return store.update("course", course_id, {
            "ratings": ratings,
            "average_rating": average([r["rating"] for r in ratings]),
            "total_ratings": len(ratings),
        })
