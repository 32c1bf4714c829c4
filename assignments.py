"""
Assignment and submission workflow.

Functions take the store, the acting user document and plain values, and
return documents. Notifications and emails go into the caller's ``Outbox``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import policy
from database import DataStore, as_utc, now_utc
from errors import DeadlinePassedError, ForbiddenError, ValidationError
from notifications import Outbox
from schemas import Assignment, Submission, SubmissionFile

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]

# grading fields a first submission starts with; a resubmission keeps them
_GRADING_DEFAULTS = ("raw_score", "score", "feedback", "graded_by", "graded_at")


@dataclass
class UploadedFile:
    file_name: str
    file_url: str
    file_type: Optional[str]
    storage_id: str


def apply_late_penalty(raw_score: float, is_late: bool, penalty_percent: float) -> float:
    """``max(0, raw - raw * penalty / 100)`` for late work with a positive penalty, else the raw score."""
    if is_late and penalty_percent and penalty_percent > 0:
        return max(0.0, raw_score - (raw_score * penalty_percent) / 100)
    return raw_score


def create_assignment(store: DataStore, actor: Doc, data: Dict[str, Any], outbox: Outbox) -> Doc:
    for field in ("course_id", "title", "description", "due_date"):
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError("Please provide all required fields")

    course = store.require("course", data["course_id"], "Course")
    policy.ensure(policy.can_manage_course(actor, course), "Not authorized to create assignments for this course")

    assignment = Assignment(
        course_id=str(course["_id"]),
        title=data["title"].strip(),
        description=data["description"],
        instructions=data.get("instructions"),
        due_date=data["due_date"],
        max_score=data.get("max_score") or 100,
        allow_late_submission=bool(data.get("allow_late_submission")),
        late_submission_penalty=data.get("late_submission_penalty") or 0,
        rubric=data.get("rubric"),
        is_published=True,
    )
    doc = store.insert("assignment", assignment)

    student_ids = [e["student_id"] for e in course.get("enrolled_students", [])]
    students = store.related("user", student_ids, {"name": 1, "email": 1})
    outbox.notify_many(
        list(students),
        "new_assignment",
        "New Assignment Posted",
        f'New assignment "{assignment.title}" has been posted in {course["title"]}',
        {"course_id": str(course["_id"]), "assignment_id": str(doc["_id"])},
        priority="high",
    )
    due = as_utc(assignment.due_date).strftime("%Y-%m-%d %H:%M UTC")
    for student in students.values():
        outbox.email(
            student.get("email"),
            f"New assignment in {course['title']}: {assignment.title}",
            f"Hi {student.get('name', '')},\n\n"
            f'"{assignment.title}" has been posted in {course["title"]} and is due {due}.\n',
        )
    logger.info("Assignment %s created in course %s for %d students", doc["_id"], course["_id"], len(students))
    return doc


def list_course_assignments(store: DataStore, course_id: str) -> List[Doc]:
    return store.find("assignment", {"course_id": course_id, "is_published": True}, sort=[("created_at", -1)])


def get_assignment(store: DataStore, actor: Doc, assignment_id: str) -> Dict[str, Any]:
    assignment = store.require("assignment", assignment_id, "Assignment")
    course = store.get("course", assignment["course_id"])
    result: Dict[str, Any] = {"assignment": assignment, "course": course, "submission": None}
    if actor.get("role") == "student":
        result["submission"] = store.find_one(
            "submission", {"assignment_id": str(assignment["_id"]), "student_id": policy.user_id(actor)}
        )
    return result


def submit(
    store: DataStore,
    actor: Doc,
    assignment_id: str,
    outbox: Outbox,
    text: Optional[str] = None,
    files: Optional[List[UploadedFile]] = None,
    upload: Optional[Callable[[], List[UploadedFile]]] = None,
    now: Optional[datetime] = None,
) -> Doc:
    """Create or overwrite the student's single submission. ``upload`` runs only once the checks pass."""
    assignment = store.require("assignment", assignment_id, "Assignment")
    course = store.require("course", assignment["course_id"], "Course")
    student_id = policy.user_id(actor)
    if not policy.is_enrolled(student_id, course):
        raise ForbiddenError("You must be enrolled in the course to submit assignments")

    submitted_at = now or now_utc()
    is_late = submitted_at > as_utc(assignment["due_date"])
    if is_late and not assignment.get("allow_late_submission"):
        raise DeadlinePassedError("Submission deadline has passed and late submissions are not allowed")
    if upload is not None:
        files = upload()

    set_fields: Dict[str, Any] = {"submitted_at": submitted_at, "is_late": is_late, "status": "submitted"}
    set_on_insert: Dict[str, Any] = Submission(
        assignment_id=str(assignment["_id"]), student_id=student_id
    ).model_dump(include=set(_GRADING_DEFAULTS))
    # patch semantics: an empty upload or blank text keeps what the previous attempt had
    if files:
        set_fields["files"] = [SubmissionFile(**vars(f)).model_dump() for f in files]
    else:
        set_on_insert["files"] = []
    if text:
        set_fields["text"] = text
    else:
        set_on_insert["text"] = None

    submission = store.upsert(
        "submission",
        {"assignment_id": str(assignment["_id"]), "student_id": student_id},
        set_fields,
        set_on_insert=set_on_insert,
        inc={"attempt_number": 1},
    )

    outbox.notify(
        course["tutor_id"],
        "system",
        "New Assignment Submission",
        f'{actor.get("name", "A student")} submitted "{assignment["title"]}"',
        {"course_id": str(course["_id"]), "assignment_id": str(assignment["_id"])},
    )
    return submission


def grade(store: DataStore, actor: Doc, submission_id: str, raw_score: float, feedback: Optional[str], outbox: Outbox) -> Doc:
    submission = store.require("submission", submission_id, "Submission")
    assignment = store.require("assignment", submission["assignment_id"], "Assignment")
    course = store.require("course", assignment["course_id"], "Course")
    policy.ensure(policy.can_manage_course(actor, course), "Not authorized to grade this submission")

    max_score = assignment.get("max_score", 100)
    if raw_score is None or raw_score < 0:
        raise ValidationError("Score must be a non-negative number")
    if raw_score > max_score:
        raise ValidationError(f"Score cannot exceed {max_score:g}")

    final = apply_late_penalty(raw_score, submission.get("is_late", False), assignment.get("late_submission_penalty", 0))
    graded = store.update("submission", submission_id, {
        "raw_score": raw_score,
        "score": final,
        "feedback": feedback,
        "status": "graded",
        "graded_by": policy.user_id(actor),
        "graded_at": now_utc(),
    })

    outbox.notify(
        submission["student_id"],
        "assignment_graded",
        "Assignment Graded",
        f'Your submission for "{assignment["title"]}" has been graded',
        {"assignment_id": str(assignment["_id"]), "course_id": str(course["_id"])},
        priority="high",
    )
    return graded


def _person(user: Optional[Doc], *fields: str) -> Optional[Doc]:
    if not user:
        return None
    return {"id": str(user["_id"]), **{f: user.get(f) for f in fields}}


def list_submissions(store: DataStore, actor: Doc, assignment_id: str) -> List[Doc]:
    assignment = store.require("assignment", assignment_id, "Assignment")
    course = store.require("course", assignment["course_id"], "Course")
    policy.ensure(policy.can_manage_course(actor, course), "Not authorized to view these submissions")

    subs = store.find("submission", {"assignment_id": str(assignment["_id"])}, sort=[("submitted_at", -1)])
    people = store.related(
        "user",
        [s["student_id"] for s in subs] + [s.get("graded_by") for s in subs],
        {"name": 1, "email": 1, "avatar_url": 1},
    )
    for s in subs:
        s["student"] = _person(people.get(s["student_id"]), "name", "email", "avatar_url")
        s["grader"] = _person(people.get(s.get("graded_by")), "name")
    return subs


def list_own_submissions(store: DataStore, student_id: str) -> List[Doc]:
    subs = store.find("submission", {"student_id": student_id}, sort=[("submitted_at", -1)])
    assignments = store.related(
        "assignment", [s["assignment_id"] for s in subs],
        {"title": 1, "due_date": 1, "max_score": 1, "course_id": 1},
    )
    courses = store.related("course", [a["course_id"] for a in assignments.values()], {"title": 1})
    for s in subs:
        a = assignments.get(s["assignment_id"])
        if not a:
            s["assignment"] = None
            continue
        c = courses.get(a["course_id"])
        s["assignment"] = {
            "id": str(a["_id"]),
            "title": a.get("title"),
            "due_date": a.get("due_date"),
            "max_score": a.get("max_score"),
            "course": {"id": a["course_id"], "title": c.get("title") if c else None},
        }
    return subs


def list_tutor_submissions(store: DataStore, actor: Doc, status: Optional[str] = None) -> List[Doc]:
    """Submissions across every course the tutor owns (all courses for admins)."""
    course_filter = {} if policy.is_admin(actor) else {"tutor_id": policy.user_id(actor)}
    courses = {str(c["_id"]): c for c in store.find("course", course_filter, projection={"title": 1})}
    assignments = store.find("assignment", {"course_id": {"$in": list(courses)}}, projection={"title": 1, "course_id": 1})
    by_id = {str(a["_id"]): a for a in assignments}
    q: Dict[str, Any] = {"assignment_id": {"$in": list(by_id)}}
    if status:
        q["status"] = status
    subs = store.find("submission", q, sort=[("submitted_at", -1)])
    students = store.related("user", [s["student_id"] for s in subs], {"name": 1, "email": 1})
    for s in subs:
        a = by_id[s["assignment_id"]]
        s["assignment"] = {"id": s["assignment_id"], "title": a.get("title")}
        s["course"] = {"id": a["course_id"], "title": courses[a["course_id"]].get("title")}
        s["student"] = _person(students.get(s["student_id"]), "name", "email")
    return subs
