import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, UploadFile, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from pymongo.errors import DuplicateKeyError, PyMongoError

import ai_service
import assignments
import config
import courses
import database
import messaging
import policy
import realtime
from ai_service import AIAssistant, get_assistant
from auth import create_token, get_current_user, get_optional_user, hash_password, require_role, verify_password
from database import DataStore, get_store, now_utc, serialize_doc
from errors import AuthenticationError, ForbiddenError, ValidationError, register_error_handlers
from notifications import Mailer, NotificationDispatcher, Outbox, get_mailer
from realtime import ConnectionManager, get_gateway
from schemas import User
from storage import BlobStore, get_blob_store

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Learnhub API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL] if config.FRONTEND_URL != "*" else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount(config.UPLOAD_URL_PREFIX, StaticFiles(directory=config.UPLOAD_DIR), name="uploads")
register_error_handlers(app)


# ----------------------
# Utils
# ----------------------
def envelope(data: Any = None, message: Optional[str] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = serialize_doc(data)
    body.update(serialize_doc(extra))
    return body


def get_dispatcher(
    store: DataStore = Depends(get_store),
    mailer: Mailer = Depends(get_mailer),
    gateway: ConnectionManager = Depends(get_gateway),
) -> NotificationDispatcher:
    return NotificationDispatcher(store, mailer, gateway)


class RequestModel(BaseModel):
    # accept courseId as well as course_id
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------
# Auth Models
# ----------------------
class RegisterRequest(RequestModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["student", "tutor"] = "student"


class LoginRequest(RequestModel):
    email: EmailStr
    password: str


class ProfileUpdate(RequestModel):
    name: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None


# Course models
class ScheduleItem(RequestModel):
    title: str
    start_time: datetime
    duration_minutes: int = Field(60, gt=0)
    meeting_url: Optional[str] = None


class CourseCreate(RequestModel):
    title: str
    description: str
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
    category: Optional[str] = None
    level: Optional[Literal["beginner", "intermediate", "advanced"]] = None
    syllabus: Optional[List[str]] = None
    max_students: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    tags: Optional[List[str]] = None
    thumbnail: Optional[str] = None
    schedule: Optional[List[ScheduleItem]] = None


class CourseUpdate(CourseCreate):
    title: Optional[str] = None
    description: Optional[str] = None
    is_published: Optional[bool] = None


class RatingRequest(RequestModel):
    rating: int
    review: Optional[str] = None


# Assignment models
class AssignmentCreate(RequestModel):
    course_id: str
    title: str
    description: str
    instructions: Optional[str] = None
    due_date: datetime
    max_score: Optional[float] = Field(None, gt=0)
    allow_late_submission: bool = False
    late_submission_penalty: Optional[float] = Field(None, ge=0, le=100)
    rubric: Optional[List[Dict[str, Any]]] = None


class GradeRequest(RequestModel):
    score: float
    feedback: Optional[str] = None


# Chat models
class DirectRoomRequest(RequestModel):
    user_id: str


class ConversationCreate(RequestModel):
    conversation_name: Optional[str] = None


class ConversationMessage(RequestModel):
    sender: str
    content: str


# AI models
class AskRequest(RequestModel):
    question: str
    context: Optional[str] = None
    task: str = "general"
    reasoning_details: Optional[List[Any]] = None
    conversation_id: Optional[str] = None


class CourseAIRequest(RequestModel):
    course_id: str
    topic: Optional[str] = None


class StudyPlanRequest(RequestModel):
    course_id: str
    hours_per_week: float = Field(5, gt=0)
    level: str = "beginner"


class SummarizeRequest(RequestModel):
    transcript: str


# Admin models
class UserStatusRequest(RequestModel):
    is_active: bool


# ----------------------
# Startup: indexes and superadmin
# ----------------------
@app.on_event("startup")
def on_startup():
    # If DB is not configured, skip so the app can still start
    if database.store is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a database")
        return
    try:
        database.store.ensure_indexes()
        if not database.store.find_one("user", {"email": config.ADMIN_EMAIL}):
            database.store.insert("user", User(
                name="Super Admin",
                email=config.ADMIN_EMAIL,
                password_hash=hash_password(config.ADMIN_PASSWORD),
                role="superadmin",
            ))
            logger.info("Seeded superadmin %s", config.ADMIN_EMAIL)
    except Exception:
        # don't crash startup on seeding error
        logger.exception("Startup database preparation failed")


# ----------------------
# Basic routes
# ----------------------
@app.get("/")
def root():
    return {"success": True, "message": "Learnhub API running", "version": app.version}


@app.get("/health")
def health():
    db_status = "not configured"
    if database.db is not None:
        try:
            database.db.command("ping")
            db_status = "connected"
        except PyMongoError as e:
            logger.warning("Health check could not reach the database: %s", e)
            db_status = "unavailable"
    return {
        "status": "OK",
        "message": "Learnhub API is running",
        "database": db_status,
        "timestamp": now_utc().isoformat(),
    }


# ----------------------
# Auth endpoints
# ----------------------
def _token_response(user: dict) -> Dict[str, Any]:
    return {"access_token": create_token(user), "token_type": "bearer", "user": user}


@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, store: DataStore = Depends(get_store)):
    if store.find_one("user", {"email": payload.email}):
        raise ValidationError("Email already registered")
    try:
        user = store.insert("user", User(
            name=payload.name,
            email=payload.email,
            password_hash=hash_password(payload.password),
            role=payload.role,
        ))
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    return envelope(_token_response(user), "Registration successful")


@app.post("/auth/login")
def login(payload: LoginRequest, store: DataStore = Depends(get_store)):
    user = store.find_one("user", {"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid credentials")
    if not user.get("is_active", True):
        raise ForbiddenError("Account is deactivated")
    return envelope(_token_response(user))


@app.get("/me")
def me(current=Depends(get_current_user)):
    return envelope(current)


@app.patch("/me")
def update_me(update: ProfileUpdate, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    data = update.model_dump(exclude_none=True)
    if not data:
        return envelope(current)
    return envelope(store.update("user", current["_id"], data), "Profile updated")


# ----------------------
# Course endpoints
# ----------------------
@app.get("/courses")
def list_courses(
    category: Optional[str] = None,
    level: Optional[str] = None,
    search: Optional[str] = None,
    tutor: Optional[str] = Query(None, description="Tutor id, or 'me'"),
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    enrolled: bool = False,
    page: int = 1,
    limit: int = 12,
    sort: str = "-created_at",
    current=Depends(get_optional_user),
    store: DataStore = Depends(get_store),
):
    result = courses.list_courses(
        store, current, category=category, level=level, search=search, tutor_id=tutor,
        min_price=min_price, max_price=max_price, enrolled=enrolled, page=page, limit=limit, sort=sort,
    )
    items = result.pop("items")
    return envelope(items, count=len(items), **result)


@app.get("/courses/{course_id}")
def get_course(course_id: str, current=Depends(get_optional_user), store: DataStore = Depends(get_store)):
    result = courses.get_course(store, course_id, current)
    return envelope(result["course"], is_enrolled=result["is_enrolled"])


@app.post("/courses", status_code=201)
def create_course(body: CourseCreate, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["tutor", "admin"])
    course = courses.create_course(store, current, body.model_dump(exclude_none=True))
    return envelope(course, "Course created successfully")


@app.put("/courses/{course_id}")
def update_course(course_id: str, body: CourseUpdate, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["tutor", "admin"])
    course = courses.update_course(store, current, course_id, body.model_dump(exclude_none=True))
    return envelope(course, "Course updated successfully")


@app.delete("/courses/{course_id}")
def delete_course(course_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["tutor", "admin"])
    courses.delete_course(store, current, course_id)
    return envelope(message="Course deleted successfully")


@app.post("/courses/{course_id}/enroll")
def enroll(
    course_id: str,
    background: BackgroundTasks,
    current=Depends(get_current_user),
    store: DataStore = Depends(get_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    outbox = Outbox()
    result = courses.enroll(store, current, course_id, outbox)
    if isinstance(result, courses.PaymentRequired):
        return envelope(
            {"amount": result.amount, "currency": result.currency, "course_id": result.course_id},
            "Please complete payment to enroll",
            requires_payment=True,
        )
    dispatcher.dispatch(outbox, background)
    return envelope(result, "Enrolled successfully")


@app.get("/courses/{course_id}/schedule")
def course_schedule(course_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    return envelope(courses.get_schedule(store, current, course_id))


@app.post("/courses/{course_id}/rating")
def rate_course(course_id: str, body: RatingRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["student"])
    course = courses.rate(store, current, course_id, body.rating, body.review)
    return envelope(
        {"average_rating": course["average_rating"], "total_ratings": course["total_ratings"]},
        "Rating added successfully",
    )


# ----------------------
# Assignment endpoints
# ----------------------
@app.post("/assignments", status_code=201)
def create_assignment(
    body: AssignmentCreate,
    background: BackgroundTasks,
    current=Depends(get_current_user),
    store: DataStore = Depends(get_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    require_role(current, ["tutor", "admin"])
    outbox = Outbox()
    assignment = assignments.create_assignment(store, current, body.model_dump(), outbox)
    dispatcher.dispatch(outbox, background)
    return envelope(assignment, "Assignment created successfully")


@app.get("/assignments/my-submissions")
def my_submissions(current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["student"])
    subs = assignments.list_own_submissions(store, policy.user_id(current))
    return envelope(subs, count=len(subs))


@app.get("/assignments/submissions")
def tutor_submissions(
    status: Optional[Literal["submitted", "graded"]] = None,
    current=Depends(get_current_user),
    store: DataStore = Depends(get_store),
):
    require_role(current, ["tutor", "admin"])
    subs = assignments.list_tutor_submissions(store, current, status)
    return envelope(subs, count=len(subs))


@app.get("/assignments/course/{course_id}")
def course_assignments(course_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    items = assignments.list_course_assignments(store, course_id)
    return envelope(items, count=len(items))


@app.get("/assignments/{assignment_id}")
def get_assignment(assignment_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    result = assignments.get_assignment(store, current, assignment_id)
    return envelope(result["assignment"], submission=result["submission"])


@app.post("/assignments/{assignment_id}/submit", status_code=201)
def submit_assignment(
    assignment_id: str,
    background: BackgroundTasks,
    text: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    current=Depends(get_current_user),
    store: DataStore = Depends(get_store),
    blobs: BlobStore = Depends(get_blob_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    files = [f for f in files or [] if f.filename]
    if len(files) > config.MAX_SUBMISSION_FILES:
        raise ValidationError(f"At most {config.MAX_SUBMISSION_FILES} files can be attached")

    def upload():
        stored = []
        for f in files:
            blob = blobs.save("assignments", f.filename, f.file)
            stored.append(assignments.UploadedFile(f.filename, blob.url, blob.format or f.content_type, blob.storage_id))
        return stored

    outbox = Outbox()
    submission = assignments.submit(store, current, assignment_id, outbox, text=text, upload=upload)
    dispatcher.dispatch(outbox, background)
    return envelope(submission, "Assignment submitted successfully")


@app.put("/assignments/submission/{submission_id}/grade")
def grade_submission(
    submission_id: str,
    body: GradeRequest,
    background: BackgroundTasks,
    current=Depends(get_current_user),
    store: DataStore = Depends(get_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    require_role(current, ["tutor", "admin"])
    outbox = Outbox()
    submission = assignments.grade(store, current, submission_id, body.score, body.feedback, outbox)
    dispatcher.dispatch(outbox, background)
    return envelope(submission, "Submission graded successfully")


@app.get("/assignments/{assignment_id}/submissions")
def assignment_submissions(assignment_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["tutor", "admin"])
    subs = assignments.list_submissions(store, current, assignment_id)
    return envelope(subs, count=len(subs))


# ----------------------
# Chat rooms
# ----------------------
@app.get("/chat/rooms")
def chat_rooms(current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    rooms = messaging.list_rooms(store, current)
    return envelope(rooms, count=len(rooms))


@app.get("/chat/rooms/{room_id}/messages")
def room_messages(room_id: str, limit: int = 100, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    items = messaging.history(store, current, room_id, limit)
    return envelope(items, count=len(items))


@app.post("/chat/rooms/direct")
def direct_room(body: DirectRoomRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    return envelope(messaging.open_direct_room(store, current, body.user_id))


@app.delete("/chat/messages/{message_id}")
def delete_chat_message(
    message_id: str,
    background: BackgroundTasks,
    current=Depends(get_current_user),
    store: DataStore = Depends(get_store),
    gateway: ConnectionManager = Depends(get_gateway),
):
    message = messaging.delete_message(store, current, message_id)
    background.add_task(realtime.announce_deletion, gateway, message)
    return envelope(message="Message deleted")


@app.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    store: DataStore = Depends(get_store),
    gateway: ConnectionManager = Depends(get_gateway),
):
    if not token:
        authorization = websocket.headers.get("authorization", "")
        token = authorization[7:] if authorization.lower().startswith("bearer ") else None
    await realtime.serve(websocket, token, store, gateway)


# ----------------------
# AI conversations
# ----------------------
@app.post("/chat/ai", status_code=201)
def create_ai_chat(body: ConversationCreate, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    return envelope(ai_service.create_conversation(store, current, body.conversation_name))


@app.get("/chat/ai")
def list_ai_chats(current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    items = ai_service.list_conversations(store, current)
    return envelope(items, count=len(items))


@app.get("/chat/ai/{conversation_id}")
def get_ai_chat(conversation_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    return envelope(ai_service.get_conversation(store, current, conversation_id))


@app.post("/chat/ai/{conversation_id}/message")
def add_ai_message(conversation_id: str, body: ConversationMessage, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    return envelope(ai_service.append_message(store, current, conversation_id, body.sender, body.content))


# ----------------------
# AI assistant
# ----------------------
def _course_for_ai(store: DataStore, current: dict, course_id: str) -> dict:
    course = store.require("course", course_id, "Course")
    policy.ensure(policy.can_view_schedule(current, course), "You must be enrolled in this course")
    return course


@app.post("/ai/ask")
def ask(body: AskRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store),
        assistant: AIAssistant = Depends(get_assistant)):
    if body.conversation_id:
        ai_service.get_conversation(store, current, body.conversation_id)
    answer = assistant.answer_question(body.question, body.context, body.task, body.reasoning_details)
    if body.conversation_id:
        ai_service.append_exchange(store, current, body.conversation_id, body.question, answer)
    return envelope({"answer": answer})


@app.post("/ai/recommend")
def recommend(body: CourseAIRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store),
              assistant: AIAssistant = Depends(get_assistant)):
    course = _course_for_ai(store, current, body.course_id)
    progress = ai_service.student_progress(store, current, course)
    return envelope(assistant.study_recommendations(progress))


@app.post("/ai/resources")
def resources(body: CourseAIRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store),
              assistant: AIAssistant = Depends(get_assistant)):
    course = _course_for_ai(store, current, body.course_id)
    return envelope(assistant.resource_recommendations(course["title"], course.get("description", ""), body.topic))


@app.post("/ai/study-plan")
def study_plan(body: StudyPlanRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store),
               assistant: AIAssistant = Depends(get_assistant)):
    course = _course_for_ai(store, current, body.course_id)
    return envelope(assistant.generate_study_plan(course, body.hours_per_week, body.level))


@app.get("/ai/performance")
def performance(current=Depends(get_current_user), store: DataStore = Depends(get_store),
                assistant: AIAssistant = Depends(get_assistant)):
    require_role(current, ["student"])
    records = ai_service.performance_records(store, policy.user_id(current))
    if not records:
        raise ValidationError("No graded submissions to analyze yet")
    return envelope(assistant.analyze_performance(records))


@app.post("/ai/pre-grade/{submission_id}")
def pre_grade(submission_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store),
              assistant: AIAssistant = Depends(get_assistant)):
    require_role(current, ["tutor", "admin"])
    submission = store.require("submission", submission_id, "Submission")
    assignment = store.require("assignment", submission["assignment_id"], "Assignment")
    course = store.require("course", assignment["course_id"], "Course")
    policy.ensure(policy.can_manage_course(current, course), "Not authorized to grade this submission")
    if not (submission.get("text") or "").strip():
        raise ValidationError("Submission has no text to pre-grade")
    result = assistant.pre_grade(assignment["description"], assignment.get("rubric"), submission["text"],
                                 assignment.get("max_score", 100))
    return envelope(result)


@app.post("/ai/summarize")
def summarize(body: SummarizeRequest, current=Depends(get_current_user), assistant: AIAssistant = Depends(get_assistant)):
    return envelope({"summary": assistant.summarize_transcript(body.transcript)})


# ----------------------
# Notifications
# ----------------------
@app.get("/notifications")
def my_notifications(unread: bool = False, limit: int = 50, current=Depends(get_current_user),
                     dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    items = dispatcher.list_for(policy.user_id(current), unread_only=unread, limit=limit)
    return envelope(items, count=len(items))


@app.put("/notifications/read-all")
def read_all(current=Depends(get_current_user), dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return envelope({"updated": dispatcher.mark_all_read(policy.user_id(current))})


@app.put("/notifications/{notification_id}/read")
def read_one(notification_id: str, current=Depends(get_current_user), dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    doc = dispatcher.mark_read(policy.user_id(current), notification_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Notification not found")
    return envelope(doc)


# ----------------------
# Admin endpoints
# ----------------------
@app.get("/admin/users")
def list_users(role: Optional[str] = None, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["admin"])
    users = store.find("user", {"role": role} if role else {}, sort=[("created_at", -1)])
    return envelope(users, count=len(users))


@app.put("/admin/tutors/{user_id}/verify")
def verify_tutor(user_id: str, current=Depends(get_current_user), store: DataStore = Depends(get_store),
                 dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    require_role(current, ["admin"])
    tutor = store.require("user", user_id, "User")
    if tutor.get("role") != "tutor":
        raise ValidationError("User is not a tutor")
    updated = store.update("user", user_id, {"verified_tutor": True})
    dispatcher.create(user_id, "system", "Tutor Account Verified", "You can now create and publish courses.")
    return envelope(updated, "Tutor verified")


@app.put("/admin/users/{user_id}/status")
def set_user_status(user_id: str, body: UserStatusRequest, current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["admin"])
    target = store.require("user", user_id, "User")
    if policy.is_admin(target) and current.get("role") != "superadmin":
        raise ForbiddenError("Only a superadmin can change an admin account")
    return envelope(store.update("user", user_id, {"is_active": body.is_active}))


@app.get("/admin/stats")
def stats(current=Depends(get_current_user), store: DataStore = Depends(get_store)):
    require_role(current, ["admin"])
    return envelope({
        "users": store.count("user"),
        "students": store.count("user", {"role": "student"}),
        "tutors": store.count("user", {"role": "tutor"}),
        "unverified_tutors": store.count("user", {"role": "tutor", "verified_tutor": False}),
        "courses": store.count("course"),
        "assignments": store.count("assignment"),
        "submissions": store.count("submission"),
        "pending_grading": store.count("submission", {"status": "submitted"}),
        "messages": store.count("message"),
    })


if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
