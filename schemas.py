"""
Database Schemas for Learnhub

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase
of the class name (e.g., ChatRoom -> "chatroom"). Embedded records have no collection of their own.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["student", "tutor", "admin", "superadmin"]
Priority = Literal["low", "normal", "high"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Password hash")
    role: Role = Field("student", description="User role")
    verified_tutor: bool = Field(False, description="Set by an admin once a tutor is vetted")
    is_active: bool = Field(True, description="Inactive accounts cannot log in")
    bio: Optional[str] = Field(None, description="Short bio")
    avatar_url: Optional[str] = Field(None, description="Profile avatar URL")
    enrolled_courses: List[str] = Field(default_factory=list, description="Course ids")


class EnrollmentRecord(BaseModel):
    student_id: str
    enrolled_at: datetime = Field(default_factory=_now)
    progress: float = Field(0, ge=0, le=100, description="Completion percentage")


class RatingRecord(BaseModel):
    student_id: str
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class ScheduleEntry(BaseModel):
    title: str
    start_time: datetime
    duration_minutes: int = 60
    meeting_url: Optional[str] = None


class Course(BaseModel):
    title: str
    description: str
    tutor_id: str = Field(..., description="Owning tutor user id")
    price: float = Field(0, ge=0)
    currency: str = "NGN"
    category: Optional[str] = None
    level: Optional[Literal["beginner", "intermediate", "advanced"]] = None
    syllabus: List[str] = Field(default_factory=list)
    max_students: int = Field(100, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list)
    thumbnail: Optional[str] = None
    is_published: bool = True
    schedule: List[ScheduleEntry] = Field(default_factory=list)
    enrolled_students: List[EnrollmentRecord] = Field(default_factory=list)
    ratings: List[RatingRecord] = Field(default_factory=list)
    average_rating: float = 0
    total_ratings: int = 0
    group_id: Optional[str] = Field(None, description="Course group chat room id")


class Assignment(BaseModel):
    course_id: str
    title: str
    description: str
    instructions: Optional[str] = None
    due_date: datetime
    max_score: float = Field(100, gt=0)
    allow_late_submission: bool = False
    late_submission_penalty: float = Field(0, ge=0, le=100, description="Percent deducted when late")
    rubric: Optional[List[Dict[str, Any]]] = None
    is_published: bool = True


class SubmissionFile(BaseModel):
    file_name: str
    file_url: str
    file_type: Optional[str] = None
    storage_id: str


class Submission(BaseModel):
    assignment_id: str
    student_id: str
    files: List[SubmissionFile] = Field(default_factory=list)
    text: Optional[str] = None
    submitted_at: datetime = Field(default_factory=_now)
    is_late: bool = False
    status: Literal["submitted", "graded"] = "submitted"
    attempt_number: int = 1
    raw_score: Optional[float] = None
    score: Optional[float] = None
    feedback: Optional[str] = None
    graded_by: Optional[str] = None
    graded_at: Optional[datetime] = None


class Participant(BaseModel):
    user_id: str
    role: Literal["admin", "member"] = "member"
    joined_at: datetime = Field(default_factory=_now)


class ChatRoom(BaseModel):
    name: str
    type: Literal["direct", "course"]
    course_id: Optional[str] = None
    participants: List[Participant] = Field(default_factory=list)
    last_message_at: Optional[datetime] = None


class Message(BaseModel):
    room_id: str
    sender_id: str
    content: str


class ChatHistoryMessage(BaseModel):
    sender: Literal["user", "ai"]
    content: str
    timestamp: datetime = Field(default_factory=_now)


class ChatHistory(BaseModel):
    user_id: str
    conversation_name: str = "Untitled Chat"
    messages: List[ChatHistoryMessage] = Field(default_factory=list)


class Notification(BaseModel):
    user_id: str = Field(..., description="Recipient user id")
    type: str = Field(..., description="e.g. new_assignment, assignment_graded, course_enrollment, system")
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = "normal"
    is_read: bool = False
