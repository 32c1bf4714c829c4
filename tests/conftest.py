import os
import tempfile
from types import SimpleNamespace

# keep the suite away from real services before any app module reads config
os.environ["DATABASE_URL"] = ""
os.environ["DATABASE_NAME"] = ""
os.environ["OPENROUTER_API_KEY"] = ""
os.environ["SMTP_HOST"] = ""
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="learnhub-uploads-")

import mongomock
import pytest
from fastapi.testclient import TestClient

import courses
from ai_service import AIAssistant, get_assistant
from auth import create_token
from database import DataStore, get_store
from main import app
from notifications import Mailer, Outbox, get_mailer
from realtime import ConnectionManager, get_gateway
from schemas import User
from storage import BlobStore, get_blob_store


class FakeAIClient:
    """Stands in for the OpenAI client: replays canned replies and records every request."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=reply))])


class RecordingMailer(Mailer):
    def __init__(self):
        super().__init__(host=None)
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))


@pytest.fixture
def store():
    s = DataStore(mongomock.MongoClient()["learnhub_test"])
    s.ensure_indexes()
    return s


@pytest.fixture
def make_user(store):
    counter = {"n": 0}

    def _make(role="student", **fields):
        counter["n"] += 1
        data = {
            "name": fields.pop("name", f"{role.title()} {counter['n']}"),
            "email": fields.pop("email", f"{role}{counter['n']}@example.com"),
            "password_hash": fields.pop("password_hash", "not-a-real-hash"),
            "role": role,
            "verified_tutor": fields.pop("verified_tutor", role == "tutor"),
            **fields,
        }
        return store.insert("user", User(**data))

    return _make


@pytest.fixture
def make_course(store):
    def _make(tutor, **fields):
        data = {"title": "Intro to Python", "description": "Learn the basics", **fields}
        return courses.create_course(store, tutor, data)

    return _make


@pytest.fixture
def enroll(store):
    def _enroll(student, course):
        return courses.enroll(store, student, str(course["_id"]), Outbox())

    return _enroll


def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def ai_client():
    return FakeAIClient()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(root=str(tmp_path / "uploads"))


@pytest.fixture
def gateway():
    return ConnectionManager()


@pytest.fixture
def client(store, ai_client, mailer, blob_store, gateway):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_assistant] = lambda: AIAssistant(ai_client, "coder-model", "general-model")
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_gateway] = lambda: gateway
    # one portal for every request and websocket so asyncio locks share a loop
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
