"""
Shared pytest fixtures for the Civic Complaint Desk test suite.

Collaborators (MongoDB collections, GridFS, OpenAI) are replaced with in-memory
fakes, wired into the app through FastAPI dependency overrides, so the suite
runs without any external service.
"""

import os
import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

os.environ.setdefault("JWT_SECRET", "civicdesk-test-secret-0123456789-abcdefghijklmnop")

import pytest
import pytest_asyncio
import httpx

from civicdesk import config
from civicdesk.app import app, limiter
from civicdesk.auth import Session, create_access_token, hash_password
from civicdesk.config import new_id, now_utc
from civicdesk.database import (get_activity, get_assistant, get_blob_store, get_chat_history,
                                get_complaints, get_media_limits, get_users)
from civicdesk.errors import AssistantUnavailable, ComplaintNotFound, MediaNotFound, StoreError, UploadFailed

if len(config.JWT_SECRET) < 32:
    config.JWT_SECRET = "civicdesk-test-secret-0123456789-abcdefghijklmnop"


# ═══════════════════════════════════════════════════════════════════════════════
# IN-MEMORY COLLABORATORS
# ═══════════════════════════════════════════════════════════════════════════════

class MemoryComplaintStore:
    """Mirrors ComplaintStore: list is newest first, every write wakes subscribers."""

    def __init__(self):
        self.docs: Dict[str, dict] = {}
        self._subscribers: List[asyncio.Queue] = []
        self._failure: Optional[Exception] = None

    def _notify(self):
        for q in list(self._subscribers):
            q.put_nowait(None)

    def break_stream(self, exc: Exception):
        self._failure = exc
        self._notify()

    async def insert(self, doc):
        doc = dict(doc)
        doc.setdefault("_id", new_id())
        self.docs[doc["_id"]] = doc
        self._notify()
        return dict(doc)

    async def get(self, complaint_id):
        doc = self.docs.get(complaint_id)
        return dict(doc) if doc else None

    async def list(self, author_id=None, limit=None):
        docs = [dict(d) for d in self.docs.values() if not author_id or d.get("author_id") == author_id]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        return docs[:limit] if limit else docs

    async def update(self, complaint_id, fields):
        if complaint_id not in self.docs:
            raise ComplaintNotFound("Complaint not found")
        changes = {**fields, "updated_at": now_utc()}
        changes.pop("created_at", None)
        self.docs[complaint_id].update(changes)
        self._notify()
        return dict(self.docs[complaint_id])

    async def delete(self, complaint_id):
        if self.docs.pop(complaint_id, None) is None:
            raise ComplaintNotFound("Complaint not found")
        self._notify()

    async def snapshots(self, author_id=None, limit=None):
        changes: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(changes)
        try:
            yield await self.list(author_id, limit)
            while True:
                await changes.get()
                if self._failure is not None:
                    raise self._failure
                yield await self.list(author_id, limit)
        finally:
            self._subscribers.remove(changes)


class UnavailableComplaintStore(MemoryComplaintStore):
    async def snapshots(self, author_id=None, limit=None):
        raise StoreError("change stream unavailable")
        yield


class MemoryActivityLog:
    def __init__(self):
        self.entries: List[dict] = []

    async def append(self, entry):
        doc = {"_id": new_id(), "timestamp": now_utc(), **entry}
        self.entries.append(doc)
        return doc

    async def recent(self, limit=20, complaint_id=None):
        docs = [e for e in reversed(self.entries) if not complaint_id or e.get("complaint_id") == complaint_id]
        return docs[:limit]


class FailingActivityLog(MemoryActivityLog):
    async def append(self, entry):
        raise StoreError("activity log unavailable")


class MemoryChatHistory:
    def __init__(self):
        self.docs: List[dict] = []

    async def save(self, user_id, user_message, ai_response):
        self.docs.append({"_id": new_id(), "userId": user_id, "userMessage": user_message,
                          "aiResponse": ai_response, "timestamp": now_utc()})

    async def recent(self, user_id, limit=20):
        mine = [d for d in self.docs if d["userId"] == user_id]
        return mine[-limit:]

    async def clear(self, user_id):
        before = len(self.docs)
        self.docs = [d for d in self.docs if d["userId"] != user_id]
        return before - len(self.docs)


class MemoryUserStore:
    def __init__(self, users=()):
        self.docs = {u["_id"]: u for u in users}

    async def find_by_username(self, username):
        for doc in self.docs.values():
            if doc["username"] == username:
                return doc
        return None

    async def find_by_id(self, user_id):
        return self.docs.get(user_id)

    async def insert(self, doc):
        self.docs[doc["_id"]] = doc
        return doc


class FakeBlobStore:
    """Records uploads. ``hold(name)`` parks that file's upload until cancelled;
    names in ``fail_names`` raise UploadFailed."""

    def __init__(self):
        self.blobs: Dict[str, tuple] = {}
        self.paths: List[str] = []
        self.fail_names = set()
        self._gates: Dict[str, asyncio.Event] = {}
        self._started: Dict[str, asyncio.Event] = {}

    def hold(self, name) -> asyncio.Event:
        self._gates[name] = asyncio.Event()
        self._started[name] = asyncio.Event()
        return self._started[name]

    def release(self, name):
        self._gates[name].set()

    async def upload(self, path, data, content_type, on_progress=None):
        name = path.rsplit("/", 1)[-1].split("_", 1)[1]
        if name in self._started:
            self._started[name].set()
        if name in self.fail_names:
            raise UploadFailed(f"Upload failed: {name}")
        if on_progress and data:
            on_progress(len(data) // 2, len(data))
        if name in self._gates:
            await self._gates[name].wait()
        file_id = f"{len(self.blobs) + 1:024x}"
        self.blobs[file_id] = (content_type, data, name)
        self.paths.append(path)
        if on_progress:
            on_progress(len(data), len(data))
        return f"/media/{file_id}"

    async def read(self, file_id):
        if file_id not in self.blobs:
            raise MediaNotFound("Media not found")
        return self.blobs[file_id]


class FakeAssistant:
    def __init__(self, reply="Your complaint is **in progress**."):
        self.reply_text = reply
        self.fail = False
        self.calls: List[tuple] = []

    async def reply(self, message, context=None):
        self.calls.append((message, context))
        if self.fail:
            raise AssistantUnavailable("AI service failed")
        return self.reply_text


# ═══════════════════════════════════════════════════════════════════════════════
# SESSIONS & DATA
# ═══════════════════════════════════════════════════════════════════════════════

CITIZEN = Session(user_id="user-citizen-1", email="citizen1@example.com", role="citizen", full_name="Asha Rao")
OTHER_CITIZEN = Session(user_id="user-citizen-2", email="citizen2@example.com", role="citizen",
                        full_name="Ravi Kumar")
ADMIN = Session(user_id="user-admin", email="admin@example.com", role="admin", full_name="City Admin")

_HASHED = {}


def _user_doc(session: Session, username: str, password: str) -> dict:
    if password not in _HASHED:
        _HASHED[password] = hash_password(password)
    return {"_id": session.user_id, "username": username, "hashed_password": _HASHED[password],
            "full_name": session.full_name, "email": session.email, "role": session.role,
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc)}


def make_complaint(**overrides) -> dict:
    doc = {
        "_id": new_id(),
        "title": "Broken streetlight",
        "description": "The light on the corner has been out for a week",
        "category": "Streetlight",
        "sub_category": "Light Not Working",
        "priority": "Medium",
        "location": "Park Street",
        "geolocation": None,
        "status": "pending",
        "progress": 0,
        "assigned_to": None,
        "rejection_reason": None,
        "media": [],
        "author_id": CITIZEN.user_id,
        "author_email": CITIZEN.email,
        "created_at": now_utc(),
        "updated_at": now_utc(),
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def complaint_factory():
    return make_complaint


@pytest.fixture
def complaints():
    return MemoryComplaintStore()


@pytest.fixture
def activity():
    return MemoryActivityLog()


@pytest.fixture
def chat_history():
    return MemoryChatHistory()


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def assistant():
    return FakeAssistant()


@pytest.fixture
def users():
    return MemoryUserStore([
        _user_doc(CITIZEN, "citizen1", "citizen123"),
        _user_doc(OTHER_CITIZEN, "citizen2", "citizen123"),
        _user_doc(ADMIN, "admin", "admin123"),
    ])


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP CLIENT
# ═══════════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def client(complaints, activity, chat_history, users, blob_store, assistant):
    """In-process httpx AsyncClient with every store dependency overridden."""
    # Disable rate limiting during tests so repeated calls aren't throttled
    limiter.enabled = False
    app.dependency_overrides.update({
        get_complaints: lambda: complaints,
        get_activity: lambda: activity,
        get_chat_history: lambda: chat_history,
        get_users: lambda: users,
        get_blob_store: lambda: blob_store,
        get_assistant: lambda: assistant,
        get_media_limits: lambda: {"max_image_bytes": config.MAX_IMAGE_BYTES,
                                   "max_video_bytes": config.MAX_VIDEO_BYTES},
    })
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


def _headers(username: str, role: str) -> dict:
    token = create_access_token({"sub": username, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def citizen_headers():
    return _headers("citizen1", "citizen")


@pytest.fixture
def other_citizen_headers():
    return _headers("citizen2", "citizen")


@pytest.fixture
def admin_headers():
    return _headers("admin", "admin")
