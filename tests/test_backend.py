"""
API tests for the Civic Complaint Desk.

Uses httpx AsyncClient + ASGITransport against the app in-process, with the
MongoDB, GridFS and OpenAI collaborators replaced by the fakes in conftest.
"""

import pytest

from conftest import ADMIN, CITIZEN, OTHER_CITIZEN, UnavailableComplaintStore

pytestmark = pytest.mark.asyncio

COMPLAINT = {
    "title": "Pothole on Main St",
    "description": "Large pothole on Main St near the school gate",
    "location": "Main St",
    "category": "Road Damage",
    "sub_category": "Pothole",
}


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class TestHealthCheck:
    async def test_health_endpoint(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data


# ═══════════════════════════════════════════════════════════════════════════════
# AUTHENTICATION
# ═══════════════════════════════════════════════════════════════════════════════

class TestAuth:
    async def test_login_citizen(self, client):
        resp = await client.post("/auth/login", json={"username": "citizen1", "password": "citizen123"})
        assert resp.status_code == 200
        data = resp.json()
        assert "access_token" in data
        assert data["user"]["role"] == "citizen"

    async def test_login_invalid_credentials(self, client):
        resp = await client.post("/auth/login", json={"username": "citizen1", "password": "wrong"})
        assert resp.status_code == 401

    async def test_register_is_citizen_only(self, client, users):
        resp = await client.post("/auth/register", json={
            "username": "newbie", "password": "secret123", "full_name": "New Person",
            "email": "newbie@example.com"})
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "citizen"
        assert await users.find_by_username("newbie") is not None

    async def test_register_duplicate(self, client):
        resp = await client.post("/auth/register", json={
            "username": "citizen1", "password": "secret123", "full_name": "Dup", "email": "d@example.com"})
        assert resp.status_code == 400

    async def test_me(self, client, citizen_headers):
        resp = await client.get("/auth/me", headers=citizen_headers)
        assert resp.status_code == 200
        assert resp.json()["username"] == "citizen1"

    async def test_no_token(self, client):
        resp = await client.get("/complaints/mine")
        assert resp.status_code == 401

    async def test_logout_revokes_token(self, client):
        reg = await client.post("/auth/register", json={
            "username": "leaver", "password": "secret123", "full_name": "Leaving User",
            "email": "leaver@example.com"})
        headers = {"Authorization": f"Bearer {reg.json()['access_token']}"}
        assert (await client.post("/auth/logout", headers=headers)).status_code == 200
        assert (await client.get("/auth/me", headers=headers)).status_code == 401


# ═══════════════════════════════════════════════════════════════════════════════
# CITIZEN COMPLAINTS
# ═══════════════════════════════════════════════════════════════════════════════

class TestCitizenComplaints:
    async def test_create_complaint(self, client, citizen_headers, complaints, activity):
        resp = await client.post("/complaints", json=COMPLAINT, headers=citizen_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "pending"
        assert data["progress"] == 0
        assert data["priority"] == "Medium"
        assert data["author_id"] == CITIZEN.user_id
        assert data["category_display"] == "Road Damage - Pothole"
        assert data["id"] in complaints.docs
        assert activity.entries[-1]["type"] == "complaint_created"

    async def test_create_missing_sub_category(self, client, citizen_headers, complaints):
        resp = await client.post("/complaints", json={**COMPLAINT, "sub_category": None},
                                 headers=citizen_headers)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Please select the specific problem type"
        assert complaints.docs == {}

    async def test_create_other_category(self, client, citizen_headers):
        resp = await client.post("/complaints", json={
            **COMPLAINT, "category": "Other", "sub_category": None, "other_category": "Stray cattle"},
            headers=citizen_headers)
        assert resp.status_code == 200
        assert resp.json()["category"] == "Stray cattle"

    async def test_list_is_scoped_and_searchable(self, client, citizen_headers, complaints, complaint_factory):
        await complaints.insert(complaint_factory(description="large pothole on Main St"))
        await complaints.insert(complaint_factory(title="Noise at night"))
        await complaints.insert(complaint_factory(author_id=OTHER_CITIZEN.user_id))
        resp = await client.get("/complaints/mine", headers=citizen_headers)
        assert len(resp.json()) == 2
        resp = await client.get("/complaints/mine", params={"q": "pothole"}, headers=citizen_headers)
        assert [c["description"] for c in resp.json()] == ["large pothole on Main St"]

    async def test_list_filter_by_status(self, client, citizen_headers, complaints, complaint_factory):
        await complaints.insert(complaint_factory(status="resolved"))
        await complaints.insert(complaint_factory(status="pending"))
        resp = await client.get("/complaints/mine", params={"status": "resolved"}, headers=citizen_headers)
        assert [c["status"] for c in resp.json()] == ["resolved"]

    async def test_recent_limited_to_five(self, client, citizen_headers, complaints, complaint_factory):
        for _ in range(7):
            await complaints.insert(complaint_factory())
        resp = await client.get("/complaints/mine/recent", headers=citizen_headers)
        assert len(resp.json()) == 5

    async def test_stats(self, client, citizen_headers, complaints, complaint_factory):
        for status in ("pending", "resolved", "resolved", "in-progress"):
            await complaints.insert(complaint_factory(status=status))
        resp = await client.get("/complaints/mine/stats", headers=citizen_headers)
        assert resp.json() == {"total": 4, "pending": 1, "in_progress": 1, "resolved": 2,
                               "rejected": 0, "resolution_rate": 50}

    async def test_analytics(self, client, citizen_headers, complaints, complaint_factory):
        await complaints.insert(complaint_factory())
        resp = await client.get("/complaints/mine/analytics", headers=citizen_headers)
        data = resp.json()
        assert data["total"] == 1
        assert len(data["monthly_trend"]) == 1

    async def test_cannot_read_others_complaint(self, client, other_citizen_headers, complaints,
                                                complaint_factory):
        doc = await complaints.insert(complaint_factory())
        resp = await client.get(f"/complaints/{doc['_id']}", headers=other_citizen_headers)
        assert resp.status_code == 404

    async def test_invalid_id(self, client, citizen_headers):
        resp = await client.get("/complaints/not-a-uuid", headers=citizen_headers)
        assert resp.status_code == 400

    async def test_suggest_category(self, client):
        resp = await client.get("/complaints/suggest-category",
                                params={"description": "The garbage bin near the market is overflowing"})
        assert resp.json()["category"] == "Garbage Disposal"

    async def test_taxonomy(self, client):
        resp = await client.get("/taxonomy")
        assert "Road Damage" in resp.json()["categories"]

    async def test_stream_reports_failure(self, client, citizen_headers):
        from civicdesk.app import app
        from civicdesk.database import get_complaints
        app.dependency_overrides[get_complaints] = lambda: UnavailableComplaintStore()
        resp = await client.get("/complaints/stream", headers=citizen_headers)
        assert resp.status_code == 200
        assert "event: error" in resp.text
        assert "Failed to load complaints" in resp.text


# ═══════════════════════════════════════════════════════════════════════════════
# DRAFTS & MEDIA
# ═══════════════════════════════════════════════════════════════════════════════

class TestDrafts:
    async def test_draft_lifecycle(self, client, citizen_headers, complaints, blob_store):
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        base = f"/drafts/{draft['id']}"
        first = (await client.post(f"{base}/media", files={"file": ("a.jpg", b"aaa", "image/jpeg")},
                                   headers=citizen_headers)).json()
        await client.post(f"{base}/media", files={"file": ("b.mp4", b"bbb", "video/mp4")},
                          headers=citizen_headers)
        resp = await client.put(f"{base}/media/{first['id']}", files={"file": ("a2.png", b"a2", "image/png")},
                                headers=citizen_headers)
        assert resp.json()["id"] == first["id"]

        state = (await client.get(base, headers=citizen_headers)).json()
        assert [f["name"] for f in state["files"]] == ["a2.png", "b.mp4"]

        resp = await client.post(f"{base}/submit", json=COMPLAINT, headers=citizen_headers)
        assert resp.status_code == 200
        media = resp.json()["media"]
        assert [(m["name"], m["type"]) for m in media] == [("a2.png", "image"), ("b.mp4", "video")]
        assert (await client.get(base, headers=citizen_headers)).status_code == 404

        blob = await client.get(media[0]["url"], headers=citizen_headers)
        assert blob.status_code == 200
        assert blob.content == b"a2"

    async def test_oversized_file(self, client, citizen_headers):
        from civicdesk.app import app
        from civicdesk.database import get_media_limits
        app.dependency_overrides[get_media_limits] = lambda: {"max_image_bytes": 4, "max_video_bytes": 8}
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        resp = await client.post(f"/drafts/{draft['id']}/media",
                                 files={"file": ("big.jpg", b"123456", "image/jpeg")}, headers=citizen_headers)
        assert resp.status_code == 413
        state = (await client.get(f"/drafts/{draft['id']}", headers=citizen_headers)).json()
        assert state["files"] == []

    async def test_remove_and_clear(self, client, citizen_headers):
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        base = f"/drafts/{draft['id']}"
        item = (await client.post(f"{base}/media", files={"file": ("a.jpg", b"a", "image/jpeg")},
                                  headers=citizen_headers)).json()
        await client.post(f"{base}/media", files={"file": ("b.jpg", b"b", "image/jpeg")}, headers=citizen_headers)
        state = (await client.delete(f"{base}/media/{item['id']}", headers=citizen_headers)).json()
        assert [f["name"] for f in state["files"]] == ["b.jpg"]
        state = (await client.delete(f"{base}/media", headers=citizen_headers)).json()
        assert state["files"] == []

    async def test_oversized_file_rejected_before_reading(self, client, citizen_headers, monkeypatch):
        from starlette.datastructures import UploadFile
        from civicdesk.app import app
        from civicdesk.database import get_media_limits

        async def no_read(self, size=-1):
            raise AssertionError("body read before size check")
        monkeypatch.setattr(UploadFile, "read", no_read)
        app.dependency_overrides[get_media_limits] = lambda: {"max_image_bytes": 4, "max_video_bytes": 8}
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        resp = await client.post(f"/drafts/{draft['id']}/media",
                                 files={"file": ("big.mp4", b"0123456789", "video/mp4")}, headers=citizen_headers)
        assert resp.status_code == 413
        assert resp.json()["detail"] == "big.mp4 is too large. Max size: 0MB"

    async def test_discard_draft(self, client, citizen_headers, other_citizen_headers):
        from civicdesk.app import drafts
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        base = f"/drafts/{draft['id']}"
        await client.post(f"{base}/media", files={"file": ("a.jpg", b"a" * 1024, "image/jpeg")},
                          headers=citizen_headers)
        held = len(drafts)
        assert (await client.delete(base, headers=other_citizen_headers)).status_code == 404
        resp = await client.delete(base, headers=citizen_headers)
        assert resp.status_code == 200
        assert len(drafts) == held - 1
        assert (await client.get(base, headers=citizen_headers)).status_code == 404

    async def test_draft_belongs_to_owner(self, client, citizen_headers, other_citizen_headers):
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        resp = await client.get(f"/drafts/{draft['id']}", headers=other_citizen_headers)
        assert resp.status_code == 404

    async def test_upload_failure_creates_no_complaint(self, client, citizen_headers, complaints, blob_store):
        blob_store.fail_names.add("bad.jpg")
        draft = (await client.post("/drafts", headers=citizen_headers)).json()
        await client.post(f"/drafts/{draft['id']}/media", files={"file": ("bad.jpg", b"x", "image/jpeg")},
                          headers=citizen_headers)
        resp = await client.post(f"/drafts/{draft['id']}/submit", json=COMPLAINT, headers=citizen_headers)
        assert resp.status_code == 502
        assert complaints.docs == {}


# ═══════════════════════════════════════════════════════════════════════════════
# ASSISTANT
# ═══════════════════════════════════════════════════════════════════════════════

class TestChat:
    async def test_chat_saves_history(self, client, citizen_headers, chat_history, assistant):
        resp = await client.post("/chat", json={"message": "Where is my complaint?"}, headers=citizen_headers)
        data = resp.json()
        assert data["degraded"] is False
        assert data["html"] == "Your complaint is <strong>in progress</strong>."
        assert len(chat_history.docs) == 1
        context = assistant.calls[0][1]
        assert context["userName"] == CITIZEN.full_name

        history = (await client.get("/chat/history", headers=citizen_headers)).json()
        assert [h["role"] for h in history] == ["user", "assistant"]

    async def test_chat_degrades(self, client, citizen_headers, chat_history, assistant):
        assistant.fail = True
        resp = await client.post("/chat", json={"message": "hello"}, headers=citizen_headers)
        assert resp.status_code == 200
        assert resp.json()["degraded"] is True
        assert resp.json()["reply"].startswith("Sorry, I'm having trouble")
        assert chat_history.docs == []

    async def test_clear_history(self, client, citizen_headers, chat_history):
        await client.post("/chat", json={"message": "one"}, headers=citizen_headers)
        await client.post("/chat", json={"message": "two"}, headers=citizen_headers)
        resp = await client.delete("/chat/history", headers=citizen_headers)
        assert resp.json() == {"deleted": 2}
        assert (await client.get("/chat/history", headers=citizen_headers)).json() == []

    async def test_relay(self, client, assistant):
        resp = await client.post("/api/ai/chat", json={"message": "hi", "context": {"totalComplaints": 1}})
        assert resp.status_code == 200
        assert resp.json() == {"reply": assistant.reply_text}
        assert assistant.calls[-1] == ("hi", {"totalComplaints": 1})

    async def test_relay_requires_message(self, client):
        resp = await client.post("/api/ai/chat", json={})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Message is required"}

    async def test_relay_failure(self, client, assistant):
        assistant.fail = True
        resp = await client.post("/api/ai/chat", json={"message": "hi"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "AI service failed"}


# ═══════════════════════════════════════════════════════════════════════════════
# ADMIN
# ═══════════════════════════════════════════════════════════════════════════════

class TestAdmin:
    async def test_citizen_forbidden(self, client, citizen_headers):
        resp = await client.get("/admin/complaints", headers=citizen_headers)
        assert resp.status_code == 403

    async def test_list_all(self, client, admin_headers, complaints, complaint_factory):
        await complaints.insert(complaint_factory())
        await complaints.insert(complaint_factory(author_id=OTHER_CITIZEN.user_id))
        resp = await client.get("/admin/complaints", headers=admin_headers)
        assert len(resp.json()) == 2

    async def test_accept_needs_confirm(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory())
        resp = await client.put(f"/admin/complaints/{doc['_id']}/accept", headers=admin_headers)
        assert resp.status_code == 409
        resp = await client.put(f"/admin/complaints/{doc['_id']}/accept", params={"confirm": "true"},
                                headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "in-progress"
        assert resp.json()["assigned_to"] == ADMIN.email

    async def test_reject_default_reason(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory())
        resp = await client.put(f"/admin/complaints/{doc['_id']}/reject", headers=admin_headers)
        assert resp.json()["rejection_reason"] == "No reason provided"

    async def test_resolve_from_terminal_conflicts(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory(status="rejected"))
        resp = await client.put(f"/admin/complaints/{doc['_id']}/resolve", headers=admin_headers)
        assert resp.status_code == 409

    async def test_status_overwrite_unchecked(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory(status="resolved"))
        resp = await client.put(f"/admin/complaints/{doc['_id']}/status", json={"status": "pending"},
                                headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"

    async def test_transition_endpoint(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory())
        resp = await client.post(f"/admin/complaints/{doc['_id']}/transition",
                                 json={"event": "reject", "reason": "Duplicate"}, headers=admin_headers)
        assert resp.json()["status"] == "rejected"
        assert resp.json()["rejection_reason"] == "Duplicate"

    async def test_assign(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory())
        resp = await client.put(f"/admin/complaints/{doc['_id']}/assign", json={"assignee": "crew-7"},
                                headers=admin_headers)
        assert resp.json()["assigned_to"] == "crew-7"
        assert resp.json()["status"] == "pending"

    async def test_delete(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory())
        resp = await client.delete(f"/admin/complaints/{doc['_id']}", headers=admin_headers)
        assert resp.status_code == 409
        resp = await client.delete(f"/admin/complaints/{doc['_id']}", params={"confirm": "true"},
                                   headers=admin_headers)
        assert resp.status_code == 200
        assert complaints.docs == {}

    async def test_missing_complaint(self, client, admin_headers):
        resp = await client.put("/admin/complaints/00000000-0000-4000-8000-000000000000/resolve",
                                headers=admin_headers)
        assert resp.status_code == 404

    async def test_activity_feed(self, client, admin_headers, complaints, complaint_factory):
        doc = await complaints.insert(complaint_factory())
        await client.put(f"/admin/complaints/{doc['_id']}/assign", json={"assignee": "crew-7"},
                         headers=admin_headers)
        await client.put(f"/admin/complaints/{doc['_id']}/reject", headers=admin_headers)
        resp = await client.get("/admin/activity", headers=admin_headers)
        assert [e["type"] for e in resp.json()] == ["complaint_rejected", "complaint_assigned"]
        assert resp.json()[0]["admin_email"] == ADMIN.email

    async def test_stats_and_analytics(self, client, admin_headers, complaints, complaint_factory):
        await complaints.insert(complaint_factory(status="resolved", location="Main St"))
        await complaints.insert(complaint_factory(status="pending", location="Main St",
                                                  author_id=OTHER_CITIZEN.user_id))
        stats = (await client.get("/admin/stats", headers=admin_headers)).json()
        assert stats["total"] == 2
        assert stats["resolution_rate"] == 50
        report = (await client.get("/admin/analytics", headers=admin_headers)).json()
        assert report["top_locations"] == [{"location": "Main St", "count": 2, "percent": 100}]

    async def test_export_csv(self, client, admin_headers, complaints, complaint_factory):
        await complaints.insert(complaint_factory(title="Lamp out"))
        resp = await client.get("/admin/complaints/export.csv", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        lines = resp.text.strip().split("\n")
        assert lines[0] == "ID,Title,Category,Status,Priority,Location,Author,Created,Description"
        assert "Lamp out" in lines[1]
