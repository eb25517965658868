# Civic Complaint Desk
# FastAPI + MongoDB + OpenAI

import os
import uuid
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Depends, File, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from . import config
from .analytics import build_report, quick_stats
from .assistant import DEGRADED_REPLY, RELAY_FAILED, build_assistant_context, format_reply, history_entries
from .auth import (Session, create_access_token, get_current_user, hash_password, oauth2_scheme,
                   require_admin, revoke_token, user_to_response, verify_password)
from .config import new_id, now_utc
from .database import (get_activity, get_assistant, get_blob_store, get_chat_history, get_complaints,
                       get_media_limits, get_users, shutdown_db, startup_assistant, startup_db)
from .errors import AssistantUnavailable, CivicDeskError, ComplaintNotFound
from .export import complaints_to_csv
from .intake import submit_complaint
from .media import DraftRegistry
from .models import (ActivityEntry, AssignRequest, CategorySuggestion, ChatHistoryEntry, ChatMessage,
                     ChatResponse, ComplaintCreate, ComplaintResponse, AssistantRequest, QuickStatsResponse,
                     RejectRequest, StatusRequest, TokenResponse, TransitionRequest, UserCreate, UserLogin,
                     UserResponse, UserRole, to_response)
from .taxonomy import CATEGORY_SUBCATEGORIES, OTHER, suggest
from .workflow import ComplaintWorkflow
from .working_set import LOAD_FAILED, LoadState, WorkingSet, search_complaints, filter_by_status

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECENT_LIMIT = 5
SSE_KEEPALIVE_SECONDS = 15

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="Civic Complaint Desk")
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
drafts = DraftRegistry()

# ---------------------------------------------------------------------------
# Security Headers Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CORSMiddleware, allow_origins=config.CORS_ORIGINS, allow_credentials=True,
                   allow_methods=["*"], allow_headers=["*"])

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    config.require_jwt_secret()
    await startup_db()
    await startup_assistant()
    yield
    shutdown_db()

app.router.lifespan_context = lifespan

# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(CivicDeskError)
async def civicdesk_error_handler(request: Request, exc: CivicDeskError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.__class__.__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

# ---------------------------------------------------------------------------
# Utility Helpers
# ---------------------------------------------------------------------------
def sanitize_str(value: str) -> str:
    """Ensure a value is a plain string, not a dict/list that could be a NoSQL operator."""
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail="Invalid parameter type")
    return str(value)

def validate_uuid(value: str, param_name: str = "id") -> str:
    value = sanitize_str(value)
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {param_name} format")
    return value

def activity_to_response(doc: dict) -> ActivityEntry:
    return ActivityEntry(id=str(doc["_id"]), type=doc["type"], message=doc.get("message", ""),
                         complaint_id=doc.get("complaint_id"), admin_id=doc.get("admin_id"),
                         admin_email=doc.get("admin_email"), timestamp=doc["timestamp"])

async def get_workflow(session: Session = Depends(require_admin), store=Depends(get_complaints),
                       activity=Depends(get_activity)) -> ComplaintWorkflow:
    return ComplaintWorkflow(store, activity, session)

# ---------------------------------------------------------------------------
# AUTH ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/auth/register", response_model=TokenResponse)
@limiter.limit("3/minute")
async def register(request: Request, user_data: UserCreate, users=Depends(get_users)):
    # Public registration is citizen-only; admins are seeded
    existing = await users.find_by_username(user_data.username)
    if existing:
        raise HTTPException(status_code=400, detail="Username already exists")
    user_doc = {
        "_id": new_id(), "username": user_data.username,
        "hashed_password": hash_password(user_data.password),
        "full_name": user_data.full_name, "email": user_data.email,
        "role": UserRole.CITIZEN.value, "created_at": now_utc(),
    }
    await users.insert(user_doc)
    token = create_access_token({"sub": user_data.username, "role": user_doc["role"]})
    return TokenResponse(access_token=token, user=user_to_response(user_doc))

@app.post("/auth/login", response_model=TokenResponse)
@limiter.limit("5/minute")
async def login(request: Request, form: UserLogin, users=Depends(get_users)):
    user = await users.find_by_username(form.username)
    if not user or not verify_password(form.password, user["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": user["username"], "role": user["role"]})
    return TokenResponse(access_token=token, user=user_to_response(user))

@app.get("/auth/me", response_model=UserResponse)
async def get_me(session: Session = Depends(get_current_user), users=Depends(get_users)):
    user = await users.find_by_id(session.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user_to_response(user)

@app.post("/auth/logout")
async def logout(token: Optional[str] = Depends(oauth2_scheme)):
    if token:
        revoke_token(token)
    return {"detail": "Logged out successfully"}

# ---------------------------------------------------------------------------
# TAXONOMY
# ---------------------------------------------------------------------------
@app.get("/taxonomy")
async def get_taxonomy():
    return {"categories": CATEGORY_SUBCATEGORIES, "other": OTHER}

@app.get("/complaints/suggest-category", response_model=CategorySuggestion)
async def suggest_category(description: str = Query("", max_length=5000)):
    category, sub_category = suggest(description)
    return CategorySuggestion(category=category, sub_category=sub_category)

# ---------------------------------------------------------------------------
# CITIZEN COMPLAINT ENDPOINTS
# ---------------------------------------------------------------------------
@app.post("/complaints", response_model=ComplaintResponse)
async def create_complaint(data: ComplaintCreate, session: Session = Depends(get_current_user),
                           store=Depends(get_complaints), activity=Depends(get_activity),
                           blob_store=Depends(get_blob_store)):
    doc = await submit_complaint(store, blob_store, session, data, activity=activity)
    return to_response(doc)

@app.get("/complaints/mine", response_model=List[ComplaintResponse])
async def list_my_complaints(status: Optional[str] = None, q: Optional[str] = None,
                             limit: Optional[int] = Query(None, ge=1, le=500),
                             session: Session = Depends(get_current_user), store=Depends(get_complaints)):
    docs = await store.list(author_id=session.user_id, limit=limit)
    return [to_response(d) for d in search_complaints(filter_by_status(docs, status), q)]

@app.get("/complaints/mine/recent", response_model=List[ComplaintResponse])
async def recent_complaints(session: Session = Depends(get_current_user), store=Depends(get_complaints)):
    docs = await store.list(author_id=session.user_id, limit=RECENT_LIMIT)
    return [to_response(d) for d in docs]

@app.get("/complaints/mine/stats", response_model=QuickStatsResponse)
async def my_stats(session: Session = Depends(get_current_user), store=Depends(get_complaints)):
    return QuickStatsResponse(**quick_stats(await store.list(author_id=session.user_id)))

@app.get("/complaints/mine/analytics")
async def my_analytics(session: Session = Depends(get_current_user), store=Depends(get_complaints)):
    return build_report(await store.list(author_id=session.user_id))

@app.get("/complaints/stream")
async def stream_complaints(session: Session = Depends(get_current_user), store=Depends(get_complaints)):
    """Server-sent events: one ``snapshot`` per change, ``error`` if the subscription fails."""
    working_set = WorkingSet(store, session)
    updates: asyncio.Queue = asyncio.Queue()
    def push(ws):
        updates.put_nowait((ws.state, ws.items))
    working_set.add_listener(push)

    async def events():
        working_set.start()
        try:
            while True:
                try:
                    state, items = await asyncio.wait_for(updates.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if state == LoadState.FAILED:
                    yield f"event: error\ndata: {json.dumps({'detail': LOAD_FAILED})}\n\n"
                    break
                payload = [to_response(d).model_dump(mode="json") for d in items]
                yield f"event: snapshot\ndata: {json.dumps(payload)}\n\n"
        finally:
            working_set.remove_listener(push)
            await working_set.stop()

    return StreamingResponse(events(), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache"})

@app.get("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def get_complaint(complaint_id: str, session: Session = Depends(get_current_user),
                        store=Depends(get_complaints)):
    complaint_id = validate_uuid(complaint_id, "complaint_id")
    doc = await store.get(complaint_id)
    if doc is None or (not session.is_admin and doc.get("author_id") != session.user_id):
        raise ComplaintNotFound("Complaint not found")
    return to_response(doc)

# ---------------------------------------------------------------------------
# DRAFTS (media queue while composing a complaint)
# ---------------------------------------------------------------------------
@app.post("/drafts")
async def create_draft(session: Session = Depends(get_current_user), limits=Depends(get_media_limits)):
    return drafts.create(session, limits).as_dict()

@app.get("/drafts/{draft_id}")
async def get_draft(draft_id: str, session: Session = Depends(get_current_user)):
    return drafts.get(validate_uuid(draft_id, "draft_id"), session).as_dict()

@app.delete("/drafts/{draft_id}")
async def discard_draft(draft_id: str, session: Session = Depends(get_current_user)):
    draft = drafts.get(validate_uuid(draft_id, "draft_id"), session)
    drafts.discard(draft.id)
    return {"detail": "Draft discarded"}

@app.post("/drafts/{draft_id}/media")
async def add_draft_media(draft_id: str, file: UploadFile = File(...),
                          session: Session = Depends(get_current_user)):
    draft = drafts.get(validate_uuid(draft_id, "draft_id"), session)
    draft.queue.check_size(file.filename or "upload", file.content_type or "", file.size)
    data = await file.read()
    item = draft.queue.add(file.filename or "upload", file.content_type or "", data)
    return item.as_dict()

@app.put("/drafts/{draft_id}/media/{file_id}")
async def replace_draft_media(draft_id: str, file_id: str, file: UploadFile = File(...),
                              session: Session = Depends(get_current_user)):
    draft = drafts.get(validate_uuid(draft_id, "draft_id"), session)
    draft.queue.check_size(file.filename or "upload", file.content_type or "", file.size)
    data = await file.read()
    item = draft.queue.replace(validate_uuid(file_id, "file_id"), file.filename or "upload",
                               file.content_type or "", data)
    return item.as_dict()

@app.delete("/drafts/{draft_id}/media/{file_id}")
async def remove_draft_media(draft_id: str, file_id: str, session: Session = Depends(get_current_user)):
    draft = drafts.get(validate_uuid(draft_id, "draft_id"), session)
    draft.queue.remove(validate_uuid(file_id, "file_id"))
    return draft.as_dict()

@app.delete("/drafts/{draft_id}/media")
async def clear_draft_media(draft_id: str, session: Session = Depends(get_current_user)):
    draft = drafts.get(validate_uuid(draft_id, "draft_id"), session)
    draft.queue.clear()
    return draft.as_dict()

@app.post("/drafts/{draft_id}/submit", response_model=ComplaintResponse)
async def submit_draft(draft_id: str, data: ComplaintCreate, session: Session = Depends(get_current_user),
                       store=Depends(get_complaints), activity=Depends(get_activity),
                       blob_store=Depends(get_blob_store)):
    draft = drafts.get(validate_uuid(draft_id, "draft_id"), session)
    doc = await submit_complaint(store, blob_store, session, data, queue=draft.queue, activity=activity)
    drafts.discard(draft.id)
    return to_response(doc)

@app.get("/media/{file_id}")
async def get_media(file_id: str, session: Session = Depends(get_current_user),
                    blob_store=Depends(get_blob_store)):
    content_type, data, filename = await blob_store.read(sanitize_str(file_id))
    return Response(content=data, media_type=content_type,
                    headers={"Content-Disposition": f'inline; filename="{os.path.basename(filename)}"'})

# ---------------------------------------------------------------------------
# ASSISTANT
# ---------------------------------------------------------------------------
@app.post("/chat", response_model=ChatResponse)
@limiter.limit("15/minute")
async def chat(request: Request, msg: ChatMessage, session: Session = Depends(get_current_user),
               store=Depends(get_complaints), history=Depends(get_chat_history),
               assistant=Depends(get_assistant)):
    context = build_assistant_context(session, await store.list(author_id=session.user_id))
    try:
        reply = await assistant.reply(msg.message, context)
    except AssistantUnavailable as e:
        logger.error("Chat error: %s", e)
        return ChatResponse(reply=DEGRADED_REPLY, html=format_reply(DEGRADED_REPLY), degraded=True)
    try:
        await history.save(session.user_id, msg.message, reply)
    except Exception as e:
        logger.error("Error saving chat message: %s", e)
    return ChatResponse(reply=reply, html=format_reply(reply))

@app.get("/chat/history", response_model=List[ChatHistoryEntry])
async def get_chat_history_entries(session: Session = Depends(get_current_user),
                                   history=Depends(get_chat_history)):
    return history_entries(await history.recent(session.user_id))

@app.delete("/chat/history")
async def clear_chat_history(session: Session = Depends(get_current_user), history=Depends(get_chat_history)):
    deleted = await history.clear(session.user_id)
    return {"deleted": deleted}

@app.post("/api/ai/chat")
@limiter.limit("15/minute")
async def ai_relay(request: Request, body: AssistantRequest, assistant=Depends(get_assistant)):
    message = (body.message or "").strip()
    if not message:
        return JSONResponse(status_code=400, content={"error": "Message is required"})
    try:
        reply = await assistant.reply(message, body.context)
    except AssistantUnavailable as e:
        logger.error("AI Route Error: %s", e)
        return JSONResponse(status_code=500, content={"error": RELAY_FAILED})
    return {"reply": reply}

# ---------------------------------------------------------------------------
# ADMIN ENDPOINTS
# ---------------------------------------------------------------------------
@app.get("/admin/complaints", response_model=List[ComplaintResponse])
async def admin_list_complaints(status: Optional[str] = None, q: Optional[str] = None,
                                limit: Optional[int] = Query(None, ge=1, le=1000),
                                session: Session = Depends(require_admin), store=Depends(get_complaints)):
    docs = await store.list(limit=limit)
    return [to_response(d) for d in search_complaints(filter_by_status(docs, status), q)]

@app.get("/admin/complaints/export.csv")
async def admin_export_csv(status: Optional[str] = None, q: Optional[str] = None,
                           session: Session = Depends(require_admin), store=Depends(get_complaints)):
    docs = search_complaints(filter_by_status(await store.list(), status), q)
    filename = f"complaints_{now_utc().strftime('%Y-%m-%d')}.csv"
    return Response(content=complaints_to_csv(docs), media_type="text/csv",
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})

@app.get("/admin/complaints/{complaint_id}", response_model=ComplaintResponse)
async def admin_get_complaint(complaint_id: str, session: Session = Depends(require_admin),
                              store=Depends(get_complaints)):
    doc = await store.get(validate_uuid(complaint_id, "complaint_id"))
    if doc is None:
        raise ComplaintNotFound("Complaint not found")
    return to_response(doc)

@app.get("/admin/stats", response_model=QuickStatsResponse)
async def admin_stats(session: Session = Depends(require_admin), store=Depends(get_complaints)):
    return QuickStatsResponse(**quick_stats(await store.list()))

@app.get("/admin/analytics")
async def admin_analytics(session: Session = Depends(require_admin), store=Depends(get_complaints)):
    return build_report(await store.list())

@app.put("/admin/complaints/{complaint_id}/assign", response_model=ComplaintResponse)
async def assign_complaint(complaint_id: str, req: AssignRequest, workflow=Depends(get_workflow)):
    return to_response(await workflow.assign(validate_uuid(complaint_id, "complaint_id"), req.assignee))

@app.put("/admin/complaints/{complaint_id}/accept", response_model=ComplaintResponse)
async def accept_complaint(complaint_id: str, confirm: bool = False, workflow=Depends(get_workflow)):
    return to_response(await workflow.accept(validate_uuid(complaint_id, "complaint_id"), confirmed=confirm))

@app.put("/admin/complaints/{complaint_id}/reject", response_model=ComplaintResponse)
async def reject_complaint(complaint_id: str, req: Optional[RejectRequest] = None,
                           workflow=Depends(get_workflow)):
    reason = req.reason if req else None
    return to_response(await workflow.reject(validate_uuid(complaint_id, "complaint_id"), reason))

@app.put("/admin/complaints/{complaint_id}/resolve", response_model=ComplaintResponse)
async def resolve_complaint(complaint_id: str, workflow=Depends(get_workflow)):
    return to_response(await workflow.resolve(validate_uuid(complaint_id, "complaint_id")))

@app.put("/admin/complaints/{complaint_id}/status", response_model=ComplaintResponse)
async def set_complaint_status(complaint_id: str, req: StatusRequest, workflow=Depends(get_workflow)):
    return to_response(await workflow.set_status(validate_uuid(complaint_id, "complaint_id"), req.status))

@app.post("/admin/complaints/{complaint_id}/transition", response_model=ComplaintResponse)
async def transition_complaint(complaint_id: str, req: TransitionRequest, workflow=Depends(get_workflow)):
    return to_response(await workflow.transition(validate_uuid(complaint_id, "complaint_id"), req.event,
                                                 reason=req.reason, confirmed=req.confirm))

@app.delete("/admin/complaints/{complaint_id}")
async def delete_complaint(complaint_id: str, confirm: bool = False, workflow=Depends(get_workflow)):
    await workflow.delete(validate_uuid(complaint_id, "complaint_id"), confirmed=confirm)
    return {"detail": "Complaint deleted"}

@app.get("/admin/activity", response_model=List[ActivityEntry])
async def admin_activity(limit: int = Query(20, ge=1, le=200), complaint_id: Optional[str] = None,
                         session: Session = Depends(require_admin), activity=Depends(get_activity)):
    if complaint_id:
        complaint_id = validate_uuid(complaint_id, "complaint_id")
    return [activity_to_response(d) for d in await activity.recent(limit=limit, complaint_id=complaint_id)]

# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return {"status": "healthy", "system": "Civic Complaint Desk", "timestamp": now_utc()}


def run():
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    run()
