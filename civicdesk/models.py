# Complaint record model: enums, request/response schemas and the creation contract

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import new_id, now_utc
from .errors import ComplaintValidationError
from .taxonomy import CATEGORY_SUBCATEGORIES, DEFAULT_CATEGORY, OTHER, is_taxonomy_category

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ComplaintStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"

class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"

class ActivityType(str, Enum):
    COMPLAINT_CREATED = "complaint_created"
    STATUS_UPDATED = "status_updated"
    COMPLAINT_ASSIGNED = "complaint_assigned"
    COMPLAINT_ACCEPTED = "complaint_accepted"
    COMPLAINT_REJECTED = "complaint_rejected"
    COMPLAINT_RESOLVED = "complaint_resolved"
    COMPLAINT_DELETED = "complaint_deleted"

class UserRole(str, Enum):
    CITIZEN = "citizen"
    ADMIN = "admin"

NO_REASON_PROVIDED = "No reason provided"

# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------
class Geolocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)

class MediaItem(BaseModel):
    url: str
    type: MediaType
    name: str

class ComplaintCreate(BaseModel):
    # Required-ness is checked by validate_complaint so the caller gets the
    # form-level messages instead of a schema error.
    title: str = Field("", max_length=200)
    description: str = Field("", max_length=5000)
    location: str = Field("", max_length=500)
    category: str = Field("", max_length=100)
    sub_category: Optional[str] = Field(None, max_length=100)
    other_category: Optional[str] = Field(None, max_length=100)
    priority: Optional[Priority] = None
    geolocation: Optional[Geolocation] = None

    @field_validator("title", "description", "location", "category", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return "" if v is None else v

class ComplaintResponse(BaseModel):
    id: str
    title: str
    description: str = ""
    category: str = DEFAULT_CATEGORY
    sub_category: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    location: str = ""
    geolocation: Optional[Geolocation] = None
    status: ComplaintStatus = ComplaintStatus.PENDING
    progress: int = 0
    assigned_to: Optional[str] = None
    rejection_reason: Optional[str] = None
    media: List[MediaItem] = Field(default_factory=list)
    author_id: Optional[str] = None
    author_email: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    short_id: str = ""
    category_display: str = ""
    age: str = ""

    @model_validator(mode="before")
    @classmethod
    def derive_display_fields(cls, values):
        if isinstance(values, dict):
            values = dict(values)
            if "_id" in values and "id" not in values:
                values["id"] = str(values.pop("_id"))
            values.setdefault("short_id", short_id(values.get("id", "")))
            values.setdefault("category_display", category_display(values))
            if isinstance(values.get("created_at"), datetime):
                values.setdefault("age", time_ago(values["created_at"]))
        return values

class ActivityEntry(BaseModel):
    id: str
    type: ActivityType
    message: str
    complaint_id: Optional[str] = None
    admin_id: Optional[str] = None
    admin_email: Optional[str] = None
    timestamp: datetime

class AssignRequest(BaseModel):
    assignee: str = Field(..., max_length=320)

class RejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)

class StatusRequest(BaseModel):
    status: ComplaintStatus

class TransitionRequest(BaseModel):
    event: str = Field(..., max_length=32)
    reason: Optional[str] = Field(None, max_length=2000)
    confirm: bool = False

class QuickStatsResponse(BaseModel):
    total: int
    pending: int
    in_progress: int
    resolved: int
    rejected: int
    resolution_rate: int

class CategorySuggestion(BaseModel):
    category: Optional[str] = None
    sub_category: Optional[str] = None

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=6, max_length=72)
    full_name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)

class UserLogin(BaseModel):
    username: str
    password: str

class UserResponse(BaseModel):
    id: str
    username: str
    full_name: str
    email: str
    role: UserRole
    created_at: datetime

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class AssistantRequest(BaseModel):
    message: Optional[str] = Field(None, max_length=4000)
    context: Optional[Dict[str, Any]] = None

class ChatMessage(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)

class ChatResponse(BaseModel):
    reply: str
    html: str
    degraded: bool = False

class ChatHistoryEntry(BaseModel):
    role: str
    content: str
    timestamp: Optional[datetime] = None

# ---------------------------------------------------------------------------
# Creation contract
# ---------------------------------------------------------------------------
def resolve_category(data: ComplaintCreate) -> tuple:
    """Return (category, sub_category) after resolving the "Other" free text."""
    category = (data.category or "").strip()
    sub_category = (data.sub_category or "").strip() or None
    if category == OTHER:
        other = (data.other_category or "").strip()
        if not other:
            raise ComplaintValidationError('Please specify your issue in the "Other" category field')
        return other, None
    if category and not sub_category:
        raise ComplaintValidationError("Please select the specific problem type")
    if sub_category and not is_taxonomy_category(category):
        raise ComplaintValidationError(f"Unknown category: {category}")
    if sub_category and sub_category not in CATEGORY_SUBCATEGORIES[category]:
        raise ComplaintValidationError(f"Unknown problem type for {category}: {sub_category}")
    return category, sub_category


def validate_complaint(data: ComplaintCreate) -> Dict[str, Any]:
    """Check a submission and return the resolved field values.

    Raises ComplaintValidationError; never touches the store.
    """
    category, sub_category = resolve_category(data)
    title = data.title.strip()
    description = data.description.strip()
    location = data.location.strip()
    if not title or not description or not location or not category:
        raise ComplaintValidationError("All required fields must be filled")
    return {
        "title": title,
        "description": description,
        "location": location,
        "category": category,
        "sub_category": sub_category,
        "priority": (data.priority or Priority.MEDIUM).value,
        "geolocation": data.geolocation.model_dump() if data.geolocation else None,
    }


def build_complaint_document(fields: Dict[str, Any], author_id: str, author_email: Optional[str],
                             media: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
    created = now_utc()
    return {
        "_id": new_id(),
        **fields,
        "status": ComplaintStatus.PENDING.value,
        "progress": 0,
        "assigned_to": None,
        "rejection_reason": None,
        "media": list(media or []),
        "author_id": author_id,
        "author_email": author_email,
        "created_at": created,
        "updated_at": created,
    }

# ---------------------------------------------------------------------------
# Read-projection helpers
# ---------------------------------------------------------------------------
def complaint_status(doc: Dict[str, Any]) -> str:
    return (doc.get("status") or ComplaintStatus.PENDING.value).lower()


def short_id(complaint_id: str) -> str:
    return f"#{complaint_id[:6].upper()}" if complaint_id else ""


def category_display(doc: Dict[str, Any]) -> str:
    category = doc.get("category") or DEFAULT_CATEGORY
    sub = doc.get("sub_category")
    return f"{category} - {sub}" if sub else category


def time_ago(moment: datetime, now: Optional[datetime] = None) -> str:
    now = now or now_utc()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    diff = int((now - moment).total_seconds())
    if diff < 60:
        return f"{diff}s ago"
    if diff < 3600:
        return f"{diff // 60}m ago"
    if diff < 86400:
        return f"{diff // 3600}h ago"
    return f"{diff // 86400}d ago"


def to_response(doc: Dict[str, Any]) -> ComplaintResponse:
    return ComplaintResponse.model_validate(doc)
