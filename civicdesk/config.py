# Shared configuration, constants and small helpers for the complaint service

import os
import uuid
from pathlib import Path
from datetime import datetime, timezone

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
# Try multiple .env locations: next to the package, one level up, then cwd
_pkg_dir = Path(__file__).resolve().parent
for _env_path in [_pkg_dir / ".env", _pkg_dir.parent / ".env", Path.cwd() / ".env"]:
    if _env_path.is_file():
        load_dotenv(_env_path, override=True)
        break
else:
    load_dotenv(override=True)  # fall back to python-dotenv's own search

# ---------------------------------------------------------------------------
# Connection strings
# ---------------------------------------------------------------------------
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DB = os.getenv("MONGODB_DB", "civicdesk")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "12"))

# ---------------------------------------------------------------------------
# Media limits (bytes)
# ---------------------------------------------------------------------------
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
MAX_VIDEO_BYTES = int(os.getenv("MAX_VIDEO_BYTES", str(50 * 1024 * 1024)))
UPLOAD_CHUNK_BYTES = int(os.getenv("UPLOAD_CHUNK_BYTES", str(256 * 1024)))
MEDIA_BUCKET = "complaint_media"
DRAFT_MAX_AGE_SECONDS = int(os.getenv("DRAFT_MAX_AGE_SECONDS", str(24 * 60 * 60)))

# ---------------------------------------------------------------------------
# Live views / HTTP
# ---------------------------------------------------------------------------
WATCH_POLL_SECONDS = float(os.getenv("WATCH_POLL_SECONDS", "1.0"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Collection names shared with the web client
COMPLAINTS = "complaints"
USERS = "users"
ACTIVITY_LOG = "activityLog"
CHAT_HISTORY = "chatHistory"
SYSTEM_CONFIG = "systemConfig"


def require_jwt_secret() -> str:
    if not JWT_SECRET or len(JWT_SECRET) < 32:
        raise RuntimeError(
            "FATAL: JWT_SECRET must be set in the environment and be at least 32 characters. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
        )
    return JWT_SECRET


def new_id() -> str:
    return str(uuid.uuid4())


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
