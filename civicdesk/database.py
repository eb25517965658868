# Process-wide clients and the FastAPI dependencies that hand them out

import logging
from concurrent.futures import ThreadPoolExecutor

from pymongo import MongoClient

from . import config
from .store import ActivityLog, ChatHistoryStore, ComplaintStore, SystemConfigStore, UserStore

logger = logging.getLogger(__name__)

executor = ThreadPoolExecutor(max_workers=10)
db_client = None
db = None
complaints = None
activity = None
chat_history = None
users = None
blob_store = None
assistant = None
media_limits = {"max_image_bytes": config.MAX_IMAGE_BYTES, "max_video_bytes": config.MAX_VIDEO_BYTES}

# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------
async def startup_db():
    global db_client, db, complaints, activity, chat_history, users, blob_store, media_limits
    import gridfs
    from .media import GridFSBlobStore

    db_client = MongoClient(config.MONGODB_URL, tz_aware=True)
    db = db_client[config.MONGODB_DB]
    complaints = ComplaintStore(db, executor)
    activity = ActivityLog(db, executor)
    chat_history = ChatHistoryStore(db, executor)
    users = UserStore(db, executor)
    blob_store = GridFSBlobStore(gridfs.GridFSBucket(db, bucket_name=config.MEDIA_BUCKET), executor)
    await complaints.ensure_indexes()
    await users.ensure_indexes()
    media_limits = await SystemConfigStore(db, executor).media_limits()
    logger.info("Database initialized (%s)", config.MONGODB_DB)


async def startup_assistant():
    global assistant
    from openai import AsyncOpenAI
    from .assistant import AssistantClient

    assistant = AssistantClient(AsyncOpenAI(api_key=config.OPENAI_API_KEY), config.OPENAI_MODEL)
    logger.info("Assistant model: %s", config.OPENAI_MODEL)


def shutdown_db():
    if db_client:
        db_client.close()

# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
async def get_complaints():
    return complaints

async def get_activity():
    return activity

async def get_chat_history():
    return chat_history

async def get_users():
    return users

async def get_blob_store():
    return blob_store

async def get_assistant():
    return assistant

async def get_media_limits():
    return media_limits
