# MongoDB-backed collections. Every blocking pymongo call runs on the shared
# thread pool so request handlers never block the event loop.

import asyncio
import logging
from concurrent.futures import Executor
from typing import Any, AsyncIterator, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from . import config
from .config import new_id, now_utc
from .errors import ComplaintNotFound, StoreError

logger = logging.getLogger(__name__)


class _Collection:
    def __init__(self, db: Database, name: str, executor: Executor):
        self._col = db[name]
        self._executor = executor

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(self._executor, fn, *args)
        except PyMongoError as e:
            logger.error("%s store error: %s", self._col.name, e)
            raise StoreError(str(e)) from e

# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------
class ComplaintStore(_Collection):
    """The ``complaints`` collection plus its change notifications."""

    def __init__(self, db: Database, executor: Executor, poll_seconds: float = config.WATCH_POLL_SECONDS):
        super().__init__(db, config.COMPLAINTS, executor)
        self._poll_seconds = poll_seconds

    async def ensure_indexes(self):
        def create():
            self._col.create_index("created_at")
            self._col.create_index("status")
            self._col.create_index("author_id")
        await self._run(create)

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc.setdefault("_id", new_id())
        await self._run(self._col.insert_one, doc)
        return doc

    async def get(self, complaint_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._col.find_one, {"_id": complaint_id})

    def _query(self, author_id: Optional[str]) -> Dict[str, Any]:
        return {"author_id": author_id} if author_id else {}

    async def list(self, author_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = self._query(author_id)

        def fetch():
            cursor = self._col.find(query).sort("created_at", DESCENDING)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)
        return await self._run(fetch)

    async def update(self, complaint_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Apply *fields*, stamp ``updated_at`` and return the new document."""
        changes = {**fields, "updated_at": now_utc()}
        changes.pop("created_at", None)

        def apply():
            return self._col.find_one_and_update(
                {"_id": complaint_id}, {"$set": changes}, return_document=ReturnDocument.AFTER)
        updated = await self._run(apply)
        if updated is None:
            raise ComplaintNotFound("Complaint not found")
        return updated

    async def delete(self, complaint_id: str) -> None:
        result = await self._run(self._col.delete_one, {"_id": complaint_id})
        if result.deleted_count == 0:
            raise ComplaintNotFound("Complaint not found")

    async def snapshots(self, author_id: Optional[str] = None,
                        limit: Optional[int] = None) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield the full matching set now and again after every change.

        Backed by a change stream, so the server must run as a replica set.
        The stream is opened before the first listing, so a write landing
        between the two still produces a fresh snapshot. Errors propagate to
        the consumer as StoreError.
        """
        loop = asyncio.get_event_loop()
        stream = await self._run(lambda: self._col.watch(max_await_time_ms=int(self._poll_seconds * 1000)))
        pending = None
        try:
            yield await self.list(author_id, limit)
            while True:
                pending = loop.run_in_executor(self._executor, stream.try_next)
                try:
                    change = await asyncio.shield(pending)
                except PyMongoError as e:
                    logger.error("%s change stream error: %s", self._col.name, e)
                    raise StoreError(str(e)) from e
                if change is not None:
                    yield await self.list(author_id, limit)
        finally:
            # A cursor must not be closed while another thread is polling it
            if pending is not None and not pending.done():
                await asyncio.wait({pending})
            try:
                await self._run(stream.close)
            except StoreError as e:
                logger.warning("Closing change stream failed: %s", e)

# ---------------------------------------------------------------------------
# Activity log (append-only)
# ---------------------------------------------------------------------------
class ActivityLog(_Collection):
    def __init__(self, db: Database, executor: Executor):
        super().__init__(db, config.ACTIVITY_LOG, executor)

    async def append(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        doc = {"_id": new_id(), "timestamp": now_utc(), **entry}
        await self._run(self._col.insert_one, doc)
        return doc

    async def recent(self, limit: int = 20, complaint_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {"complaint_id": complaint_id} if complaint_id else {}

        def fetch():
            return list(self._col.find(query).sort("timestamp", DESCENDING).limit(limit))
        return await self._run(fetch)

# ---------------------------------------------------------------------------
# Assistant chat history
# ---------------------------------------------------------------------------
class ChatHistoryStore(_Collection):
    def __init__(self, db: Database, executor: Executor):
        super().__init__(db, config.CHAT_HISTORY, executor)

    async def save(self, user_id: str, user_message: str, ai_response: str) -> None:
        doc = {"_id": new_id(), "userId": user_id, "userMessage": user_message,
               "aiResponse": ai_response, "timestamp": now_utc()}
        await self._run(self._col.insert_one, doc)

    async def recent(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Latest *limit* exchanges, oldest first."""
        def fetch():
            return list(self._col.find({"userId": user_id}).sort("timestamp", DESCENDING).limit(limit))
        docs = await self._run(fetch)
        docs.reverse()
        return docs

    async def clear(self, user_id: str) -> int:
        result = await self._run(self._col.delete_many, {"userId": user_id})
        return result.deleted_count

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class UserStore(_Collection):
    def __init__(self, db: Database, executor: Executor):
        super().__init__(db, config.USERS, executor)

    async def ensure_indexes(self):
        await self._run(lambda: self._col.create_index([("username", 1)], unique=True))

    async def find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._col.find_one, {"username": username})

    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._col.find_one, {"_id": user_id})

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        await self._run(self._col.insert_one, doc)
        return doc

# ---------------------------------------------------------------------------
# System config
# ---------------------------------------------------------------------------
class SystemConfigStore(_Collection):
    def __init__(self, db: Database, executor: Executor):
        super().__init__(db, config.SYSTEM_CONFIG, executor)

    async def media_limits(self) -> Dict[str, int]:
        doc = await self._run(self._col.find_one, {"_id": "app"}) or {}
        return {
            "max_image_bytes": int(doc.get("max_image_bytes") or config.MAX_IMAGE_BYTES),
            "max_video_bytes": int(doc.get("max_video_bytes") or config.MAX_VIDEO_BYTES),
        }
