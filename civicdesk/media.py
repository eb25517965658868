# Media attachment pipeline: the per-draft upload queue and the GridFS blob store

import asyncio
import logging
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from gridfs.errors import NoFile
from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import PyMongoError

from . import config
from .auth import Session
from .config import new_id, now_utc
from .errors import FileTooLarge, MediaNotFound, UploadFailed
from .models import MediaType

logger = logging.getLogger(__name__)

MB = 1024 * 1024
ProgressCallback = Callable[[int, int], None]

# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------
class GridFSBlobStore:
    """Chunked writer over a ``gridfs.GridFSBucket``. Cancelling the upload
    coroutine aborts the partial file."""

    def __init__(self, bucket, executor: Executor, chunk_size: int = config.UPLOAD_CHUNK_BYTES):
        self._bucket = bucket
        self._executor = executor
        self._chunk_size = chunk_size

    async def _run(self, fn, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def _settle(self, fn, *args):
        """Run *fn* on the pool; if cancelled, wait for the thread before re-raising."""
        loop = asyncio.get_event_loop()
        future = loop.run_in_executor(self._executor, fn, *args)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait({future})
            if not future.cancelled() and future.exception() is not None:
                logger.warning("Write interrupted by cancel failed: %s", future.exception())
            raise

    async def _abort(self, grid_in):
        try:
            await self._run(grid_in.abort)
        except PyMongoError as e:
            logger.warning("Could not abort partial upload %s: %s", grid_in.filename, e)

    async def upload(self, path: str, data: bytes, content_type: str,
                     on_progress: Optional[ProgressCallback] = None) -> str:
        grid_in = self._bucket.open_upload_stream(path, metadata={"content_type": content_type})
        total, sent = len(data), 0
        try:
            while sent < total:
                chunk = data[sent:sent + self._chunk_size]
                await self._settle(grid_in.write, chunk)
                sent += len(chunk)
                if on_progress:
                    on_progress(sent, total)
            await self._settle(grid_in.close)
        except asyncio.CancelledError:
            await self._abort(grid_in)
            raise
        except PyMongoError as e:
            logger.error("Upload of %s failed: %s", path, e)
            await self._abort(grid_in)
            raise UploadFailed(f"Upload failed: {e}") from e
        return f"/media/{grid_in._id}"

    async def read(self, file_id: str) -> Tuple[str, bytes, str]:
        """Return (content_type, data, filename) for a stored blob."""
        try:
            oid = ObjectId(file_id)
        except (InvalidId, TypeError):
            raise MediaNotFound("Media not found")

        def fetch():
            grid_out = self._bucket.open_download_stream(oid)
            metadata = grid_out.metadata or {}
            return (metadata.get("content_type", "application/octet-stream"),
                    grid_out.read(), grid_out.filename)
        try:
            return await self._run(fetch)
        except NoFile:
            raise MediaNotFound("Media not found")

# ---------------------------------------------------------------------------
# Upload queue
# ---------------------------------------------------------------------------
@dataclass
class QueuedFile:
    id: str
    name: str
    content_type: str
    data: bytes = field(repr=False)
    progress: float = 0.0
    url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def kind(self) -> str:
        if (self.content_type or "").startswith("video/"):
            return MediaType.VIDEO.value
        return MediaType.IMAGE.value

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "content_type": self.content_type,
                "size": self.size, "type": self.kind, "progress": self.progress, "url": self.url}


class MediaQueue:
    """Files picked for one complaint, in the order they were added.

    Uploads happen only on submit, one at a time. While a file is uploading
    its task is kept in ``_tasks`` so remove, replace and clear can cancel it;
    an empty queue therefore never has an upload in flight.
    """

    def __init__(self, max_image_bytes: int = config.MAX_IMAGE_BYTES,
                 max_video_bytes: int = config.MAX_VIDEO_BYTES):
        self.max_image_bytes = max_image_bytes
        self.max_video_bytes = max_video_bytes
        self._files: List[QueuedFile] = []
        self._tasks: Dict[str, asyncio.Future] = {}

    def __len__(self):
        return len(self._files)

    @property
    def files(self) -> List[QueuedFile]:
        return list(self._files)

    @property
    def active_uploads(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def limit_for(self, content_type: str) -> int:
        if (content_type or "").startswith("video/"):
            return self.max_video_bytes
        return self.max_image_bytes

    def check_size(self, name: str, content_type: str, size: Optional[int]) -> None:
        """Raise FileTooLarge when *size* exceeds the ceiling for *content_type*.

        An unknown size (None) passes; the bytes are checked again on add.
        """
        limit = self.limit_for(content_type)
        if size is not None and size > limit:
            raise FileTooLarge(name, limit // MB)

    def _check_size(self, item: QueuedFile) -> None:
        self.check_size(item.name, item.content_type, item.size)

    def _index(self, file_id: str) -> int:
        for i, item in enumerate(self._files):
            if item.id == file_id:
                return i
        return -1

    def get(self, file_id: str) -> Optional[QueuedFile]:
        i = self._index(file_id)
        return self._files[i] if i >= 0 else None

    def _cancel_task(self, file_id: str) -> None:
        task = self._tasks.pop(file_id, None)
        if task is not None and not task.done():
            try:
                task.cancel()
            except Exception as e:
                logger.warning("Cancelling upload %s failed: %s", file_id, e)

    def add(self, name: str, content_type: str, data: bytes) -> QueuedFile:
        item = QueuedFile(id=new_id(), name=name, content_type=content_type, data=data)
        self._check_size(item)
        self._files.append(item)
        return item

    def remove(self, file_id: str) -> None:
        i = self._index(file_id)
        if i < 0:
            raise MediaNotFound("File not in queue")
        self._cancel_task(file_id)
        del self._files[i]

    cancel = remove

    def replace(self, file_id: str, name: str, content_type: str, data: bytes) -> QueuedFile:
        """Swap the file behind *file_id* keeping its id and position."""
        i = self._index(file_id)
        if i < 0:
            raise MediaNotFound("File not in queue")
        item = QueuedFile(id=file_id, name=name, content_type=content_type, data=data)
        self._check_size(item)
        self._cancel_task(file_id)
        self._files[i] = item
        return item

    def clear(self) -> None:
        for file_id in list(self._tasks):
            self._cancel_task(file_id)
        self._files = []

    async def upload_all(self, blob_store, session: Session,
                         on_progress: Optional[Callable[[str, float], None]] = None) -> List[Dict[str, str]]:
        """Upload every queued file in order and return the ``media`` list.

        A file whose upload is cancelled (removed from the queue meanwhile) is
        left out and the loop moves on. A file replaced mid-upload is uploaded
        again with its new content. Any other failure raises UploadFailed.
        """
        results = []
        for file_id in [f.id for f in self._files]:
            while True:
                item = self.get(file_id)
                if item is None:
                    break
                url = await self._upload_one(blob_store, session, item, on_progress)
                if url is None:
                    continue
                item.url = url
                results.append({"url": url, "type": item.kind, "name": item.name})
                break
        return results

    async def _upload_one(self, blob_store, session: Session, item: QueuedFile,
                          on_progress) -> Optional[str]:
        path = f"complaints/{session.user_id}/{int(time.time() * 1000)}_{item.name}"

        def progress(sent: int, total: int):
            item.progress = sent / total if total else 1.0
            if on_progress:
                on_progress(item.id, item.progress)

        task = asyncio.ensure_future(blob_store.upload(path, item.data, item.content_type, progress))
        self._tasks[item.id] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._tasks.get(item.id) is task:
                del self._tasks[item.id]

        if task.cancelled():
            logger.info("Upload of %s cancelled", item.name)
            # Still queued and not replaced: the upload was cancelled from elsewhere
            if self.get(item.id) is item:
                self.remove(item.id)
            return None
        exc = task.exception()
        if isinstance(exc, UploadFailed):
            raise exc
        if exc is not None:
            logger.error("Upload of %s failed: %s", item.name, exc)
            raise UploadFailed(f"Failed to upload {item.name}: {exc}") from exc
        item.progress = 1.0
        return task.result()

# ---------------------------------------------------------------------------
# Drafts: one media queue per complaint being composed
# ---------------------------------------------------------------------------
@dataclass
class Draft:
    id: str
    owner_id: str
    queue: MediaQueue
    created_at: datetime = field(default_factory=now_utc)

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "created_at": self.created_at,
                "files": [f.as_dict() for f in self.queue.files],
                "active_uploads": self.queue.active_uploads}


class DraftRegistry:
    """In-memory drafts keyed by id. Drafts older than *max_age_seconds* are
    dropped, along with their queued bytes, whenever a new draft is created."""

    def __init__(self, max_age_seconds: int = config.DRAFT_MAX_AGE_SECONDS):
        self.max_age_seconds = max_age_seconds
        self._drafts: Dict[str, Draft] = {}

    def __len__(self):
        return len(self._drafts)

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        now = now or now_utc()
        expired = [d.id for d in self._drafts.values()
                   if (now - d.created_at).total_seconds() > self.max_age_seconds
                   and not d.queue.active_uploads]
        for draft_id in expired:
            self.discard(draft_id)
        if expired:
            logger.info("Evicted %d expired drafts", len(expired))
        return len(expired)

    def create(self, session: Session, limits: Optional[Dict[str, int]] = None) -> Draft:
        self.evict_expired()
        limits = limits or {}
        queue = MediaQueue(limits.get("max_image_bytes", config.MAX_IMAGE_BYTES),
                           limits.get("max_video_bytes", config.MAX_VIDEO_BYTES))
        draft = Draft(id=new_id(), owner_id=session.user_id, queue=queue)
        self._drafts[draft.id] = draft
        return draft

    def get(self, draft_id: str, session: Session) -> Draft:
        draft = self._drafts.get(draft_id)
        if draft is None or draft.owner_id != session.user_id:
            raise MediaNotFound("Draft not found")
        return draft

    def discard(self, draft_id: str) -> None:
        draft = self._drafts.pop(draft_id, None)
        if draft is not None:
            draft.queue.clear()
