# Query/filter/search layer: the live set of complaints an actor may see

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .auth import Session
from .models import complaint_status

logger = logging.getLogger(__name__)

ALL = "all"
SEARCH_FIELDS = ("title", "description", "category", "location", "author_email", "status")
LOAD_FAILED = "Failed to load complaints"


class LoadState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def filter_by_status(complaints: List[Dict[str, Any]], status: Optional[str]) -> List[Dict[str, Any]]:
    if not status or status == ALL:
        return list(complaints)
    return [c for c in complaints if complaint_status(c) == status]


def matches(doc: Dict[str, Any], query: str) -> bool:
    needle = query.lower()
    for name in SEARCH_FIELDS:
        value = doc.get(name)
        if value and needle in str(value).lower():
            return True
    return False


def search_complaints(complaints: List[Dict[str, Any]], query: Optional[str]) -> List[Dict[str, Any]]:
    query = (query or "").strip()
    if not query:
        return list(complaints)
    return [c for c in complaints if matches(c, query)]


class WorkingSet:
    """Holds the latest snapshot delivered by a store subscription.

    Citizens see only their own complaints; admins see everything, newest
    first. The held list is replaced wholesale by the subscription task and
    is never edited by callers, who get copies from ``items``, ``filter`` and
    ``search``. Listeners are called with the working set after every
    delivery, including the transition to the failed state. A failed set
    holds no complaints until it is restarted.
    """

    def __init__(self, store, session: Session, limit: Optional[int] = None):
        self._store = store
        self.session = session
        self.limit = limit
        self._items: List[Dict[str, Any]] = []
        self._listeners: List[Callable[["WorkingSet"], None]] = []
        self._task: Optional[asyncio.Task] = None
        self.state = LoadState.LOADING
        self.error: Optional[str] = None

    @property
    def scope_author_id(self) -> Optional[str]:
        return None if self.session.is_admin else self.session.user_id

    @property
    def items(self) -> List[Dict[str, Any]]:
        return list(self._items)

    def add_listener(self, listener: Callable[["WorkingSet"], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[["WorkingSet"], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error("Working set listener failed: %s", e)

    def start(self) -> asyncio.Task:
        """Subscribe (or resubscribe after a failure) in a background task."""
        if self._task and not self._task.done():
            return self._task
        self.state, self.error = LoadState.LOADING, None
        self._task = asyncio.ensure_future(self._consume())
        return self._task

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _consume(self):
        stream = self._store.snapshots(author_id=self.scope_author_id, limit=self.limit)
        try:
            async for snapshot in stream:
                self._items = list(snapshot)
                self.state, self.error = LoadState.READY, None
                self._notify()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Complaint subscription failed for %s: %s", self.session.email, e)
            self._items = []
            self.state, self.error = LoadState.FAILED, LOAD_FAILED
            self._notify()
        finally:
            await stream.aclose()

    def filter(self, status: Optional[str]) -> List[Dict[str, Any]]:
        return filter_by_status(self._items, status)

    def search(self, query: Optional[str]) -> List[Dict[str, Any]]:
        return search_complaints(self._items, query)

    def view(self, status: Optional[str] = None, query: Optional[str] = None) -> List[Dict[str, Any]]:
        return search_complaints(filter_by_status(self._items, status), query)
