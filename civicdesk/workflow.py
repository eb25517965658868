# Status/assignment state machine for admin actions on complaints

import logging
from typing import Any, Callable, Dict, List, Optional

from .auth import Session
from .errors import ComplaintNotFound, ComplaintValidationError, ConfirmationRequired, InvalidTransition
from .models import NO_REASON_PROVIDED, ActivityType, ComplaintStatus, complaint_status

logger = logging.getLogger(__name__)

# Statuses each named action may start from. resolved and rejected are terminal.
ALLOWED_FROM = {
    "accept": {ComplaintStatus.PENDING.value, ComplaintStatus.IN_PROGRESS.value},
    "reject": {ComplaintStatus.PENDING.value, ComplaintStatus.IN_PROGRESS.value},
    "resolve": {ComplaintStatus.IN_PROGRESS.value},
}


class ComplaintWorkflow:
    """Named transitions plus the unchecked ``force_status`` escape hatch.

    Every mutation stamps ``updated_at`` through the store and appends an
    activity entry. The activity write is best-effort: when it fails the
    mutation stands and the failure is only logged. Store errors propagate.
    Callbacks in *on_change* run after each successful action with the
    action name and the complaint id, which is how dependent views refresh.
    """

    def __init__(self, store, activity, session: Session,
                 on_change: Optional[List[Callable[[str, str], Any]]] = None):
        self._store = store
        self._activity = activity
        self.session = session
        self._on_change = list(on_change or [])

    def add_listener(self, callback: Callable[[str, str], Any]) -> None:
        self._on_change.append(callback)

    async def _load(self, complaint_id: str) -> Dict[str, Any]:
        doc = await self._store.get(complaint_id)
        if doc is None:
            raise ComplaintNotFound("Complaint not found")
        return doc

    def _check(self, action: str, doc: Dict[str, Any]) -> None:
        status = complaint_status(doc)
        if status not in ALLOWED_FROM[action]:
            raise InvalidTransition(f"Cannot {action} a complaint that is {status}")

    async def _audit(self, kind: ActivityType, message: str, complaint_id: str) -> None:
        entry = {
            "type": kind.value,
            "message": message,
            "complaint_id": complaint_id,
            "admin_id": self.session.user_id,
            "admin_email": self.session.email,
        }
        try:
            await self._activity.append(entry)
        except Exception as e:
            logger.error("Activity log write failed for %s: %s", complaint_id, e)

    async def _changed(self, action: str, complaint_id: str) -> None:
        logger.info("%s by %s on %s", action, self.session.email, complaint_id)
        for callback in list(self._on_change):
            try:
                result = callback(action, complaint_id)
                if hasattr(result, "__await__"):
                    await result
            except Exception as e:
                logger.error("Workflow listener failed: %s", e)

    # ------------------------------------------------------------------
    # Named actions
    # ------------------------------------------------------------------
    async def assign(self, complaint_id: str, assignee: str) -> Dict[str, Any]:
        assignee = (assignee or "").strip()
        if not assignee:
            raise ComplaintValidationError("Assignee is required")
        await self._load(complaint_id)
        updated = await self._store.update(complaint_id, {"assigned_to": assignee})
        await self._audit(ActivityType.COMPLAINT_ASSIGNED,
                          f"Complaint assigned to {assignee}", complaint_id)
        await self._changed("assign", complaint_id)
        return updated

    async def accept(self, complaint_id: str, confirmed: bool = False) -> Dict[str, Any]:
        if not confirmed:
            raise ConfirmationRequired("Accepting a complaint must be confirmed")
        self._check("accept", await self._load(complaint_id))
        updated = await self._store.update(complaint_id, {
            "status": ComplaintStatus.IN_PROGRESS.value,
            "assigned_to": self.session.email,
        })
        await self._audit(ActivityType.COMPLAINT_ACCEPTED,
                          f"Complaint accepted by {self.session.email}", complaint_id)
        await self._changed("accept", complaint_id)
        return updated

    async def reject(self, complaint_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        reason = (reason or "").strip() or NO_REASON_PROVIDED
        self._check("reject", await self._load(complaint_id))
        updated = await self._store.update(complaint_id, {
            "status": ComplaintStatus.REJECTED.value,
            "rejection_reason": reason,
        })
        await self._audit(ActivityType.COMPLAINT_REJECTED,
                          f"Complaint rejected: {reason}", complaint_id)
        await self._changed("reject", complaint_id)
        return updated

    async def resolve(self, complaint_id: str) -> Dict[str, Any]:
        self._check("resolve", await self._load(complaint_id))
        updated = await self._store.update(complaint_id, {
            "status": ComplaintStatus.RESOLVED.value,
            "progress": 100,
        })
        await self._audit(ActivityType.COMPLAINT_RESOLVED, "Complaint marked as resolved", complaint_id)
        await self._changed("resolve", complaint_id)
        return updated

    async def delete(self, complaint_id: str, confirmed: bool = False) -> None:
        """Permanently remove a complaint. Cannot be undone."""
        if not confirmed:
            raise ConfirmationRequired("Deleting a complaint must be confirmed")
        doc = await self._load(complaint_id)
        await self._store.delete(complaint_id)
        await self._audit(ActivityType.COMPLAINT_DELETED,
                          f"Complaint deleted: {doc.get('title', '')}", complaint_id)
        await self._changed("delete", complaint_id)

    async def transition(self, complaint_id: str, event: str, reason: Optional[str] = None,
                         confirmed: bool = False) -> Dict[str, Any]:
        """Constrained entry point: apply *event* (accept, reject or resolve)."""
        if event == "accept":
            return await self.accept(complaint_id, confirmed=confirmed)
        if event == "reject":
            return await self.reject(complaint_id, reason)
        if event == "resolve":
            return await self.resolve(complaint_id)
        raise InvalidTransition(f"Unknown event: {event}")

    # ------------------------------------------------------------------
    # Escape hatch
    # ------------------------------------------------------------------
    async def force_status(self, complaint_id: str, status: ComplaintStatus) -> Dict[str, Any]:
        """Overwrite the status with no transition check (admin dropdown).

        Allows moves the named actions refuse, e.g. resolved back to pending.
        """
        status = ComplaintStatus(status)
        updated = await self._store.update(complaint_id, {"status": status.value})
        await self._audit(ActivityType.STATUS_UPDATED,
                          f"Status changed to {status.value}", complaint_id)
        await self._changed("set_status", complaint_id)
        return updated

    set_status = force_status
