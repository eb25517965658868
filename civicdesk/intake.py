# Complaint submission: validate, upload queued media, then create the record

import logging
from typing import Any, Dict, Optional

from .auth import Session
from .media import MediaQueue
from .models import ActivityType, ComplaintCreate, build_complaint_document, validate_complaint

logger = logging.getLogger(__name__)


async def submit_complaint(store, blob_store, session: Session, data: ComplaintCreate,
                           queue: Optional[MediaQueue] = None, activity=None,
                           on_progress=None) -> Dict[str, Any]:
    """Create a complaint for *session* and return the stored document.

    Validation runs before any I/O. Media are uploaded next, in queue order;
    if an upload fails the error propagates and nothing is inserted. Blobs
    already written for that submission are left in the bucket.
    """
    fields = validate_complaint(data)
    media = []
    if queue is not None and len(queue):
        media = await queue.upload_all(blob_store, session, on_progress=on_progress)
    doc = build_complaint_document(fields, session.user_id, session.email, media)
    doc = await store.insert(doc)
    logger.info("Complaint %s created by %s with %d attachment(s)", doc["_id"], session.email, len(media))

    if activity is not None:
        try:
            await activity.append({
                "type": ActivityType.COMPLAINT_CREATED.value,
                "message": f"New complaint: {doc['title']}",
                "complaint_id": doc["_id"],
                "admin_id": None,
                "admin_email": None,
            })
        except Exception as e:
            logger.error("Activity log write failed for %s: %s", doc["_id"], e)
    return doc
