# CSV export of the admin working set

import csv
import io
from datetime import datetime
from typing import Any, Dict, Iterable

from .models import Priority, complaint_status
from .taxonomy import DEFAULT_CATEGORY

CSV_HEADER = ["ID", "Title", "Category", "Status", "Priority", "Location", "Author", "Created", "Description"]
ID_LENGTH = 6
DESCRIPTION_LENGTH = 100


def _created(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    return ""


def complaint_row(doc: Dict[str, Any]) -> list:
    return [
        str(doc.get("_id") or doc.get("id") or "")[:ID_LENGTH],
        doc.get("title") or "",
        doc.get("category") or DEFAULT_CATEGORY,
        complaint_status(doc),
        doc.get("priority") or Priority.MEDIUM.value,
        doc.get("location") or "",
        doc.get("author_email") or "",
        _created(doc.get("created_at")),
        (doc.get("description") or "")[:DESCRIPTION_LENGTH],
    ]


def complaints_to_csv(complaints: Iterable[Dict[str, Any]]) -> str:
    """Render complaints as CSV. Fields holding a comma, quote or newline are
    quoted with embedded quotes doubled."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for doc in complaints:
        writer.writerow(complaint_row(doc))
    return buf.getvalue()
