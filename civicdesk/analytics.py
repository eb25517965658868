# Aggregation engine: pure functions from a complaint collection to dashboard
# and report statistics. Nothing here mutates its input.

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import now_utc
from .models import ComplaintStatus, Priority, complaint_status
from .taxonomy import DEFAULT_CATEGORY

TREND_MONTHS = 6
TOP_CATEGORIES = 5
TOP_LOCATIONS = 10
SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(count: int, total: int) -> int:
    if not total:
        return 0
    return round_half_up(count / total * 100)


def _utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def month_key(moment: datetime) -> str:
    return f"{moment.year}-{moment.month:02d}"


def _elapsed_seconds(doc: Dict[str, Any]) -> Optional[float]:
    """Seconds from creation to the last update of a resolved complaint."""
    if complaint_status(doc) != ComplaintStatus.RESOLVED.value:
        return None
    created, updated = _utc(doc.get("created_at")), _utc(doc.get("updated_at"))
    if created is None or updated is None:
        return None
    return (updated - created).total_seconds()

# ---------------------------------------------------------------------------
# Full report
# ---------------------------------------------------------------------------
@dataclass
class AggregateStats:
    total: int = 0
    by_status: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in ComplaintStatus})
    by_category: Dict[str, int] = field(default_factory=dict)
    by_priority: Dict[str, int] = field(default_factory=dict)
    monthly: Dict[str, int] = field(default_factory=dict)
    resolution_days: List[int] = field(default_factory=list)

    @property
    def avg_resolution_days(self) -> int:
        if not self.resolution_days:
            return 0
        return round_half_up(sum(self.resolution_days) / len(self.resolution_days))

    @property
    def resolution_rate(self) -> int:
        return percentage(self.by_status.get(ComplaintStatus.RESOLVED.value, 0), self.total)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_category": dict(self.by_category),
            "by_priority": dict(self.by_priority),
            "monthly": dict(self.monthly),
            "resolution_days": list(self.resolution_days),
            "avg_resolution_days": self.avg_resolution_days,
            "resolution_rate": self.resolution_rate,
        }


def compute_stats(complaints: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> AggregateStats:
    """Summarise *complaints* with day-granularity resolution times.

    A complaint without a creation timestamp (still being written by the
    store) is bucketed under the current month.
    """
    now = now or now_utc()
    stats = AggregateStats()
    for doc in complaints:
        stats.total += 1
        status = complaint_status(doc)
        stats.by_status[status] = stats.by_status.get(status, 0) + 1

        category = doc.get("category") or DEFAULT_CATEGORY
        stats.by_category[category] = stats.by_category.get(category, 0) + 1

        priority = doc.get("priority") or Priority.MEDIUM.value
        stats.by_priority[priority] = stats.by_priority.get(priority, 0) + 1

        key = month_key(_utc(doc.get("created_at")) or now)
        stats.monthly[key] = stats.monthly.get(key, 0) + 1

        elapsed = _elapsed_seconds(doc)
        if elapsed is not None:
            stats.resolution_days.append(math.ceil(elapsed / SECONDS_PER_DAY))
    return stats

# ---------------------------------------------------------------------------
# Stat cards
# ---------------------------------------------------------------------------
def quick_stats(complaints: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts = {s.value: 0 for s in ComplaintStatus}
    total = 0
    for doc in complaints:
        total += 1
        status = complaint_status(doc)
        if status in counts:
            counts[status] += 1
        else:
            counts[ComplaintStatus.PENDING.value] += 1
    resolved = counts[ComplaintStatus.RESOLVED.value]
    return {
        "total": total,
        "pending": counts[ComplaintStatus.PENDING.value],
        "in_progress": counts[ComplaintStatus.IN_PROGRESS.value],
        "resolved": resolved,
        "rejected": counts[ComplaintStatus.REJECTED.value],
        "resolution_rate": percentage(resolved, total),
    }


def average_response_hours(complaints: Iterable[Dict[str, Any]]) -> int:
    """Mean hours from creation to resolution, rounded; 0 with nothing resolved."""
    hours = [e / SECONDS_PER_HOUR for e in map(_elapsed_seconds, complaints) if e is not None]
    if not hours:
        return 0
    return round_half_up(sum(hours) / len(hours))

# ---------------------------------------------------------------------------
# Chart series
# ---------------------------------------------------------------------------
def ranked(counts: Dict[str, int], limit: Optional[int] = None) -> List[Tuple[str, int]]:
    # sorted() is stable, so equal counts keep first-seen order
    entries = sorted(counts.items(), key=lambda kv: kv[1], reverse=True)
    return entries[:limit] if limit is not None else entries


def status_breakdown(by_status: Dict[str, int]) -> List[Dict[str, Any]]:
    total = sum(by_status.values())
    return [{"status": s, "count": c, "percent": percentage(c, total)} for s, c in by_status.items()]


def top_categories(by_category: Dict[str, int], total: int, limit: int = TOP_CATEGORIES) -> List[Dict[str, Any]]:
    return [{"category": k, "count": c, "percent": percentage(c, total)}
            for k, c in ranked(by_category, limit)]


def location_counts(complaints: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for doc in complaints:
        loc = (doc.get("location") or "").strip()
        if loc:
            counts[loc] = counts.get(loc, 0) + 1
    return counts


def top_locations(complaints: Iterable[Dict[str, Any]], limit: int = TOP_LOCATIONS) -> List[Dict[str, Any]]:
    complaints = list(complaints)
    counts = location_counts(complaints)
    return [{"location": k, "count": c, "percent": percentage(c, len(complaints))}
            for k, c in ranked(counts, limit)]


def monthly_trend(monthly: Dict[str, int], months: int = TREND_MONTHS) -> List[Dict[str, Any]]:
    """Chronologically latest *months* buckets, oldest first.

    YYYY-MM keys sort lexically in calendar order.
    """
    keys = sorted(monthly)[-months:] if months > 0 else []
    return [{"month": k, "count": monthly[k]} for k in keys]


def build_report(complaints: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    complaints = list(complaints)
    stats = compute_stats(complaints, now=now)
    report = stats.as_dict()
    report.update({
        "status_breakdown": status_breakdown(stats.by_status),
        "top_categories": top_categories(stats.by_category, stats.total),
        "top_locations": top_locations(complaints),
        "monthly_trend": monthly_trend(stats.monthly),
        "avg_response_hours": average_response_hours(complaints),
    })
    return report
