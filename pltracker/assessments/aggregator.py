"""
Dashboard aggregation: flattens every stored course snapshot into one list of
open assessments sorted by due time. Computed fresh on every request.
"""
import re
from typing import Any, Dict, List, Optional

from pltracker.core.store import KeyValueStore

from . import service
from .origin import to_absolute_url
from .records import STATUS_CLOSED, STATUS_UNKNOWN
from .timestamps import parse_iso

CLOSED_RE = re.compile(r"assessment closed", re.I)


def is_closed(assessment: Dict[str, Any]) -> bool:
    """Closed by status, or by its texts in case the stored status is stale."""
    return (
        assessment.get("status") == STATUS_CLOSED
        or bool(CLOSED_RE.search(assessment.get("availability_text") or ""))
        or bool(CLOSED_RE.search(assessment.get("score_text") or ""))
    )


def to_upcoming_row(snapshot: Dict[str, Any], assessment: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "course_instance_id": snapshot.get("course_instance_id"),
        "course_label": (
            assessment.get("course_label")
            or snapshot.get("course_label")
            or snapshot.get("course_instance_id")
            or "Course"
        ),
        "group": assessment.get("group") or None,
        "badge": assessment.get("badge") or None,
        "title": assessment.get("title") or "Untitled",
        "href": assessment.get("absolute_url") or to_absolute_url(snapshot.get("origin"), assessment.get("href")),
        "due_at": assessment.get("due_at") or None,
        "availability_text": assessment.get("availability_text") or None,
        "score": assessment.get("score") or None,
        "status": assessment.get("status") or STATUS_UNKNOWN,
        "captured_at": assessment.get("captured_at") or snapshot.get("updated_at") or None,
    }


def upcoming_sort_key(row: Dict[str, Any]):
    """Dated rows first by due time; ties and undated rows by course label, badge, title."""
    due = parse_iso(row.get("due_at"))
    return (
        0 if due is not None else 1,
        due.timestamp() if due is not None else 0.0,
        str(row.get("course_label") or ""),
        str(row.get("badge") or ""),
        str(row.get("title") or ""),
    )


def sort_upcoming(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(rows, key=upcoming_sort_key)


def build_dashboard_data(store: KeyValueStore) -> Dict[str, Any]:
    meta: Optional[Dict[str, Any]] = service.get_meta(store)
    snapshots = service.get_course_snapshots(store)

    upcoming = []
    assessment_count = 0
    for snapshot in snapshots:
        for assessment in snapshot["assessments"]:
            assessment_count += 1
            if not isinstance(assessment, dict) or is_closed(assessment):
                continue
            upcoming.append(to_upcoming_row(snapshot, assessment))

    upcoming = sort_upcoming(upcoming)

    return {
        "meta": meta,
        "stats": {
            "course_snapshots": len(snapshots),
            "assessments": assessment_count,
            "upcoming": len(upcoming),
        },
        "upcoming": upcoming,
    }
