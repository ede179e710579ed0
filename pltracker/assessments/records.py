"""
Record types for scraped assessments. All are namedtuples; the *_to_dict /
*_from_dict helpers give the JSON shape used by the store and the message API.
"""
from collections import namedtuple
from typing import Any, Dict, List, Optional, Sequence

STATUS_UNKNOWN = "unknown"
STATUS_SCORED = "scored"
STATUS_CLOSED = "closed"
STATUS_NOT_STARTED = "not_started"
STATUS_ACTION_AVAILABLE = "action_available"
STATUS_TEXT = "text_status"

STATUSES = (
    STATUS_UNKNOWN,
    STATUS_SCORED,
    STATUS_CLOSED,
    STATUS_NOT_STARTED,
    STATUS_ACTION_AVAILABLE,
    STATUS_TEXT,
)

MODE_BACKGROUND = "background"
MODE_PAGE_CONTEXT = "page_context"

# One credit-bearing availability interval from the access-details popover.
AccessWindow = namedtuple(
    "AccessWindow",
    ["credit", "start", "end", "start_iso", "end_iso"],
    defaults=(None,) * 5,
)

AssessmentRecord = namedtuple(
    "AssessmentRecord",
    [
        "course_instance_id",
        "course_label",
        "group",             # most recent group heading above the row
        "badge",             # assessment set badge, e.g. "HW3"
        "title",
        "href",              # raw link from the page
        "absolute_url",
        "availability_text",
        "access_windows",    # List[AccessWindow]
        "due_at",            # ISO string or None
        "score",             # progress-bar text, e.g. "85%"
        "score_text",        # full score cell text
        "status",
        "captured_at",
    ],
    defaults=(None,) * 14,
)

CourseSnapshot = namedtuple(
    "CourseSnapshot",
    ["course_instance_id", "course_label", "origin", "source_url", "assessments", "updated_at"],
    defaults=(None, None, None, None, (), None),
)

RefreshError = namedtuple("RefreshError", ["course_instance_id", "error"])

# Result of one strategy run. Never mutated: annotate with _replace().
RefreshAttempt = namedtuple(
    "RefreshAttempt",
    [
        "mode",
        "origin",
        "requested_course_count",
        "succeeded",
        "failed",
        "snapshots",   # List[CourseSnapshot]
        "errors",      # List[RefreshError]
        "started_at",
        "finished_at",
    ],
)


def access_window_to_dict(window: AccessWindow) -> Dict[str, Any]:
    return dict(window._asdict())


def access_window_from_dict(d: Dict[str, Any]) -> AccessWindow:
    return AccessWindow(**{field: d.get(field) for field in AccessWindow._fields})


def assessment_to_dict(record: AssessmentRecord) -> Dict[str, Any]:
    row = dict(record._asdict())
    row["access_windows"] = [access_window_to_dict(w) for w in record.access_windows or []]
    return row


def assessment_from_dict(d: Dict[str, Any]) -> AssessmentRecord:
    row = {field: d.get(field) for field in AssessmentRecord._fields}
    windows = d.get("access_windows")
    row["access_windows"] = [
        access_window_from_dict(w) for w in (windows if isinstance(windows, list) else []) if isinstance(w, dict)
    ]
    row["status"] = row["status"] if row["status"] in STATUSES else STATUS_UNKNOWN
    return AssessmentRecord(**row)


def snapshot_to_dict(snapshot: CourseSnapshot) -> Dict[str, Any]:
    row = dict(snapshot._asdict())
    row["assessments"] = [assessment_to_dict(a) for a in snapshot.assessments or []]
    return row


def snapshot_from_dict(d: Dict[str, Any]) -> CourseSnapshot:
    assessments = d.get("assessments")
    return CourseSnapshot(
        course_instance_id=str(d.get("course_instance_id") or "").strip(),
        course_label=d.get("course_label"),
        origin=d.get("origin"),
        source_url=d.get("source_url"),
        assessments=[
            assessment_from_dict(a) for a in (assessments if isinstance(assessments, list) else []) if isinstance(a, dict)
        ],
        updated_at=d.get("updated_at"),
    )


def refresh_error_to_dict(error: RefreshError) -> Dict[str, Any]:
    return {"course_instance_id": error.course_instance_id, "error": error.error}


def refresh_error_from_dict(d: Any) -> RefreshError:
    if not isinstance(d, dict):
        return RefreshError("?", "Unknown failure")
    return RefreshError(str(d.get("course_instance_id") or "?"), d.get("error") or "Unknown failure")


def attempt_to_dict(attempt: RefreshAttempt) -> Dict[str, Any]:
    return {
        "mode": attempt.mode,
        "origin": attempt.origin,
        "requested_course_count": attempt.requested_course_count,
        "succeeded": attempt.succeeded,
        "failed": attempt.failed,
        "errors": [refresh_error_to_dict(e) for e in attempt.errors],
        "snapshots": [snapshot_to_dict(s) for s in attempt.snapshots],
        "started_at": attempt.started_at,
        "finished_at": attempt.finished_at,
    }


def errors_to_dicts(errors: Optional[List[RefreshError]]) -> List[Dict[str, Any]]:
    return [refresh_error_to_dict(e) for e in errors or []]


def summarize_refresh_errors(errors: Sequence[Dict[str, Any]]) -> Optional[str]:
    """First two "id: message" pairs joined by " | ", with "(+N more)" when truncated."""
    if not errors:
        return None
    preview = " | ".join(
        f"{entry.get('course_instance_id') or '?'}: {entry.get('error') or 'Unknown failure'}"
        for entry in errors[:2]
    )
    if len(errors) > 2:
        return f"{preview} (+{len(errors) - 2} more)"
    return preview
