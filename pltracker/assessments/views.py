"""
Text helpers for presenting dashboard data (CLI output, API consumers).
"""
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .records import (
    STATUS_ACTION_AVAILABLE,
    STATUS_NOT_STARTED,
    STATUS_SCORED,
    STATUS_TEXT,
    summarize_refresh_errors,
)
from .timestamps import parse_iso

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")

_STATUS_LABELS = {
    STATUS_NOT_STARTED: "Not started",
    STATUS_ACTION_AVAILABLE: "Action available",
    STATUS_SCORED: "Scored",
    STATUS_TEXT: "In progress",
}


def parse_score_percent(score: Any) -> Optional[float]:
    if not isinstance(score, str):
        return None
    match = _PERCENT_RE.search(score)
    return float(match.group(1)) if match else None


def status_to_label(status: Any) -> str:
    return _STATUS_LABELS.get(status, "Unknown")


def progress_label(row: Dict[str, Any]) -> str:
    if row.get("score"):
        return row["score"]
    if row.get("status") in (STATUS_NOT_STARTED, STATUS_ACTION_AVAILABLE, STATUS_TEXT):
        return status_to_label(row["status"])
    return "Unknown"


def get_pending_within(dashboard: Dict[str, Any], days: int = 14, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Rows due between now and now + days that are not at 100%."""
    upcoming = dashboard.get("upcoming") if isinstance(dashboard, dict) else None
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.astimezone()
    horizon = now + timedelta(days=days)

    pending = []
    for row in upcoming if isinstance(upcoming, list) else []:
        due = parse_iso(row.get("due_at"))
        if due is None or due < now or due > horizon:
            continue
        percent = parse_score_percent(row.get("score"))
        if percent is None or percent < 100:
            pending.append((due, row))

    pending.sort(key=lambda item: item[0])
    return [row for _due, row in pending]


def format_refresh_summary(summary: Optional[Dict[str, Any]]) -> str:
    summary = summary or {}
    succeeded = summary.get("succeeded") or 0
    failed = summary.get("failed") or 0
    total = summary.get("requested_course_count")
    if total is None:
        total = succeeded + failed
    mode = " (page context)" if summary.get("mode") == "page_context" else ""
    base = f"Refreshed {succeeded}/{total} courses{f', {failed} failed' if failed else ''}{mode}."

    errors = summary.get("errors") or []
    if not failed or not errors:
        return base
    return f"{base} {summarize_refresh_errors(errors)}"


def format_due(iso: Any) -> str:
    due = parse_iso(iso)
    if due is None:
        return "No due date"
    return due.astimezone().strftime("%a, %b %d %H:%M")
