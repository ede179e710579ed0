"""
Parser for the course instance "Assessments" page.

The page lists assessments in one table. Group heading rows split the table into
sections; each data row has a set badge, a title link, an availability cell
(optionally with an access-details popover) and a score cell. Returns None when
the table is missing, which usually means the session is logged out or the
page layout changed.
"""
import re
from collections import namedtuple
from datetime import datetime, timezone
from functools import reduce
from typing import Optional, Union

from bs4 import BeautifulSoup

from .origin import to_absolute_url
from .popover import POPOVER_BUTTON_SELECTOR, normalize_whitespace, parse_popover_access_details
from .records import (
    AssessmentRecord,
    CourseSnapshot,
    STATUS_ACTION_AVAILABLE,
    STATUS_CLOSED,
    STATUS_NOT_STARTED,
    STATUS_SCORED,
    STATUS_TEXT,
    STATUS_UNKNOWN,
)
from .timestamps import get_effective_due_timestamp, to_iso

TABLE_SELECTOR = 'table[aria-label="Assessments"]'
COURSE_LABEL_SELECTOR = "#main-nav .navbar-text"
GROUP_HEADING_SELECTOR = '[data-testid="assessment-group-heading"]'
BADGE_SELECTOR = '[data-testid="assessment-set-badge"]'
SCORE_BAR_SELECTOR = ".progress-bar"
ACTION_SELECTOR = "a.btn, button.btn"
MIN_CELLS = 4

CLOSED_RE = re.compile(r"assessment closed", re.I)
NOT_STARTED_RE = re.compile(r"not started", re.I)

ParseContext = namedtuple("ParseContext", ["origin", "assessments_url", "course_instance_id"])

# Fold state for the row walk: the last group heading seen and the records so far.
_RowWalk = namedtuple("_RowWalk", ["group", "records"])


def to_soup(doc: Union[str, bytes, BeautifulSoup]) -> BeautifulSoup:
    if isinstance(doc, BeautifulSoup):
        return doc
    return BeautifulSoup(doc, "html.parser")


def classify_status(score: str, score_text: str, availability_text: str, has_action: bool) -> str:
    if score:
        return STATUS_SCORED
    if CLOSED_RE.search(availability_text or "") or CLOSED_RE.search(score_text or ""):
        return STATUS_CLOSED
    if NOT_STARTED_RE.search(score_text or ""):
        return STATUS_NOT_STARTED
    if has_action:
        return STATUS_ACTION_AVAILABLE
    if score_text:
        return STATUS_TEXT
    return STATUS_UNKNOWN


def parse_assessment_row(row, context: ParseContext, course_label: Optional[str], group: Optional[str],
                         captured_at: str, now: Optional[datetime] = None) -> Optional[AssessmentRecord]:
    """One data row, or None when the row is not an assessment (no badge / too few cells)."""
    badge_element = row.select_one(BADGE_SELECTOR)
    cells = row.find_all("td")
    if badge_element is None or len(cells) < MIN_CELLS:
        return None

    title_cell = cells[1]
    link = title_cell.find("a")
    raw_title = link.get_text() if link is not None else ""
    title = normalize_whitespace(raw_title or title_cell.get_text()) or "Untitled"
    href = (link.get("href") or None) if link is not None else None

    availability_cell = cells[2]
    availability_text = normalize_whitespace(availability_cell.get_text()) or None
    access_windows = parse_popover_access_details(availability_cell.select_one(POPOVER_BUTTON_SELECTOR))

    score_cell = cells[3]
    score_bar = score_cell.select_one(SCORE_BAR_SELECTOR)
    score = normalize_whitespace(score_bar.get_text()) if score_bar is not None else ""
    score_text = normalize_whitespace(score_cell.get_text())

    status = classify_status(
        score,
        score_text,
        availability_text or "",
        score_cell.select_one(ACTION_SELECTOR) is not None,
    )

    return AssessmentRecord(
        course_instance_id=context.course_instance_id,
        course_label=course_label,
        group=group,
        badge=normalize_whitespace(badge_element.get_text()),
        title=title,
        href=href,
        absolute_url=to_absolute_url(context.origin, href) if href else None,
        availability_text=availability_text,
        access_windows=access_windows,
        due_at=get_effective_due_timestamp(access_windows, availability_text, now=now),
        score=score or None,
        score_text=score_text or None,
        status=status,
        captured_at=captured_at,
    )


def parse_assessments_document(doc, context: ParseContext, now: Optional[datetime] = None) -> Optional[CourseSnapshot]:
    soup = to_soup(doc)
    table = soup.select_one(TABLE_SELECTOR)
    if table is None:
        return None
    body = table.find("tbody", recursive=False) or table

    captured_at = to_iso(datetime.now(timezone.utc))
    label_element = soup.select_one(COURSE_LABEL_SELECTOR)
    course_label = normalize_whitespace(label_element.get_text()) if label_element is not None else ""
    course_label = course_label or None

    def step(state: _RowWalk, row) -> _RowWalk:
        heading = row.select_one(GROUP_HEADING_SELECTOR)
        if heading is not None:
            return _RowWalk(normalize_whitespace(heading.get_text()), state.records)
        record = parse_assessment_row(row, context, course_label, state.group, captured_at, now=now)
        if record is None:
            return state
        return _RowWalk(state.group, state.records + (record,))

    walk = reduce(step, body.find_all("tr", recursive=False), _RowWalk(None, ()))

    return CourseSnapshot(
        course_instance_id=context.course_instance_id,
        course_label=course_label,
        origin=context.origin,
        source_url=context.assessments_url,
        assessments=list(walk.records),
        updated_at=captured_at,
    )
