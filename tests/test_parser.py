from datetime import datetime

from bs4 import BeautifulSoup

from pltracker.assessments.discovery import extract_course_instance_ids_from_home_document
from pltracker.assessments.parser import ParseContext, classify_status, parse_assessments_document
from pltracker.assessments.popover import (
    decode_html_entities,
    normalize_whitespace,
    parse_popover_access_details,
    parse_popover_content,
)
from pltracker.assessments.records import (
    STATUS_ACTION_AVAILABLE,
    STATUS_CLOSED,
    STATUS_NOT_STARTED,
    STATUS_SCORED,
    STATUS_TEXT,
    STATUS_UNKNOWN,
)

ORIGIN = "https://us.prairielearn.com"
CONTEXT = ParseContext(
    origin=ORIGIN,
    assessments_url=f"{ORIGIN}/pl/course_instance/1/assessments",
    course_instance_id="1",
)


def test_normalize_whitespace():
    assert normalize_whitespace("  a \n\t b  ") == "a b"
    assert normalize_whitespace(None) == ""


def test_decode_html_entities():
    assert decode_html_entities("&lt;b&gt; &amp; more") == "<b> & more"
    assert decode_html_entities("") == ""


def test_popover_parses_rows_after_header(pages):
    attr = pages.popover_attr([
        ("100%", "2024-02-01 00:01:00-06 (CST)", "2024-03-01 23:59:00-06 (CST)"),
        ("50%", "", "2024-03-08 23:59:00-06 (CST)"),
    ])
    soup = BeautifulSoup(f'<button data-bs-toggle="popover" data-bs-content="{attr}"></button>', "html.parser")
    windows = parse_popover_access_details(soup.button)

    assert [w.credit for w in windows] == ["100%", "50%"]
    assert windows[0].end_iso == "2024-03-02T05:59:00.000Z"
    assert windows[1].start is None and windows[1].start_iso is None
    assert windows[1].end_iso == "2024-03-09T05:59:00.000Z"


def test_popover_missing_or_empty():
    assert parse_popover_access_details(None) == []
    soup = BeautifulSoup('<button data-bs-toggle="popover"></button>', "html.parser")
    assert parse_popover_access_details(soup.button) == []
    assert parse_popover_content("") == []


def test_status_priority():
    assert classify_status("80%", "Assessment closed", "Assessment closed", True) == STATUS_SCORED
    assert classify_status("", "", "Assessment closed.", True) == STATUS_CLOSED
    assert classify_status("", "Not started", "", True) == STATUS_NOT_STARTED
    assert classify_status("", "", "Open", True) == STATUS_ACTION_AVAILABLE
    assert classify_status("", "Waiting", "Open", False) == STATUS_TEXT
    assert classify_status("", "", "", False) == STATUS_UNKNOWN


def test_parse_document_groups_and_fields(pages):
    html = pages.assessments_page([
        pages.group_row("Homework"),
        pages.assessment_row(
            "HW1",
            "  Linked   lists ",
            href="/pl/course_instance/1/assessment/10",
            availability="100% until 23:59, Fri, Mar 1",
            score_cell='<div class="progress"><div class="progress-bar">85%</div></div>',
            popover=[("100%", "2024-02-01 00:01:00-06 (CST)", "2024-03-01 23:59:00-06 (CST)")],
        ),
        pages.assessment_row("HW2", "Trees", score_cell="Not started"),
        pages.group_row("Exams"),
        pages.assessment_row(
            "E1",
            "Midterm",
            href=None,
            availability="Assessment closed.",
            score_cell='<a class="btn btn-primary" href="#">Review</a>',
        ),
    ])
    snapshot = parse_assessments_document(html, CONTEXT, now=datetime(2024, 2, 1))

    assert snapshot.course_instance_id == "1"
    assert snapshot.course_label == "CS 225: Data Structures"
    assert snapshot.source_url == CONTEXT.assessments_url
    assert snapshot.origin == ORIGIN

    hw1, hw2, exam = snapshot.assessments
    assert (hw1.group, hw1.badge, hw1.title) == ("Homework", "HW1", "Linked lists")
    assert hw1.absolute_url == f"{ORIGIN}/pl/course_instance/1/assessment/10"
    assert hw1.score == "85%"
    assert hw1.status == STATUS_SCORED
    assert hw1.due_at == "2024-03-02T05:59:00.000Z"
    assert len(hw1.access_windows) == 1

    assert hw2.group == "Homework"
    assert hw2.status == STATUS_NOT_STARTED
    assert hw2.score is None
    assert hw2.due_at is None

    assert exam.group == "Exams"
    assert exam.title == "Midterm"
    assert exam.href is None and exam.absolute_url is None
    assert exam.status == STATUS_CLOSED


def test_parse_document_skips_rows_without_badge_or_cells(pages):
    html = pages.assessments_page([
        "<tr><td>no badge</td><td>x</td><td></td><td></td></tr>",
        '<tr><td><span data-testid="assessment-set-badge">Q</span></td><td>short</td></tr>',
        pages.assessment_row("Q1", "Quiz"),
    ])
    snapshot = parse_assessments_document(html, CONTEXT)
    assert [a.badge for a in snapshot.assessments] == ["Q1"]
    assert snapshot.assessments[0].group is None


def test_parse_document_without_table():
    assert parse_assessments_document("<html><body>Please log in</body></html>", CONTEXT) is None


def test_parse_document_untitled_and_missing_label():
    html = (
        '<table aria-label="Assessments"><tbody>'
        '<tr><td><span data-testid="assessment-set-badge">X</span></td><td> </td><td></td><td></td></tr>'
        "</tbody></table>"
    )
    snapshot = parse_assessments_document(html, CONTEXT)
    assert snapshot.course_label is None
    assert snapshot.assessments[0].title == "Untitled"
    assert snapshot.assessments[0].status == STATUS_UNKNOWN


def test_home_discovery(pages):
    assert extract_course_instance_ids_from_home_document(pages.home_page([5, "7", 5, "x"])) == ["5", "7"]
    assert extract_course_instance_ids_from_home_document("<html></html>") == []
    broken = (
        '<script type="application/json" data-component="HomeCards" '
        'data-component-props="true">{not json</script>'
    )
    assert extract_course_instance_ids_from_home_document(broken) == []


def test_parse_document_keeps_rows_when_a_window_end_is_out_of_range(pages):
    html = pages.assessments_page([
        pages.assessment_row(
            "HW1",
            "Good",
            popover=[("100%", "", "2024-03-01 23:59:00-06 (CST)")],
        ),
        pages.assessment_row(
            "HW2",
            "Far future",
            href="/pl/course_instance/1/assessment/11",
            popover=[("100%", "", "9999-12-31 23:59:00-05 (X)")],
        ),
    ])
    snapshot = parse_assessments_document(html, CONTEXT, now=datetime(2024, 2, 1))

    good, far = snapshot.assessments
    assert good.due_at == "2024-03-02T05:59:00.000Z"
    assert far.title == "Far future"
    assert far.access_windows[0].end_iso is None
    assert far.due_at is None
