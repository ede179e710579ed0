import html
import json

import pytest

from pltracker.assessments.fetcher import FetchResponse, Fetcher
from pltracker.core.db import dispose_db, init_db
from pltracker.core.store import SqlKeyValueStore

ORIGIN = "https://us.prairielearn.com"


@pytest.fixture
def db(tmp_path):
    init_db(db_url=f"sqlite:///{tmp_path / 'test.db'}")
    yield
    dispose_db()


@pytest.fixture
def store(db):
    return SqlKeyValueStore()


class FakeFetcher(Fetcher):
    """Serves canned pages by URL; unknown URLs answer 404."""

    def __init__(self, pages=None, statuses=None, document=None):
        self.pages = dict(pages or {})
        self.statuses = dict(statuses or {})
        self.document = document
        self.requested = []

    async def fetch(self, url):
        self.requested.append(url)
        if url in self.statuses:
            status = self.statuses[url]
            return FetchResponse(url=url, status=status, ok=200 <= status < 300, text="")
        if url in self.pages:
            return FetchResponse(url=url, status=200, ok=True, text=self.pages[url])
        return FetchResponse(url=url, status=404, ok=False, text="")

    async def document_html(self):
        return self.document


def popover_attr(rows):
    """data-bs-content value as the platform serves it: the table markup is entity-encoded twice."""
    body = "".join(
        f"<tr><td>{credit}</td><td>{start}</td><td>{end}</td></tr>" for credit, start, end in rows
    )
    table = f"<table><tr><th>Credit</th><th>Start</th><th>End</th></tr>{body}</table>"
    return html.escape(html.escape(table))


def assessment_row(badge, title, href="/pl/course_instance/1/assessment/9", availability="",
                   score_cell="", popover=None):
    button = ""
    if popover is not None:
        button = f'<button data-bs-toggle="popover" data-bs-content="{popover_attr(popover)}"></button>'
    link = f'<a href="{href}">{title}</a>' if href else title
    return (
        "<tr>"
        f'<td><span class="badge" data-testid="assessment-set-badge">{badge}</span></td>'
        f"<td>{link}</td>"
        f"<td>{availability}{button}</td>"
        f"<td>{score_cell}</td>"
        "</tr>"
    )


def group_row(name):
    return f'<tr><th colspan="4" data-testid="assessment-group-heading">{name}</th></tr>'


def assessments_page(rows, course_label="CS 225: Data Structures"):
    return (
        "<html><body>"
        f'<nav id="main-nav"><span class="navbar-text">{course_label}</span></nav>'
        '<table aria-label="Assessments"><thead><tr><th>Badge</th></tr></thead>'
        f"<tbody>{''.join(rows)}</tbody></table>"
        "</body></html>"
    )


def home_page(ids):
    props = {"json": {"studentCourses": [{"course_instance": {"id": i}} for i in ids]}}
    return (
        "<html><body>"
        '<script type="application/json" data-component="HomeCards" data-component-props="true">'
        f"{json.dumps(props)}</script></body></html>"
    )


def course_url(course_instance_id, origin=ORIGIN):
    return f"{origin}/pl/course_instance/{course_instance_id}/assessments"


@pytest.fixture
def pages():
    class Pages:
        assessment_row = staticmethod(assessment_row)
        group_row = staticmethod(group_row)
        assessments_page = staticmethod(assessments_page)
        home_page = staticmethod(home_page)
        course_url = staticmethod(course_url)
        popover_attr = staticmethod(popover_attr)
        FakeFetcher = FakeFetcher

    return Pages
