import asyncio

import pytest

from pltracker.assessments import service
from pltracker.assessments.errors import ConfigurationError, TabError, TabLoadTimeout
from pltracker.assessments.fetcher import Fetcher
from pltracker.assessments.messages import REFRESH_REQUEST, handle_message
from pltracker.assessments.orchestrator import (
    NO_IMPROVEMENT_MESSAGE,
    RefreshOrchestrator,
    summarize_refresh_errors,
)
from pltracker.assessments.page_context import PageContextAgent
from pltracker.assessments.records import MODE_BACKGROUND, MODE_PAGE_CONTEXT
from pltracker.assessments.tabs import Tab, TabProvider, ensure_tab

ORIGIN = "https://us.prairielearn.com"


class FakeTabProvider(TabProvider):
    """Tabs are (id, url) pairs; messages are answered by a PageContextAgent over page_fetcher."""

    def __init__(self, page_fetcher, tabs=None, slow_tabs=()):
        self.page_fetcher = page_fetcher
        self.tabs = {tab.tab_id: tab for tab in tabs or []}
        self.slow_tabs = set(slow_tabs)
        self.created = []
        self.closed = []
        self.messages = []

    async def query_tabs(self):
        return list(self.tabs.values())

    async def create_tab(self, url):
        tab = Tab(100 + len(self.created), url)
        self.tabs[tab.tab_id] = tab
        self.created.append(tab.tab_id)
        return tab

    async def wait_for_load(self, tab_id, timeout_ms):
        if tab_id in self.slow_tabs:
            raise TabLoadTimeout("Timed out waiting for PrairieLearn tab to load.")

    async def send_message(self, tab_id, message):
        self.messages.append((tab_id, message))
        agent = PageContextAgent(self.page_fetcher, location_url=self.tabs[tab_id].url)
        return await agent.handle_message(message)

    async def close_tab(self, tab_id):
        self.closed.append(tab_id)
        self.tabs.pop(tab_id, None)


def course_pages(pages, ids, title="Work"):
    return {pages.course_url(i): pages.assessments_page([pages.assessment_row("HW", f"{title} {i}")]) for i in ids}


def test_direct_success_does_not_touch_tabs(store, pages):
    fetcher = pages.FakeFetcher(pages=course_pages(pages, ["1", "2"]))
    tabs = FakeTabProvider(pages.FakeFetcher())
    orchestrator = RefreshOrchestrator(store, fetcher, tab_provider=tabs)

    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1", "2"]))

    assert summary["mode"] == MODE_BACKGROUND
    assert (summary["succeeded"], summary["failed"]) == (2, 0)
    assert tabs.messages == []
    assert store.get("pl.course.1")["assessments"][0]["title"] == "Work 1"
    meta = service.get_meta(store)
    assert meta["last_refresh_summary"] == summary
    assert meta["last_error"] is None
    assert meta["course_instance_ids"] == ["1", "2"]


def test_partial_failure_does_not_escalate(store, pages):
    fetcher = pages.FakeFetcher(pages=course_pages(pages, ["1"]))
    tabs = FakeTabProvider(pages.FakeFetcher(pages=course_pages(pages, ["1", "2"])))
    orchestrator = RefreshOrchestrator(store, fetcher, tab_provider=tabs)

    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1", "2"]))

    assert summary["mode"] == MODE_BACKGROUND
    assert (summary["succeeded"], summary["failed"]) == (1, 1)
    assert tabs.messages == []
    assert service.get_meta(store)["last_error"] == "2: Request failed with status 404."


def test_total_failure_escalates_to_new_tab(store, pages):
    fetcher = pages.FakeFetcher(statuses={pages.course_url("1"): 403, pages.course_url("2"): 403})
    tabs = FakeTabProvider(pages.FakeFetcher(pages=course_pages(pages, ["1", "2"], title="Tab")))
    orchestrator = RefreshOrchestrator(store, fetcher, tab_provider=tabs)

    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1", "2"]))

    assert summary["mode"] == MODE_PAGE_CONTEXT
    assert (summary["succeeded"], summary["failed"]) == (2, 0)
    assert tabs.created == [100]
    assert tabs.closed == [100]
    assert store.get("pl.course.2")["assessments"][0]["title"] == "Tab 2"


def test_escalation_reuses_existing_tab_without_closing_it(store, pages):
    fetcher = pages.FakeFetcher()
    tabs = FakeTabProvider(
        pages.FakeFetcher(pages=course_pages(pages, ["1"])),
        tabs=[Tab(1, "https://example.com/"), Tab(7, f"{ORIGIN}/pl/course_instance/1")],
    )
    orchestrator = RefreshOrchestrator(store, fetcher, tab_provider=tabs)

    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1"]))

    assert summary["mode"] == MODE_PAGE_CONTEXT
    assert tabs.messages[0][0] == 7
    assert tabs.created == [] and tabs.closed == []


def test_escalation_without_improvement_keeps_direct_result(store, pages):
    fetcher = pages.FakeFetcher()
    tabs = FakeTabProvider(pages.FakeFetcher())
    orchestrator = RefreshOrchestrator(store, fetcher, tab_provider=tabs)

    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1"]))

    assert summary["mode"] == MODE_BACKGROUND
    assert summary["errors"][-1] == {"course_instance_id": "*", "error": NO_IMPROVEMENT_MESSAGE}
    assert summary["failed"] == 2


def test_escalation_failure_is_annotated(store, pages):
    fetcher = pages.FakeFetcher()
    tabs = FakeTabProvider(pages.FakeFetcher(), tabs=[Tab(3, f"{ORIGIN}/")], slow_tabs=[3])
    orchestrator = RefreshOrchestrator(store, fetcher, tab_provider=tabs)

    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1"]))

    assert summary["mode"] == MODE_BACKGROUND
    assert summary["errors"][-1]["error"] == (
        "Page-context fallback failed: Timed out waiting for PrairieLearn tab to load."
    )


def test_no_tab_provider_annotates_direct_result(store, pages):
    orchestrator = RefreshOrchestrator(store, pages.FakeFetcher())
    summary = asyncio.run(orchestrator.refresh_courses(ORIGIN, ["1"]))
    assert summary["errors"][-1]["course_instance_id"] == "*"
    assert summary["errors"][-1]["error"].startswith("Page-context fallback failed:")


def test_ensure_tab_timeout_propagates():
    tabs = FakeTabProvider(None, tabs=[Tab(3, f"{ORIGIN}/")], slow_tabs=[3])
    with pytest.raises(TabError):
        asyncio.run(ensure_tab(tabs, ORIGIN))


def test_home_courses_discovered_updates_meta_and_refreshes(store, pages):
    fetcher = pages.FakeFetcher(pages=course_pages(pages, ["5"]))
    orchestrator = RefreshOrchestrator(store, fetcher)

    summary = asyncio.run(orchestrator.handle_home_courses_discovered(
        {"course_instance_ids": ["5", "5", "bad"]}, sender_url=f"{ORIGIN}/pl/",
    ))

    assert summary["succeeded"] == 1
    meta = service.get_meta(store)
    assert meta["origin"] == ORIGIN
    assert meta["course_instance_ids"] == ["5"]
    assert meta["last_discovery_at"]


def test_home_courses_discovered_requires_origin_and_ids(store, pages):
    orchestrator = RefreshOrchestrator(store, pages.FakeFetcher())
    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.handle_home_courses_discovered({"course_instance_ids": ["1"]}, "https://example.com/"))
    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.handle_home_courses_discovered({"origin": ORIGIN, "course_instance_ids": []}))


def test_refresh_request_uses_stored_meta_then_home_discovery(store, pages):
    fetcher = pages.FakeFetcher(pages={f"{ORIGIN}/": pages.home_page([9]), **course_pages(pages, ["9"])})
    orchestrator = RefreshOrchestrator(store, fetcher)
    service.update_meta(store, {"origin": ORIGIN})

    summary = asyncio.run(orchestrator.handle_refresh_request())

    assert summary["succeeded"] == 1
    assert service.get_meta(store)["course_instance_ids"] == ["9"]


def test_refresh_request_without_origin(store, pages):
    orchestrator = RefreshOrchestrator(store, pages.FakeFetcher())
    with pytest.raises(ConfigurationError):
        asyncio.run(orchestrator.handle_refresh_request({"origin": "https://example.com"}))


def test_summarize_refresh_errors():
    errors = [{"course_instance_id": str(i), "error": f"e{i}"} for i in range(4)]
    assert summarize_refresh_errors([]) is None
    assert summarize_refresh_errors(errors[:1]) == "0: e0"
    assert summarize_refresh_errors(errors) == "0: e0 | 1: e1 (+2 more)"


def test_refresh_request_without_any_ids_discovers_them_in_a_tab(store, pages):
    page_fetcher = pages.FakeFetcher(pages=course_pages(pages, ["8"]), document=pages.home_page([8]))
    tabs = FakeTabProvider(page_fetcher)
    orchestrator = RefreshOrchestrator(store, pages.FakeFetcher(), tab_provider=tabs)

    summary = asyncio.run(orchestrator.handle_refresh_request({"origin": ORIGIN}))

    assert summary["mode"] == MODE_PAGE_CONTEXT
    assert summary["succeeded"] == 1
    assert service.get_meta(store)["course_instance_ids"] == ["8"]
    assert store.get("pl.course.8")["assessments"][0]["title"] == "Work 8"
    assert tabs.created == [100]
    assert tabs.closed == [100]


def test_refresh_request_without_ids_or_browser_is_an_error_payload(store, pages):
    orchestrator = RefreshOrchestrator(store, pages.FakeFetcher())

    response = asyncio.run(handle_message(
        {"type": REFRESH_REQUEST, "payload": {"origin": ORIGIN}}, store, orchestrator
    ))

    assert response["ok"] is False
    assert "browser support is disabled" in response["error"]


class GatedFetcher(Fetcher):
    """Holds every fetch until release is set; remembers whether it was closed."""

    def __init__(self, inner):
        self.inner = inner
        self.entered = None
        self.release = None
        self.closed = False

    async def fetch(self, url):
        self.entered.set()
        await self.release.wait()
        if self.closed:
            raise RuntimeError("session closed mid-refresh")
        return await self.inner.fetch(url)

    def close(self):
        self.closed = True


def test_replace_clients_waits_for_running_refresh(store, pages):
    old = GatedFetcher(pages.FakeFetcher(pages=course_pages(pages, ["1"])))
    new = pages.FakeFetcher(pages=course_pages(pages, ["1"], title="New"))
    orchestrator = RefreshOrchestrator(store, old)

    async def scenario():
        old.entered, old.release = asyncio.Event(), asyncio.Event()
        refresh = asyncio.ensure_future(orchestrator.refresh_courses(ORIGIN, ["1"]))
        await old.entered.wait()

        replace = asyncio.ensure_future(orchestrator.replace_clients(new, concurrency=2))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not replace.done()
        assert orchestrator.fetcher is old and not old.closed

        old.release.set()
        first = await refresh
        await replace
        second = await orchestrator.refresh_courses(ORIGIN, ["1"])
        return first, second

    first, second = asyncio.run(scenario())

    assert (first["succeeded"], first["failed"]) == (1, 0)
    assert old.closed
    assert orchestrator.fetcher is new and orchestrator.concurrency == 2
    assert second["succeeded"] == 1
    assert store.get("pl.course.1")["assessments"][0]["title"] == "New 1"
