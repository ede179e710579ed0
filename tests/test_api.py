import pytest
from fastapi.testclient import TestClient

from pltracker.api.server import create_app
from pltracker.assessments import service
from pltracker.assessments.messages import handle_message
from pltracker.assessments.orchestrator import RefreshOrchestrator

ORIGIN = "https://us.prairielearn.com"


class StubTaskManager:
    def get_active_timers(self):
        return []


class StubTrackerApp:
    """What the API needs from TrackerApp, with dispatch running on the caller's loop."""

    def __init__(self, store, fetcher):
        self.store = store
        self.orchestrator = RefreshOrchestrator(store, fetcher)
        self.task_manager = StubTaskManager()

    async def dispatch(self, message, sender_url=None):
        return await handle_message(message, self.store, self.orchestrator, sender_url=sender_url)


@pytest.fixture
def client(store, pages):
    fetcher = pages.FakeFetcher(pages={
        pages.course_url("4"): pages.assessments_page([pages.assessment_row("HW", "Graphs")]),
    })
    return TestClient(create_app(StubTrackerApp(store, fetcher)))


def test_health_and_tasks(client, store):
    service.update_meta(store, {"origin": ORIGIN})
    assert client.get("/api/health").json()["origin"] == ORIGIN
    assert client.get("/api/tasks").json() == {"db_schedules": [], "active_timers": []}


def test_refresh_then_dashboard(client):
    response = client.post("/api/assessments/refresh", json={"origin": ORIGIN, "course_instance_ids": ["4"]})
    body = response.json()
    assert response.status_code == 200
    assert body["ok"] is True
    assert body["refresh_summary"]["succeeded"] == 1

    dashboard = client.get("/api/assessments/dashboard").json()
    assert dashboard["ok"] is True
    assert dashboard["data"]["stats"]["upcoming"] == 1
    assert dashboard["data"]["upcoming"][0]["title"] == "Graphs"
    assert dashboard["data"]["upcoming"][0]["group"] is None
    assert dashboard["data"]["meta"]["last_refresh_summary"]["succeeded"] == 1


def test_home_courses_uses_sender_header(client):
    response = client.post(
        "/api/assessments/home-courses",
        json={"course_instance_ids": ["4"]},
        headers={"X-Sender-Url": f"{ORIGIN}/"},
    )
    assert response.json()["refresh_summary"]["origin"] == ORIGIN


def test_errors_are_payloads(client):
    response = client.post("/api/assessments/refresh")
    assert response.status_code == 200
    assert response.json()["ok"] is False

    body = client.post("/api/assessments/messages", json={"type": "NOPE"}).json()
    assert body["ok"] is False
    assert body["error"] == "Unsupported message type: NOPE"
    assert body["data"] is None
