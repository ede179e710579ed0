"""
HTTP API for the assessment tracker. Mounted at /api/assessments/.
Each route forwards to the message handler so HTTP callers get the same
{ok, ...} answers as message callers.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict

from .messages import GET_DASHBOARD, HOME_COURSES_DISCOVERED, REFRESH_REQUEST


class RefreshPayload(BaseModel):
    """Body of POST /refresh and POST /home-courses."""

    origin: Optional[str] = None
    course_instance_ids: Optional[List[Any]] = None


class MessageBody(BaseModel):
    """Raw message for POST /messages."""

    type: str
    payload: Optional[Dict[str, Any]] = None


class RefreshErrorResponse(BaseModel):
    course_instance_id: Optional[str] = None
    error: Optional[str] = None


class RefreshSummaryResponse(BaseModel):
    """Pydantic view of the summary persisted as meta.last_refresh_summary."""

    origin: Optional[str] = None
    mode: Optional[str] = None
    requested_course_count: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[RefreshErrorResponse] = []
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class MetaResponse(BaseModel):
    created_at: Optional[str] = None
    origin: Optional[str] = None
    course_instance_ids: List[str] = []
    last_discovery_at: Optional[str] = None
    last_refresh_at: Optional[str] = None
    last_error: Optional[str] = None
    last_refresh_summary: Optional[RefreshSummaryResponse] = None
    updated_at: Optional[str] = None
    version: int = 0


class UpcomingRowResponse(BaseModel):
    """One open assessment on the dashboard."""

    course_instance_id: Optional[str] = None
    course_label: Optional[str] = None
    group: Optional[str] = None
    badge: Optional[str] = None
    title: str = "Untitled"
    href: Optional[str] = None
    due_at: Optional[str] = None
    availability_text: Optional[str] = None
    score: Optional[str] = None
    status: str = "unknown"
    captured_at: Optional[str] = None


class DashboardStats(BaseModel):
    course_snapshots: int = 0
    assessments: int = 0
    upcoming: int = 0


class DashboardResponse(BaseModel):
    meta: Optional[MetaResponse] = None
    stats: DashboardStats = DashboardStats()
    upcoming: List[UpcomingRowResponse] = []


class TrackerResponse(BaseModel):
    """Envelope for every tracker answer."""

    model_config = ConfigDict(from_attributes=True)

    ok: bool
    error: Optional[str] = None
    data: Optional[DashboardResponse] = None
    refresh_summary: Optional[RefreshSummaryResponse] = None


def get_router(tracker_app) -> APIRouter:
    """Return router for the tracker; mounted with prefix /api/assessments."""
    router = APIRouter(tags=["Assessments"])

    def _sender(request: Request) -> Optional[str]:
        return request.headers.get("x-sender-url") or request.headers.get("origin")

    @router.get("/dashboard", response_model=TrackerResponse)
    async def get_dashboard() -> Dict[str, Any]:
        """Upcoming, not-yet-closed assessments across all stored courses."""
        return await tracker_app.dispatch({"type": GET_DASHBOARD})

    @router.post("/refresh", response_model=TrackerResponse)
    async def refresh(request: Request, body: Optional[RefreshPayload] = None) -> Dict[str, Any]:
        payload = body.model_dump(exclude_none=True) if body else {}
        return await tracker_app.dispatch({"type": REFRESH_REQUEST, "payload": payload}, sender_url=_sender(request))

    @router.post("/home-courses", response_model=TrackerResponse)
    async def home_courses(request: Request, body: RefreshPayload) -> Dict[str, Any]:
        payload = body.model_dump(exclude_none=True)
        return await tracker_app.dispatch({"type": HOME_COURSES_DISCOVERED, "payload": payload}, sender_url=_sender(request))

    @router.post("/messages", response_model=TrackerResponse)
    async def messages(request: Request, body: MessageBody) -> Dict[str, Any]:
        return await tracker_app.dispatch(body.model_dump(), sender_url=_sender(request))

    return router
