"""
HTTP API for the tracker. create_app() builds the FastAPI app around a running
TrackerApp; run_api_server() serves it with uvicorn from a daemon thread when
api.enabled is set. Assessment routes live under /api/assessments, interactive
docs under /docs.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI

logger = logging.getLogger(__name__)


def _iso_utc(value: Optional[datetime]) -> Optional[str]:
    # schedule columns hold naive UTC
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def create_app(tracker_app: Any) -> FastAPI:
    from pltracker.assessments import service
    from pltracker.assessments.api import get_router
    from pltracker.core.models import get_all_task_schedules

    app = FastAPI(
        title="PrairieLearn Tracker API",
        description="Assessment dashboard, refreshes and the refresh schedule",
    )

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        meta = service.get_meta(tracker_app.store) or {}
        return {
            "ok": True,
            "origin": meta.get("origin"),
            "last_refresh_at": meta.get("last_refresh_at"),
            "last_error": meta.get("last_error"),
        }

    @app.get("/api/tasks")
    def tasks() -> Dict[str, Any]:
        """Stored schedules plus the timers armed in this process."""
        schedules = []
        for row in get_all_task_schedules():
            row["next_run_at"] = _iso_utc(row["next_run_at"])
            row["last_run_at"] = _iso_utc(row["last_run_at"])
            schedules.append(row)
        timers = [
            {"name": timer["name"], "next_run_at": _iso_utc(timer["next_run_at"])}
            for timer in tracker_app.task_manager.get_active_timers()
        ]
        return {"db_schedules": schedules, "active_timers": timers}

    app.include_router(get_router(tracker_app), prefix="/api/assessments")
    return app


def run_api_server(tracker_app: Any) -> Optional[threading.Thread]:
    """Serve the API on api.host:api.port in a daemon thread; None when api.enabled is off."""
    api_config = tracker_app.config.data.get("api") or {}
    if not api_config.get("enabled", False):
        logger.info(f"API server disabled; set api.enabled in {tracker_app.config.config_file} to serve it")
        return None

    import uvicorn

    host = api_config.get("host", "127.0.0.1")
    port = int(api_config.get("port", 8765))
    fastapi_app = create_app(tracker_app)

    def serve():
        try:
            logger.info(f"API server listening at http://{host}:{port} (docs at /docs)")
            uvicorn.run(fastapi_app, host=host, port=port)
        except Exception as e:
            logger.exception(f"API server stopped: {e}")

    thread = threading.Thread(target=serve, name="tracker-api", daemon=True)
    thread.start()
    return thread
