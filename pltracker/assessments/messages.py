"""
Request/response message handling between the tracker and its callers
(home page integration, popup, CLI, HTTP API). Every answer is a dict with
"ok"; failures never escape as exceptions.
"""
import logging
from typing import Any, Dict, Optional

from pltracker.core.store import KeyValueStore

from .aggregator import build_dashboard_data
from .errors import to_error_message
from .orchestrator import RefreshOrchestrator

logger = logging.getLogger(__name__)

GET_DASHBOARD = "GET_DASHBOARD"
REFRESH_REQUEST = "REFRESH_REQUEST"
HOME_COURSES_DISCOVERED = "HOME_COURSES_DISCOVERED"


async def handle_message(
    message: Any,
    store: KeyValueStore,
    orchestrator: RefreshOrchestrator,
    sender_url: Optional[str] = None,
) -> Dict[str, Any]:
    try:
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            return {"ok": False, "error": "Invalid message payload."}

        message_type = message["type"]
        payload = message.get("payload")
        if payload is not None and not isinstance(payload, dict):
            return {"ok": False, "error": "Invalid message payload."}

        if message_type == HOME_COURSES_DISCOVERED:
            summary = await orchestrator.handle_home_courses_discovered(payload, sender_url=sender_url)
            return {"ok": True, "refresh_summary": summary, "data": build_dashboard_data(store)}

        if message_type == REFRESH_REQUEST:
            summary = await orchestrator.handle_refresh_request(payload, sender_url=sender_url)
            return {"ok": True, "refresh_summary": summary, "data": build_dashboard_data(store)}

        if message_type == GET_DASHBOARD:
            return {"ok": True, "data": build_dashboard_data(store)}

        return {"ok": False, "error": f"Unsupported message type: {message_type}"}
    except Exception as e:
        logger.exception(f"Message {message.get('type') if isinstance(message, dict) else message!r} failed: {e}")
        return {"ok": False, "error": to_error_message(e)}
