"""
Page-context side of a refresh: runs inside a PrairieLearn browser tab, so
requests go out through the tab's own fetch() with the tab's cookies and
browser fingerprint instead of from the background session.
"""
import logging
from typing import Any, Dict, Optional

from .discovery import extract_course_instance_ids_from_home_document, fetch_course_instance_ids_from_home
from .errors import ConfigurationError, to_error_message
from .fetcher import FetchResponse, Fetcher
from .identifiers import sanitize_course_instance_ids
from .origin import normalize_origin, origin_from_url
from .pipeline import REFRESH_CONCURRENCY, run_refresh_attempt
from .records import MODE_PAGE_CONTEXT, attempt_to_dict

PAGE_CONTEXT_REFRESH_REQUEST = "PAGE_CONTEXT_REFRESH_REQUEST"

_FETCH_SCRIPT = """
async (url) => {
    const response = await fetch(url, { credentials: 'include' });
    return { url: response.url, status: response.status, ok: response.ok, text: await response.text() };
}
"""


class PageFetcher(Fetcher):
    """Fetcher that runs fetch() inside a Playwright page."""

    def __init__(self, page):
        self.page = page

    async def fetch(self, url: str) -> FetchResponse:
        result = await self.page.evaluate(_FETCH_SCRIPT, url)
        return FetchResponse(
            url=result.get("url") or url,
            status=int(result.get("status") or 0),
            ok=bool(result.get("ok")),
            text=result.get("text") or "",
        )

    async def document_html(self) -> Optional[str]:
        return await self.page.content()

    @property
    def location_url(self) -> Optional[str]:
        return self.page.url


class PageContextAgent:
    """Answers PAGE_CONTEXT_REFRESH_REQUEST messages for one tab."""

    def __init__(self, fetcher: Fetcher, location_url: Optional[str] = None, concurrency: int = REFRESH_CONCURRENCY):
        self.fetcher = fetcher
        self.location_url = location_url
        self.concurrency = concurrency
        self.logger = logging.getLogger(self.__class__.__name__)

    async def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """Response dict for a page refresh request; None for messages meant for someone else."""
        if not isinstance(message, dict) or message.get("type") != PAGE_CONTEXT_REFRESH_REQUEST:
            return None
        try:
            result = await self.run_refresh(message.get("payload") or {})
            return {"ok": True, **result}
        except Exception as e:
            self.logger.exception(f"Page-context refresh failed: {e}")
            return {"ok": False, "error": to_error_message(e)}

    async def run_refresh(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        origin = normalize_origin(payload.get("origin")) or origin_from_url(self.location_url)
        if not origin:
            raise ConfigurationError("Invalid PrairieLearn origin in page-context refresh.")

        course_instance_ids = sanitize_course_instance_ids(payload.get("course_instance_ids"))
        if not course_instance_ids:
            html = await self.fetcher.document_html()
            if html:
                course_instance_ids = extract_course_instance_ids_from_home_document(html)
        if not course_instance_ids:
            course_instance_ids = await fetch_course_instance_ids_from_home(self.fetcher, origin, raise_on_empty=False)
        if not course_instance_ids:
            raise ConfigurationError("No PrairieLearn course IDs found in page context.")

        attempt = await run_refresh_attempt(
            self.fetcher, origin, course_instance_ids, MODE_PAGE_CONTEXT, concurrency=self.concurrency
        )
        return attempt_to_dict(attempt)
