"""
Fetch + parse pipeline shared by the direct and the page-context strategies.
Both call run_refresh_attempt() with their own Fetcher, so parsing and status
classification are identical whichever side did the network request.
"""
import logging
from datetime import datetime, timezone
from typing import List, Sequence
from urllib.parse import quote, urljoin

from pltracker.core.concurrency import map_with_concurrency

from .errors import FetchError, ParseError, to_error_message
from .fetcher import Fetcher
from .parser import ParseContext, parse_assessments_document
from .records import CourseSnapshot, RefreshAttempt, RefreshError
from .timestamps import to_iso

logger = logging.getLogger(__name__)

REFRESH_CONCURRENCY = 3
TABLE_MISSING_MESSAGE = "Assessments table was not found. You may be logged out or the page changed."


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def assessments_url(origin: str, course_instance_id: str) -> str:
    return urljoin(origin + "/", f"/pl/course_instance/{quote(str(course_instance_id), safe='')}/assessments")


async def fetch_and_parse_assessments(fetcher: Fetcher, origin: str, course_instance_id: str) -> CourseSnapshot:
    url = assessments_url(origin, course_instance_id)
    response = await fetcher.fetch(url)
    if not response.ok:
        raise FetchError(response.status)

    snapshot = parse_assessments_document(
        response.text,
        ParseContext(origin=origin, assessments_url=url, course_instance_id=course_instance_id),
    )
    if snapshot is None:
        raise ParseError(TABLE_MISSING_MESSAGE)
    return snapshot


async def run_refresh_attempt(
    fetcher: Fetcher,
    origin: str,
    course_instance_ids: Sequence[str],
    mode: str,
    concurrency: int = REFRESH_CONCURRENCY,
) -> RefreshAttempt:
    started_at = now_iso()

    async def refresh_one(course_instance_id: str, _index: int):
        try:
            return await fetch_and_parse_assessments(fetcher, origin, course_instance_id), None
        except Exception as e:
            logger.warning(f"[{mode}] course {course_instance_id} failed: {e}")
            return None, RefreshError(course_instance_id, to_error_message(e))

    results = await map_with_concurrency(list(course_instance_ids), concurrency, refresh_one)

    snapshots: List[CourseSnapshot] = [snapshot for snapshot, _ in results if snapshot is not None]
    errors: List[RefreshError] = [error for _, error in results if error is not None]
    logger.info(f"[{mode}] refreshed {len(snapshots)}/{len(results)} course(s) at {origin}")

    return RefreshAttempt(
        mode=mode,
        origin=origin,
        requested_course_count=len(results),
        succeeded=len(snapshots),
        failed=len(errors),
        snapshots=snapshots,
        errors=errors,
        started_at=started_at,
        finished_at=now_iso(),
    )
