"""
Enrolled-course discovery from the PrairieLearn home page. The home page embeds
its "HomeCards" component props as JSON; the student's course instance ids are
under json.studentCourses[*].course_instance.id.
"""
import json
import logging
from typing import List
from urllib.parse import urljoin

from .errors import DiscoveryError
from .fetcher import Fetcher
from .identifiers import sanitize_course_instance_ids
from .parser import to_soup

logger = logging.getLogger(__name__)

HOME_PROPS_SELECTOR = (
    'script[type="application/json"][data-component="HomeCards"][data-component-props="true"]'
)
HOME_PATHS = ("/", "/pl/")


def extract_course_instance_ids_from_home_document(doc) -> List[str]:
    script = to_soup(doc).select_one(HOME_PROPS_SELECTOR)
    text = script.string if script is not None else None
    if not text:
        return []

    try:
        parsed = json.loads(text)
    except ValueError:
        return []

    payload = parsed.get("json") if isinstance(parsed, dict) else None
    courses = payload.get("studentCourses") if isinstance(payload, dict) else None
    if not isinstance(courses, list):
        return []

    ids = []
    for course in courses:
        instance = course.get("course_instance") if isinstance(course, dict) else None
        ids.append(instance.get("id") if isinstance(instance, dict) else None)
    return sanitize_course_instance_ids(ids)


async def fetch_course_instance_ids_from_home(fetcher: Fetcher, origin: str, raise_on_empty: bool = True) -> List[str]:
    """Fetch "/" then "/pl/" and return the first non-empty id list."""
    for path in HOME_PATHS:
        url = urljoin(origin + "/", path)
        response = await fetcher.fetch(url)
        if not response.ok:
            logger.debug(f"Home page {url} returned {response.status}")
            continue
        ids = extract_course_instance_ids_from_home_document(response.text)
        if ids:
            logger.info(f"Discovered {len(ids)} course instance(s) from {url}")
            return ids

    if raise_on_empty:
        raise DiscoveryError(
            "Could not parse enrolled courses from PrairieLearn home page. The page format may have changed."
        )
    return []
