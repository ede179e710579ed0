"""
Course instance ids and the storage keys derived from them.
"""
import re
from typing import Any, List

META_KEY = "pl.meta"
COURSE_KEY_PREFIX = "pl.course."

_ID_RE = re.compile(r"[0-9]+")


def sanitize_course_instance_ids(raw_ids: Any) -> List[str]:
    """Distinct numeric-string ids, first occurrence order. Anything not a list/tuple/set gives []."""
    if not isinstance(raw_ids, (list, tuple, set, frozenset)):
        return []
    unique = {}
    for raw in raw_ids:
        normalized = str("" if raw is None else raw).strip()
        if _ID_RE.fullmatch(normalized):
            unique.setdefault(normalized, None)
    return list(unique)


def is_course_instance_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_ID_RE.fullmatch(value))


def course_storage_key(course_instance_id: str) -> str:
    return f"{COURSE_KEY_PREFIX}{course_instance_id}"
