"""
Access-details popover: the availability cell carries a button whose
data-bs-content attribute is an entity-encoded HTML table
(header row, then credit | start | end rows).
"""
import re
from typing import Any, List, Optional

from bs4 import BeautifulSoup

from .records import AccessWindow
from .timestamps import parse_prairielearn_timestamp

POPOVER_BUTTON_SELECTOR = 'button[data-bs-toggle="popover"]'
POPOVER_CONTENT_ATTR = "data-bs-content"

_WS_RE = re.compile(r"\s+")


def normalize_whitespace(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _WS_RE.sub(" ", value).strip()


def decode_html_entities(value: Any) -> str:
    """Text content of value parsed as HTML: entities decoded, markup dropped."""
    if not isinstance(value, str) or not value:
        return ""
    return BeautifulSoup(value, "html.parser").get_text()


def parse_popover_content(raw: Optional[str]) -> List[AccessWindow]:
    decoded = decode_html_entities(raw)
    if not decoded:
        return []

    fragment = BeautifulSoup(decoded, "html.parser")
    rows = fragment.find_all("tr")[1:]  # first row is the header

    windows = []
    for row in rows:
        values = [normalize_whitespace(cell.get_text()) for cell in row.find_all("td")]
        credit = values[0] if len(values) > 0 and values[0] else None
        start = values[1] if len(values) > 1 and values[1] else None
        end = values[2] if len(values) > 2 and values[2] else None
        windows.append(
            AccessWindow(
                credit=credit,
                start=start,
                end=end,
                start_iso=parse_prairielearn_timestamp(start),
                end_iso=parse_prairielearn_timestamp(end),
            )
        )
    return windows


def parse_popover_access_details(button) -> List[AccessWindow]:
    """Access windows from a popover button element (bs4 Tag) or [] when absent."""
    if button is None:
        return []
    raw = button.get(POPOVER_CONTENT_ATTR)
    if not raw:
        return []
    return parse_popover_content(raw)
