"""
PrairieLearn origin validation and URL helpers.
"""
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit

ROOT_DOMAIN = "prairielearn.com"


def normalize_origin(raw: Any) -> Optional[str]:
    """Return "https://host[:port]" for a PrairieLearn URL, or None. Never raises."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parts = urlsplit(raw.strip())
        host = (parts.hostname or "").lower()
        port = parts.port
    except ValueError:
        return None
    if parts.scheme.lower() != "https" or not host:
        return None
    if host != ROOT_DOMAIN and not host.endswith("." + ROOT_DOMAIN):
        return None
    if port is not None and port != 443:
        return f"https://{host}:{port}"
    return f"https://{host}"


def origin_from_url(url: Any) -> Optional[str]:
    """Origin of an arbitrary page URL (e.g. the caller's location), validated."""
    return normalize_origin(url)


def to_absolute_url(origin: Any, href: Any) -> Optional[str]:
    """Resolve href against origin. The href is returned unchanged when origin is not valid."""
    if not isinstance(href, str) or not href:
        return None
    normalized = normalize_origin(origin)
    if not normalized:
        return href
    try:
        return urljoin(normalized + "/", href)
    except ValueError:
        return href
