"""
Page fetchers. The shared pipeline only needs "GET this URL with the user's
credentials"; where that request runs (a background requests.Session or a
browser tab's own fetch()) is the fetcher's business.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import namedtuple
from typing import Any, Dict, Optional

import requests

FetchResponse = namedtuple("FetchResponse", ["url", "status", "ok", "text"])

DEFAULT_TIMEOUT = 30


class Fetcher(ABC):
    """Fetch a page with credentials included."""

    @abstractmethod
    async def fetch(self, url: str) -> FetchResponse:
        pass

    async def document_html(self) -> Optional[str]:
        """HTML of the document the fetcher is attached to, if any (page context only)."""
        return None

    def close(self) -> None:
        pass


class RequestsFetcher(Fetcher):
    """Direct fetch from a requests.Session carrying the configured cookies."""

    def __init__(
        self,
        cookies: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        self.timeout = timeout
        self.session = session or requests.Session()
        if cookies:
            self.session.cookies.update({k: str(v) for k, v in cookies.items() if v is not None})
        if user_agent:
            self.session.headers["User-Agent"] = user_agent

    @classmethod
    def from_config(cls, tracker_config: Dict[str, Any]) -> "RequestsFetcher":
        return cls(
            cookies=tracker_config.get("cookies") or {},
            timeout=float(tracker_config.get("request_timeout") or DEFAULT_TIMEOUT),
            user_agent=tracker_config.get("user_agent"),
        )

    def _get(self, url: str) -> FetchResponse:
        self.logger.debug(f"GET {url}")
        response = self.session.get(url, timeout=self.timeout)
        return FetchResponse(url=response.url, status=response.status_code, ok=response.ok, text=response.text)

    async def fetch(self, url: str) -> FetchResponse:
        return await asyncio.to_thread(self._get, url)

    def close(self) -> None:
        self.session.close()
