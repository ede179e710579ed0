"""
Browser tab capability used by the page-context strategy: query, create, wait
for load, message and close tabs. PlaywrightTabProvider drives a persistent
Chromium profile so tabs carry the user's PrairieLearn login.
"""
import logging
from abc import ABC, abstractmethod
from collections import namedtuple
from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout
from playwright.async_api import async_playwright

from .errors import TabError, TabLoadTimeout
from .origin import origin_from_url
from .page_context import PageContextAgent, PageFetcher
from .pipeline import REFRESH_CONCURRENCY

Tab = namedtuple("Tab", ["tab_id", "url"])
# created=True means the tab was opened for this refresh and must be closed afterwards.
TabSession = namedtuple("TabSession", ["tab_id", "created"])

EXISTING_TAB_TIMEOUT_MS = 10000
NEW_TAB_TIMEOUT_MS = 20000


class TabProvider(ABC):

    @abstractmethod
    async def query_tabs(self) -> List[Tab]:
        pass

    @abstractmethod
    async def create_tab(self, url: str) -> Tab:
        pass

    @abstractmethod
    async def wait_for_load(self, tab_id: int, timeout_ms: int) -> None:
        """Return once the tab finished loading; TabLoadTimeout / TabError otherwise."""
        pass

    @abstractmethod
    async def send_message(self, tab_id: int, message: Dict[str, Any]) -> Any:
        pass

    @abstractmethod
    async def close_tab(self, tab_id: int) -> None:
        pass

    async def stop(self) -> None:
        """Release the browser, if one was started."""
        pass


async def ensure_tab(
    provider: TabProvider,
    origin: str,
    existing_timeout_ms: int = EXISTING_TAB_TIMEOUT_MS,
    new_timeout_ms: int = NEW_TAB_TIMEOUT_MS,
) -> TabSession:
    """Reuse a loaded tab at origin, or open one at origin + "/"."""
    for tab in await provider.query_tabs():
        if tab.tab_id is None or not isinstance(tab.url, str):
            continue
        if origin_from_url(tab.url) == origin:
            await provider.wait_for_load(tab.tab_id, existing_timeout_ms)
            return TabSession(tab.tab_id, False)

    created = await provider.create_tab(f"{origin}/")
    if created is None or created.tab_id is None:
        raise TabError("Failed to create PrairieLearn tab for refresh.")
    await provider.wait_for_load(created.tab_id, new_timeout_ms)
    return TabSession(created.tab_id, True)


class PlaywrightTabProvider(TabProvider):
    """Tabs are pages of one persistent Chromium context, started on first use."""

    def __init__(self, profile_path: str, headless: bool = True, concurrency: int = REFRESH_CONCURRENCY):
        self.profile_path = str(Path(profile_path).expanduser())
        self.headless = headless
        self.concurrency = concurrency
        self.logger = logging.getLogger(self.__class__.__name__)
        self._playwright = None
        self._context = None
        self._pages: Dict[int, Any] = {}
        self._next_id = 1

    @classmethod
    def from_config(cls, browser_config: Dict[str, Any], concurrency: int = REFRESH_CONCURRENCY) -> "PlaywrightTabProvider":
        return cls(
            profile_path=browser_config.get("profile_path") or "~/.pltracker/profile",
            headless=browser_config.get("headless", True),
            concurrency=concurrency,
        )

    async def start(self) -> None:
        if self._context is not None:
            return
        Path(self.profile_path).mkdir(parents=True, exist_ok=True)
        self.logger.info(f"Starting browser (profile={self.profile_path}, headless={self.headless})")
        self._playwright = await async_playwright().start()
        try:
            self._context = await self._playwright.chromium.launch_persistent_context(
                user_data_dir=self.profile_path,
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled"],
            )
        except PlaywrightError as e:
            await self._playwright.stop()
            self._playwright = None
            raise TabError(f"Failed to launch browser: {e}") from e

    async def stop(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as e:
                self.logger.warning(f"Error closing browser context: {e}")
        if self._playwright is not None:
            await self._playwright.stop()
        self._context = None
        self._playwright = None
        self._pages.clear()

    def _register(self, page) -> int:
        for tab_id, known in self._pages.items():
            if known is page:
                return tab_id
        tab_id = self._next_id
        self._next_id += 1
        self._pages[tab_id] = page
        return tab_id

    def _page(self, tab_id: int):
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            self._pages.pop(tab_id, None)
            raise TabError("PrairieLearn tab closed before refresh could start.")
        return page

    async def query_tabs(self) -> List[Tab]:
        await self.start()
        return [Tab(self._register(page), page.url) for page in self._context.pages if not page.is_closed()]

    async def create_tab(self, url: str) -> Tab:
        await self.start()
        try:
            page = await self._context.new_page()
            await page.goto(url, wait_until="commit")
        except PlaywrightError as e:
            raise TabError(f"Failed to create PrairieLearn tab for refresh: {e}") from e
        return Tab(self._register(page), page.url)

    async def wait_for_load(self, tab_id: int, timeout_ms: int) -> None:
        page = self._page(tab_id)
        try:
            await page.wait_for_load_state("load", timeout=timeout_ms)
        except PlaywrightTimeout as e:
            raise TabLoadTimeout("Timed out waiting for PrairieLearn tab to load.") from e
        except PlaywrightError as e:
            raise TabError("PrairieLearn tab closed before refresh could start.") from e

    async def send_message(self, tab_id: int, message: Dict[str, Any]) -> Any:
        page = self._page(tab_id)
        agent = PageContextAgent(PageFetcher(page), location_url=page.url, concurrency=self.concurrency)
        response = await agent.handle_message(message)
        if response is None:
            raise TabError("Could not establish connection. Receiving end does not exist.")
        return response

    async def close_tab(self, tab_id: int) -> None:
        page = self._pages.pop(tab_id, None)
        if page is not None and not page.is_closed():
            await page.close()
