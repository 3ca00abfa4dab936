"""
Page Drivers
============
The session never touches a browser directly: every page operation goes
through a ``PageDriver``.

Implementations:
    - ``PlaywrightDriver`` — headless Chromium via async Playwright
    - ``StaticDriver``     — requests + BeautifulSoup, for server-rendered shops

Errors are translated at this boundary:
    - a page that cannot be loaded or evaluated → ``NavigationError``
    - a browser that is gone (target/browser closed) → ``DriverFatalError``

Teardown is two-phase: ``close()`` releases resources politely and the
caller bounds it with a timeout; ``kill()`` reclaims them unconditionally.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError
from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .errors import DriverFatalError, NavigationError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

# Named DOM predicates understood by ``evaluate``
PREDICATES: Dict[str, str] = {
    "has_lazy_images": """
        () => !!document.querySelector('img[loading="lazy"]')
              || !!document.querySelector('[data-lazy]')
              || !!document.querySelector('img[data-src]')
    """,
    "has_infinite_scroll": """
        () => !!document.querySelector('[class*="infinite"], [data-infinite-scroll]')
    """,
}

_BLOCKED_RESOURCE_TYPES = frozenset(["image", "media", "font", "stylesheet"])

_FATAL_MARKERS = (
    "target page, context or browser has been closed",
    "browser has been closed",
    "target closed",
    "browser has disconnected",
    "connection closed",
)


def _is_fatal(exc: Exception) -> bool:
    if 'TargetClosedError' in type(exc).__name__:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _FATAL_MARKERS)


DriverFactory = Callable[[], Awaitable["PageDriver"]]


class PageDriver(ABC):
    """Contract between a crawl session and whatever renders pages.

    A driver instance belongs to exactly one session and is never used by two
    operations at once.
    """

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int) -> str:
        """Load *url* and return the resolved (post-redirect) URL."""
        ...

    @abstractmethod
    async def extract_links(self, selectors: Optional[List[str]] = None) -> List[str]:
        """Absolute hrefs found on the current page."""
        ...

    @abstractmethod
    async def evaluate(self, predicate: str) -> bool:
        """Evaluate a named predicate from ``PREDICATES`` on the current page."""
        ...

    @abstractmethod
    async def scroll_to_bottom(self, max_attempts: int = 10) -> int:
        """Scroll until the page height stops growing; returns scrolls done."""
        ...

    @abstractmethod
    async def click_if_present(self, selectors: List[str]) -> bool:
        """Click the first visible element matching any selector."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def kill(self) -> None:
        """Forcefully reclaim resources; defaults to ``close()``."""
        await self.close()


# ---------------------------------------------------------------------------
# Playwright
# ---------------------------------------------------------------------------

class PlaywrightDriver(PageDriver):
    """
    Chromium page driven through async Playwright.

    Usage::

        driver = PlaywrightDriver(headless=True)
        await driver.start()
        resolved = await driver.navigate("https://shop.example.com/", 30000)
        links = await driver.extract_links()
        await driver.close()
    """

    def __init__(
        self,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        block_resources: bool = True,
        wait_until: str = "domcontentloaded",
        scroll_pause_s: float = 1.5,
        click_pause_s: float = 2.0,
        action_timeout_ms: int = 5000,
    ):
        self.headless = headless
        self.user_agent = user_agent
        self.block_resources = block_resources
        self.wait_until = wait_until
        self.scroll_pause_s = scroll_pause_s
        self.click_pause_s = click_pause_s
        self.action_timeout_ms = action_timeout_ms

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def start(self) -> "PlaywrightDriver":
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=[
                    '--no-sandbox',
                    '--disable-setuid-sandbox',
                    '--disable-dev-shm-usage',
                    '--disable-gpu',
                    '--window-size=1920,1080',
                ],
            )
            self._context = await self._browser.new_context(
                user_agent=self.user_agent,
                viewport={'width': 1920, 'height': 1080},
                locale='en-US',
            )
            if self.block_resources:
                await self._context.route("**/*", self._route_handler)
            self._page = await self._context.new_page()
        except PlaywrightError as e:
            await self.kill()
            raise DriverFatalError(f"Browser launch failed: {e}") from e
        logger.info(f"[DRIVER] Playwright browser started (headless={self.headless})")
        return self

    async def _route_handler(self, route) -> None:
        if route.request.resource_type in _BLOCKED_RESOURCE_TYPES:
            await route.abort()
            return
        await route.continue_()

    def _require_page(self) -> Page:
        if self._page is None or self._page.is_closed():
            raise DriverFatalError("Browser page is not available")
        return self._page

    def _translate(self, exc: Exception, url: str) -> Exception:
        if _is_fatal(exc):
            return DriverFatalError(str(exc))
        if isinstance(exc, PlaywrightTimeout):
            return NavigationError(url, "timeout")
        return NavigationError(url, str(exc).splitlines()[0] if str(exc) else type(exc).__name__)

    async def navigate(self, url: str, timeout_ms: int) -> str:
        page = self._require_page()
        try:
            response = await page.goto(url, wait_until=self.wait_until, timeout=timeout_ms)
        except PlaywrightError as e:
            raise self._translate(e, url) from e
        if response is not None and response.status >= 400:
            raise NavigationError(url, f"HTTP {response.status}")
        return page.url

    async def extract_links(self, selectors: Optional[List[str]] = None) -> List[str]:
        page = self._require_page()
        try:
            return await page.evaluate(
                """
                (sels) => {
                    const seen = new Set();
                    const result = [];
                    for (const sel of sels) {
                        try {
                            document.querySelectorAll(sel).forEach(el => {
                                const href = el.href;
                                if (href && href.startsWith('http') && !seen.has(href)) {
                                    seen.add(href);
                                    result.push(href);
                                }
                            });
                        } catch (e) {}
                    }
                    return result;
                }
                """,
                selectors or ['a[href]'],
            )
        except PlaywrightError as e:
            raise self._translate(e, page.url) from e

    async def evaluate(self, predicate: str) -> bool:
        script = PREDICATES.get(predicate)
        if script is None:
            raise ValueError(f"Unknown predicate: {predicate}")
        page = self._require_page()
        try:
            return bool(await page.evaluate(script))
        except PlaywrightError as e:
            raise self._translate(e, page.url) from e

    async def scroll_to_bottom(self, max_attempts: int = 10) -> int:
        page = self._require_page()
        scrolls = 0
        try:
            previous = await page.evaluate("document.body.scrollHeight")
            while scrolls < max_attempts:
                await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
                scrolls += 1
                await asyncio.sleep(self.scroll_pause_s)
                height = await page.evaluate("document.body.scrollHeight")
                if height == previous:
                    break
                previous = height
        except PlaywrightError as e:
            raise self._translate(e, page.url) from e
        logger.debug(f"[DRIVER] Scrolled {scrolls}x on {page.url[:70]}")
        return scrolls

    async def click_if_present(self, selectors: List[str]) -> bool:
        page = self._require_page()
        for selector in selectors:
            try:
                button = page.locator(selector).first
                if await button.count() == 0 or not await button.is_visible():
                    continue
                await button.scroll_into_view_if_needed(timeout=self.action_timeout_ms)
                await button.click(timeout=self.action_timeout_ms)
            except PlaywrightTimeout:
                continue
            except PlaywrightError as e:
                if _is_fatal(e):
                    raise DriverFatalError(str(e)) from e
                logger.debug(f"[DRIVER] Click on {selector!r} failed: {e}")
                continue
            await asyncio.sleep(self.click_pause_s)
            return True
        return False

    async def close(self) -> None:
        if self._context:
            try:
                for p in self._context.pages:
                    await p.close()
                await self._context.close()
            except PlaywrightError as e:
                logger.debug(f"[DRIVER] Context close: {e}")
            self._context = None
            self._page = None
        if self._browser:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"[DRIVER] Browser close: {e}")
            self._browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

    async def kill(self) -> None:
        # Stopping Playwright terminates its driver process and every
        # browser it launched, whatever state they are in.
        self._context = None
        self._page = None
        self._browser = None
        if self._playwright:
            playwright, self._playwright = self._playwright, None
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"[DRIVER] Forced teardown error: {e}")


# ---------------------------------------------------------------------------
# Static (requests + BeautifulSoup)
# ---------------------------------------------------------------------------

class StaticDriver(PageDriver):
    """HTML-only driver: no JavaScript, no scrolling, no clicking."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, parser: str = "lxml"):
        self.parser = parser
        self._session = requests.Session()
        self._session.headers.update({
            'User-Agent': user_agent,
            'Accept': 'text/html,application/xhtml+xml',
            'Accept-Language': 'en-US,en;q=0.9',
        })
        self._url: str = ""
        self._soup: Optional[BeautifulSoup] = None
        self._closed = False

    async def start(self) -> "StaticDriver":
        return self

    def _require_soup(self) -> BeautifulSoup:
        if self._closed:
            raise DriverFatalError("Static driver is closed")
        if self._soup is None:
            raise NavigationError(self._url or "", "no page loaded")
        return self._soup

    async def navigate(self, url: str, timeout_ms: int) -> str:
        if self._closed:
            raise DriverFatalError("Static driver is closed")
        loop = asyncio.get_running_loop()

        def _fetch():
            return self._session.get(url, timeout=timeout_ms / 1000)

        try:
            response = await loop.run_in_executor(None, _fetch)
        except requests.RequestException as e:
            raise NavigationError(url, type(e).__name__) from e
        if response.status_code >= 400:
            raise NavigationError(url, f"HTTP {response.status_code}")
        self._url = response.url
        self._soup = BeautifulSoup(response.text, self.parser)
        return self._url

    async def extract_links(self, selectors: Optional[List[str]] = None) -> List[str]:
        soup = self._require_soup()
        links: List[str] = []
        seen = set()
        for selector in selectors or ['a[href]']:
            try:
                elements = soup.select(selector)
            except SelectorSyntaxError:
                # CSS the soupsieve engine does not understand (e.g. :has-text)
                continue
            for el in elements:
                href = el.get('href')
                if not href:
                    continue
                absolute = urljoin(self._url, href)
                if absolute.startswith(('http://', 'https://')) and absolute not in seen:
                    seen.add(absolute)
                    links.append(absolute)
        return links

    async def evaluate(self, predicate: str) -> bool:
        soup = self._require_soup()
        if predicate == "has_lazy_images":
            return bool(soup.select_one('img[loading="lazy"], [data-lazy], img[data-src]'))
        if predicate == "has_infinite_scroll":
            return bool(soup.select_one('[data-infinite-scroll]') or soup.find(class_=re.compile('infinite')))
        raise ValueError(f"Unknown predicate: {predicate}")

    async def scroll_to_bottom(self, max_attempts: int = 10) -> int:
        return 0

    async def click_if_present(self, selectors: List[str]) -> bool:
        return False

    async def close(self) -> None:
        self._closed = True
        self._soup = None
        self._session.close()


def make_driver_factory(
    static: bool = False,
    headless: bool = True,
    user_agent: str = DEFAULT_USER_AGENT,
) -> DriverFactory:
    """Return an async factory producing one fresh driver per session."""

    async def _factory() -> PageDriver:
        if static:
            return await StaticDriver(user_agent=user_agent).start()
        return await PlaywrightDriver(headless=headless, user_agent=user_agent).start()

    return _factory
