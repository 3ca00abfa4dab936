"""
Shared fixtures: a scripted page driver and helpers for session/registry tests.
"""

import asyncio
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from product_crawler.classifier import normalize
from product_crawler.driver import PageDriver
from product_crawler.errors import DriverFatalError, NavigationError
from product_crawler.events import EventSink
from product_crawler.result_store import ResultStore
from product_crawler.session import SessionOptions
from product_crawler.site_profiles import SiteProfile


class FakeDriver(PageDriver):
    """
    Scripted stand-in for a browser.

    Args:
        pages:     url → hrefs found on that page (relative or absolute)
        redirects: url → resolved URL returned by ``navigate``
        failures:  url → reason; ``navigate`` raises NavigationError
        fatal:     urls whose navigation raises DriverFatalError
        hang:      urls whose navigation never returns (until killed)
        lazy:      urls reporting lazy images (triggers a scroll)
        load_more: url → batches of hrefs revealed one per successful click
        hang_close: ``close()`` never returns
        broken:    url → message; ``extract_links`` raises RuntimeError there
    """

    def __init__(
        self,
        pages: Optional[Dict[str, List[str]]] = None,
        redirects: Optional[Dict[str, str]] = None,
        failures: Optional[Dict[str, str]] = None,
        fatal: Iterable[str] = (),
        hang: Iterable[str] = (),
        lazy: Iterable[str] = (),
        load_more: Optional[Dict[str, List[List[str]]]] = None,
        hang_close: bool = False,
        on_navigate: Optional[Callable[[str], None]] = None,
        broken: Optional[Dict[str, str]] = None,
    ):
        self.pages = {normalize(k): list(v) for k, v in (pages or {}).items()}
        self.redirects = {normalize(k): v for k, v in (redirects or {}).items()}
        self.failures = {normalize(k): v for k, v in (failures or {}).items()}
        self.fatal = {normalize(u) for u in fatal}
        self.hang = {normalize(u) for u in hang}
        self.lazy = {normalize(u) for u in lazy}
        self.load_more = {normalize(k): [list(b) for b in v] for k, v in (load_more or {}).items()}
        self.hang_close = hang_close
        self.on_navigate = on_navigate
        self.broken = {normalize(k): v for k, v in (broken or {}).items()}

        self.navigated: List[str] = []
        self.nav_timeouts: List[int] = []
        self.scrolls = 0
        self.clicks = 0
        self.closed = False
        self.killed = False
        self._killed_event = asyncio.Event()
        self._current: Optional[str] = None
        self._revealed: List[str] = []

    def _check_alive(self):
        if self.killed or self.closed:
            raise DriverFatalError("browser has been closed")

    async def navigate(self, url: str, timeout_ms: int) -> str:
        self._check_alive()
        self.navigated.append(url)
        self.nav_timeouts.append(timeout_ms)
        if self.on_navigate:
            self.on_navigate(url)
        key = normalize(url)
        if key in self.hang:
            await self._killed_event.wait()
            raise DriverFatalError("browser has been closed")
        if key in self.fatal:
            raise DriverFatalError("browser has disconnected")
        if key in self.failures:
            raise NavigationError(url, self.failures[key])
        await asyncio.sleep(0)
        self._current = self.redirects.get(key, url)
        self._revealed = []
        return self._current

    async def extract_links(self, selectors=None) -> List[str]:
        self._check_alive()
        current = normalize(self._current or "")
        if current in self.broken:
            raise RuntimeError(self.broken[current])
        return list(self.pages.get(normalize(self._current or ""), [])) + list(self._revealed)

    async def evaluate(self, predicate: str) -> bool:
        self._check_alive()
        if predicate == "has_lazy_images":
            return normalize(self._current or "") in self.lazy
        return False

    async def scroll_to_bottom(self, max_attempts: int = 10) -> int:
        self._check_alive()
        self.scrolls += 1
        return 1

    async def click_if_present(self, selectors) -> bool:
        self._check_alive()
        batches = self.load_more.get(normalize(self._current or ""))
        if not batches:
            return False
        self.clicks += 1
        self._revealed.extend(batches.pop(0))
        return True

    async def close(self) -> None:
        if self.hang_close:
            await asyncio.Event().wait()
        self.closed = True

    async def kill(self) -> None:
        self.killed = True
        self._killed_event.set()


class CollectingSink(EventSink):
    """Records every emitted event."""

    def __init__(self):
        self.events = []

    def emit(self, event_type, payload):
        self.events.append((event_type, dict(payload)))

    def types(self):
        return [t for t, _ in self.events]

    def of_type(self, event_type):
        return [p for t, p in self.events if t == event_type]


def factory_for(*drivers):
    """Async driver factory handing out *drivers* in order."""
    pending = list(drivers)
    calls = []

    async def _factory():
        calls.append(len(calls))
        if not pending:
            raise RuntimeError("no scripted driver left")
        return pending.pop(0)

    _factory.calls = calls
    return _factory


def shop_profile(*starting_urls, **kwargs) -> SiteProfile:
    return SiteProfile(
        name='test',
        domain='shop.test',
        starting_urls=list(starting_urls) or ['https://shop.test/'],
        load_more_selectors=kwargs.pop('load_more_selectors', ['.load-more']),
        **kwargs,
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def store(tmp_path):
    return ResultStore(str(tmp_path / "results"))


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def fast_options():
    """Short timeouts so stop/teardown tests finish quickly."""
    return SessionOptions(
        max_pages=50,
        navigation_timeout_ms=2000,
        action_timeout_ms=1000,
        scroll_timeout_ms=1000,
        cancel_timeout_ms=200,
        cancel_grace_s=0.2,
        close_timeout_ms=200,
        heartbeat_interval_s=0.05,
    )
