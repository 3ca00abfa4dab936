"""
Crawl Session
=============
State machine driving one domain's traversal.

    CREATED ──► RUNNING ──► COMPLETED | STOPPED | FAILED

A session owns its frontier, visited set, product set and page driver.  The
only field other tasks touch is the ``CancelToken``; cancellation is
cooperative and is checked at the top of every loop iteration and right
after every driver call.  Once cancellation is requested, the driver call in
flight is allowed a shortened timeout (``cancel_timeout_ms``) instead of its
full one.

Every terminal path freezes the stats, persists a ``CrawlResult``, emits one
terminal event and releases the driver, in that order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urljoin

from . import events
from .classifier import UrlClass, classify, get_normalized_domain, is_same_domain, normalize
from .driver import DriverFactory, PageDriver
from .errors import DriverFatalError, NavigationError
from .frontier import DEFAULT_CAPACITY, CrawlTask, Frontier, Priority
from .result_store import CrawlResult, CrawlStats, ResultStore, utcnow
from .site_profiles import SiteProfile, get_profile

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    SessionStatus.CREATED: {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED},
    SessionStatus.RUNNING: {SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.FAILED},
}

_TERMINAL_EVENT = {
    SessionStatus.COMPLETED: events.CRAWL_COMPLETE,
    SessionStatus.STOPPED: events.CRAWL_STOPPED,
    SessionStatus.FAILED: events.CRAWL_FAILED,
}


@dataclass
class SessionOptions:
    """Per-session limits and timeouts."""
    # Page budget (None = unbounded)
    max_pages: Optional[int] = 500
    # Ignore max_pages; stop after N consecutive pages without a new product
    indefinite_crawling: bool = False
    max_no_new_product_pages: int = 20
    # Wall-clock budget in seconds (None = no budget)
    max_duration_s: Optional[float] = None
    max_depth: Optional[int] = None

    # Driver timeouts
    navigation_timeout_ms: int = 30000
    action_timeout_ms: int = 15000
    scroll_timeout_ms: int = 30000
    cancel_timeout_ms: int = 5000
    # Bound on driver release once a stop was requested
    cancel_grace_s: float = 1.0
    launch_timeout_ms: int = 60000
    close_timeout_ms: int = 3000

    # Page interaction
    max_scroll_attempts: int = 10
    max_load_more_clicks: int = 10
    # Also queue product pages so their own links get explored
    visit_products: bool = False

    frontier_capacity: int = DEFAULT_CAPACITY
    heartbeat_interval_s: float = 2.5


class CancelToken:
    """Per-session cancellation flag, safe to set from any task."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "Stop requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class CrawlSession:
    """
    One crawl of one domain.

    Usage::

        session = CrawlSession("shop.example.com", driver_factory=factory,
                               result_store=ResultStore("out"))
        result = await session.run()
    """

    def __init__(
        self,
        domain: str,
        driver_factory: DriverFactory,
        options: Optional[SessionOptions] = None,
        profile: Optional[SiteProfile] = None,
        event_sink: Optional[events.EventSink] = None,
        result_store: Optional[ResultStore] = None,
        on_heartbeat: Optional[Callable[[str], None]] = None,
    ):
        self.domain = get_normalized_domain(domain)
        self.options = options or SessionOptions()
        self.profile = profile or get_profile(self.domain)
        self._driver_factory = driver_factory
        self._events = event_sink or events.EventSink()
        self._store = result_store
        self._on_heartbeat = on_heartbeat

        self.visited: Set[str] = set()
        self.frontier = Frontier(self.visited, capacity=self.options.frontier_capacity)
        self.products: List[str] = []
        self._product_index: Set[str] = set()
        self.failed_urls: Dict[str, str] = {}
        self.stats = CrawlStats()
        self.status = SessionStatus.CREATED
        self.cancel_token = CancelToken()
        self.stop_reason = ""
        self.result: Optional[CrawlResult] = None

        self._driver: Optional[PageDriver] = None
        self._started_at = 0.0
        self._no_new_product_pages = 0
        self.last_activity = time.monotonic()

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"

    def request_stop(self, reason: str = "Stop requested") -> None:
        """Ask the loop to stop; returns immediately."""
        if not self.cancel_token.is_cancelled:
            logger.info(f"[SESSION] {self.domain}: stop requested ({reason})")
        self.cancel_token.cancel(reason)

    @property
    def navigation_timeout_ms(self) -> int:
        """The profile's navigation timeout when set, else the session option."""
        return self.profile.navigation_timeout_ms or self.options.navigation_timeout_ms

    def is_responsive(self) -> bool:
        """False when no loop progress was made for longer than any driver
        call is allowed to take."""
        limit_s = max(
            self.navigation_timeout_ms,
            self.options.scroll_timeout_ms,
            self.options.action_timeout_ms,
        ) / 1000 + self.options.heartbeat_interval_s
        return time.monotonic() - self.last_activity <= limit_s

    def snapshot(self) -> Dict[str, Any]:
        """Live view for progress polling."""
        return {
            'domain': self.domain,
            'status': self.status.value,
            'products': list(self.products),
            'stats': self.stats.to_dict(),
            'queueSize': len(self.frontier),
            'queueByPriority': self.frontier.size_by_priority(),
            'failedUrls': len(self.failed_urls),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, new_status: SessionStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise RuntimeError(f"Illegal transition {self.status.value} → {new_status.value}")
        logger.debug(f"[SESSION] {self.domain}: {self.status.value} → {new_status.value}")
        self.status = new_status

    def _emit(self, event_type: str, **payload) -> None:
        payload.setdefault('domain', self.domain)
        self._events.emit(event_type, payload)

    def _touch(self) -> None:
        self.last_activity = time.monotonic()

    async def start(self) -> None:
        """Acquire a driver, seed the frontier and enter RUNNING."""
        self.stats.start_time = utcnow()
        self._started_at = time.monotonic()
        try:
            self._driver = await asyncio.wait_for(
                self._driver_factory(), timeout=self.options.launch_timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            raise DriverFatalError("Timed out launching the page driver") from e
        except DriverFatalError:
            raise
        except Exception as e:
            raise DriverFatalError(f"Could not launch the page driver: {e}") from e

        for url in self.profile.seeds(self.domain):
            kind = classify(normalize(url), self.profile)
            self.frontier.push(CrawlTask(url, Priority.for_class(kind), 0))

        self._transition(SessionStatus.RUNNING)
        self._touch()
        if self._on_heartbeat:
            self._on_heartbeat(self.domain)

        mode = "indefinite" if self.options.indefinite_crawling else f"max {self.options.max_pages} pages"
        logger.info(f"[SESSION] {self.domain}: started ({mode}, profile={self.profile.name}, "
                    f"{len(self.frontier)} seed URLs)")
        self._emit(events.CRAWL_START, status='started', queueSize=len(self.frontier),
                   timestamp=self.stats.start_time.isoformat())

    async def run(self) -> CrawlResult:
        """Run the session to a terminal state and return the persisted result."""
        if self.status is not SessionStatus.CREATED:
            raise RuntimeError(f"Session for {self.domain} already {self.status.value}")

        heartbeat_task: Optional[asyncio.Task] = None
        outcome = SessionStatus.COMPLETED
        try:
            if self.cancel_token.is_cancelled:
                outcome = SessionStatus.STOPPED
                self.stop_reason = self.cancel_token.reason
            else:
                await self.start()
                heartbeat_task = asyncio.create_task(self._heartbeat_loop())
                outcome = await self._crawl_loop()
        except DriverFatalError as e:
            if self.cancel_token.is_cancelled:
                # Driver torn down underneath a stop request
                logger.info(f"[SESSION] {self.domain}: driver gone while stopping: {e}")
                outcome = SessionStatus.STOPPED
                self.stop_reason = self.cancel_token.reason
            else:
                logger.error(f"[SESSION] {self.domain}: driver failure: {e}")
                outcome = SessionStatus.FAILED
                self.stop_reason = f"Driver failure: {e}"
        except asyncio.CancelledError:
            # Forced termination by the registry; the token carries the reason
            logger.warning(f"[SESSION] {self.domain}: force-terminated")
            outcome = SessionStatus.STOPPED
            self.stop_reason = self.cancel_token.reason or "Force terminated"
        except Exception as e:
            logger.error(f"[SESSION] {self.domain}: unexpected error: {e}", exc_info=True)
            outcome = SessionStatus.FAILED
            self.stop_reason = f"Error: {e}"
        finally:
            if heartbeat_task:
                heartbeat_task.cancel()
        return await self._finish(outcome)

    async def _finish(self, outcome: SessionStatus) -> CrawlResult:
        self._transition(outcome)

        end = utcnow()
        self.stats.end_time = end
        if self.stats.start_time is None:
            self.stats.start_time = end
        self.stats.duration_seconds = (end - self.stats.start_time).total_seconds()
        self.stats.completed = outcome is SessionStatus.COMPLETED
        self.stats.products_found = len(self.products)

        result = CrawlResult(
            domain=self.domain,
            products=list(self.products),
            stats=replace(self.stats),
            timestamp=end,
            status=outcome.value,
            stop_reason=self.stop_reason,
            failed_urls=list(self.failed_urls),
        )
        self.result = result

        file_path = None
        if self._store is not None:
            try:
                loop = asyncio.get_running_loop()
                file_path = str(await loop.run_in_executor(None, self._store.persist, result))
            except OSError as e:
                logger.error(f"[SESSION] {self.domain}: could not persist result: {e}")

        self._emit(
            _TERMINAL_EVENT[outcome],
            productCount=len(self.products),
            totalPages=self.stats.pages_visited,
            duration=round(self.stats.duration_seconds, 2),
            filePath=file_path,
            reason=self.stop_reason,
        )
        logger.info(
            f"[SESSION] {self.domain}: {outcome.value} — {len(self.products)} products "
            f"from {self.stats.pages_visited} pages in {self.stats.duration_seconds:.1f}s"
            + (f" ({self.stop_reason})" if self.stop_reason else "")
        )

        await self.release_driver()
        return result

    async def release_driver(self) -> None:
        """Close the driver within ``close_timeout_ms`` (``cancel_grace_s``
        after a stop request), else kill it."""
        driver, self._driver = self._driver, None
        if driver is None:
            return
        if self.cancel_token.is_cancelled:
            timeout_s = self.options.cancel_grace_s
        else:
            timeout_s = self.options.close_timeout_ms / 1000
        close_task = asyncio.ensure_future(driver.close())
        done, _ = await asyncio.wait({close_task}, timeout=timeout_s)
        if close_task in done and close_task.exception() is None:
            return
        if close_task in done:
            logger.warning(f"[SESSION] {self.domain}: driver close failed: {close_task.exception()}")
        else:
            close_task.cancel()
            logger.warning(f"[SESSION] {self.domain}: driver close timed out, killing")
        try:
            await driver.kill()
        except Exception as e:
            logger.error(f"[SESSION] {self.domain}: driver kill failed: {e}")

    async def force_terminate(self) -> None:
        """Reclaim the driver without waiting for the loop (registry use)."""
        driver = self._driver
        if driver is None:
            return
        try:
            await driver.kill()
        except Exception as e:
            logger.error(f"[SESSION] {self.domain}: forced driver teardown failed: {e}")

    async def _heartbeat_loop(self) -> None:
        interval = self.options.heartbeat_interval_s
        while self.status is SessionStatus.RUNNING:
            await asyncio.sleep(interval)
            if self.status is SessionStatus.RUNNING and self.is_responsive() and self._on_heartbeat:
                self._on_heartbeat(self.domain)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _termination_status(self) -> Optional[SessionStatus]:
        opts = self.options
        if self.cancel_token.is_cancelled:
            self.stop_reason = self.cancel_token.reason
            return SessionStatus.STOPPED
        if not self.frontier:
            self.stop_reason = "Frontier exhausted"
            return SessionStatus.COMPLETED
        if opts.indefinite_crawling:
            if self._no_new_product_pages >= opts.max_no_new_product_pages:
                self.stop_reason = f"No new products in {self._no_new_product_pages} pages"
                return SessionStatus.COMPLETED
        elif opts.max_pages is not None and self.stats.pages_visited >= opts.max_pages:
            self.stop_reason = f"MAX_PAGES limit reached ({opts.max_pages})"
            return SessionStatus.COMPLETED
        if opts.max_duration_s is not None and time.monotonic() - self._started_at >= opts.max_duration_s:
            self.stop_reason = f"Time budget of {opts.max_duration_s:.0f}s exhausted"
            return SessionStatus.COMPLETED
        return None

    async def _crawl_loop(self) -> SessionStatus:
        while True:
            self._touch()
            outcome = self._termination_status()
            if outcome is not None:
                return outcome

            task = self.frontier.pop()
            url = normalize(task.url)
            if url in self.visited:
                continue
            self.visited.add(url)
            self.stats.pages_visited += 1

            limit = "∞" if self.options.indefinite_crawling or self.options.max_pages is None \
                else self.options.max_pages
            logger.info(f"[{self.stats.pages_visited}/{limit}] {self.domain}: {url}")
            self._emit(events.PROGRESS_UPDATE, url=url,
                       pagesVisited=self.stats.pages_visited,
                       productsFound=len(self.products),
                       queueSize=len(self.frontier))

            products_before = len(self.products)
            try:
                await self._process_page(task, url)
            except NavigationError as e:
                if not self.cancel_token.is_cancelled:
                    logger.warning(f"[SESSION] {self.domain}: failed {url}: {e.reason or e}")
                self.failed_urls[url] = e.reason or str(e)
            except DriverFatalError:
                raise
            except Exception as e:
                logger.warning(f"[SESSION] {self.domain}: error on {url}: {e}", exc_info=True)
                self.failed_urls[url] = f"{type(e).__name__}: {e}"

            if len(self.products) > products_before:
                self._no_new_product_pages = 0
            else:
                self._no_new_product_pages += 1

    async def _call_driver(self, op: str, url: str, awaitable: Awaitable, timeout_ms: int):
        """
        Await a driver call with its timeout, shortened to
        ``cancel_timeout_ms`` once cancellation is requested.
        """
        call = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self.cancel_token.wait())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        try:
            done, _ = await asyncio.wait(
                {call, cancel_wait}, timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if call not in done and cancel_wait in done:
                remaining = max(0.0, deadline - loop.time())
                grace = min(remaining, self.options.cancel_timeout_ms / 1000)
                done, _ = await asyncio.wait({call}, timeout=grace)
            if call not in done:
                call.cancel()
                reason = "cancelled" if self.cancel_token.is_cancelled else "timeout"
                raise NavigationError(url, f"{op} {reason}")
            return call.result()
        finally:
            cancel_wait.cancel()
            if not call.done():
                call.cancel()
            self._touch()

    async def _best_effort(self, op: str, url: str, awaitable: Awaitable, timeout_ms: int, default):
        try:
            return await self._call_driver(op, url, awaitable, timeout_ms)
        except NavigationError as e:
            logger.debug(f"[SESSION] {self.domain}: {op} skipped on {url}: {e.reason}")
            return default
        except DriverFatalError:
            raise
        except Exception as e:
            logger.warning(f"[SESSION] {self.domain}: {op} failed on {url}: {e}")
            return default

    async def _process_page(self, task: CrawlTask, url: str) -> None:
        driver = self._driver
        opts = self.options
        cancelled = lambda: self.cancel_token.is_cancelled  # noqa: E731

        nav_timeout = self.navigation_timeout_ms
        landed = await self._call_driver(
            "navigate", url, driver.navigate(url, nav_timeout), nav_timeout,
        )
        if cancelled():
            return

        # Relative hrefs resolve against the raw URL, trailing slash included
        landed = landed or url
        resolved = normalize(landed)
        if resolved != url:
            self.frontier.discard(resolved)
            self.visited.add(resolved)
        if classify(resolved, self.profile) is UrlClass.PRODUCT:
            self._add_product(resolved)

        if await self._best_effort("evaluate", url, driver.evaluate("has_lazy_images"),
                                   opts.action_timeout_ms, False):
            if cancelled():
                return
            await self._best_effort("scroll", url, driver.scroll_to_bottom(opts.max_scroll_attempts),
                                    opts.scroll_timeout_ms, 0)
        if cancelled():
            return

        links = await self._call_driver(
            "extract_links", url, driver.extract_links(self.profile.link_selectors),
            opts.action_timeout_ms,
        )
        if cancelled():
            return
        self._process_links(links, landed, task.depth)

        if not self.profile.load_more_selectors:
            return
        for attempt in range(opts.max_load_more_clicks):
            clicked = await self._best_effort(
                "load_more", url, driver.click_if_present(self.profile.load_more_selectors),
                opts.action_timeout_ms, False,
            )
            if cancelled() or not clicked:
                return
            links = await self._best_effort(
                "extract_links", url, driver.extract_links(self.profile.link_selectors),
                opts.action_timeout_ms, [],
            )
            if cancelled():
                return
            found = self._process_links(links, landed, task.depth)
            logger.debug(f"[SESSION] {self.domain}: load-more #{attempt + 1} → {found} new products")

    def _process_links(self, links: Iterable[str], base: str, depth: int) -> int:
        """Classify discovered links; returns the number of new products."""
        new_products = 0
        next_depth = depth + 1
        max_depth = self.options.max_depth
        for href in links:
            if not href:
                continue
            link = normalize(urljoin(base, href))
            if not is_same_domain(link, self.base_url, self.profile):
                continue
            kind = classify(link, self.profile)
            if kind is UrlClass.EXCLUDED:
                continue
            if kind is UrlClass.PRODUCT:
                if self._add_product(link):
                    new_products += 1
                if self.options.visit_products:
                    self.frontier.push(CrawlTask(link, Priority.PRODUCT, next_depth))
                continue
            if max_depth is not None and next_depth > max_depth:
                continue
            self.frontier.push(CrawlTask(link, Priority.for_class(kind), next_depth))
        return new_products

    def _add_product(self, url: str) -> bool:
        if url in self._product_index:
            return False
        self._product_index.add(url)
        self.products.append(url)
        self.stats.products_found = len(self.products)
        logger.debug(f"[SESSION] {self.domain}: product {url}")
        self._emit(events.PRODUCT_FOUND, url=url, count=len(self.products))
        return True
