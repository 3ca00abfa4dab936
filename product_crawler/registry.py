"""
Crawl Registry
==============
Runs many crawl sessions side by side, one per domain.

    registry = CrawlRegistry(make_driver_factory(), ResultStore("out"))
    async with registry:
        handle = await registry.start_session("westside.com")
        result = await handle.wait()

Responsibilities:
    - at most one session per domain, at most ``concurrency`` crawling at once
    - heartbeat map + watchdog that force-terminates stalled sessions
    - ``stop_session`` / ``stop_all`` with bounded shutdown
    - deregistration only after the session's result is persisted

All registry state lives on one event loop.  Structural changes to the
session map happen under ``self._lock``; heartbeat entries have a single
writer (their session) and are only read by the watchdog.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import events
from .classifier import get_normalized_domain
from .driver import DriverFactory
from .errors import SessionExistsError, StallDetected
from .result_store import CrawlResult, ResultStore
from .session import CrawlSession, SessionOptions, SessionStatus
from .site_profiles import SiteProfile

logger = logging.getLogger(__name__)


@dataclass
class RegistryOptions:
    concurrency: int = 2
    watchdog_interval_s: float = 5.0
    # A session is stalled after stall_factor × watchdog_interval_s without a heartbeat
    stall_factor: float = 3.0
    # Graceful window before a stalled/stuck session is torn down
    stop_grace_s: float = 0.5
    stop_all_timeout_s: float = 10.0

    @property
    def stall_after_s(self) -> float:
        return self.stall_factor * self.watchdog_interval_s


@dataclass
class SessionHandle:
    """What ``start_session`` hands back to the caller."""
    domain: str
    session: CrawlSession
    task: asyncio.Task
    started_at: float = field(default_factory=time.monotonic)

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> Optional[CrawlResult]:
        """Wait for the session to finish without cancelling it."""
        await asyncio.wait({self.task})
        return self.session.result


class CrawlRegistry:
    """
    Session map, heartbeat map and watchdog.

    Args:
        driver_factory:  Async callable returning a fresh PageDriver per session
        result_store:    Where sessions persist their results
        options:         Concurrency/watchdog settings
        session_options: Defaults for sessions started without explicit options
        event_sink:      Receives every session and registry event
    """

    def __init__(
        self,
        driver_factory: DriverFactory,
        result_store: Optional[ResultStore] = None,
        options: Optional[RegistryOptions] = None,
        session_options: Optional[SessionOptions] = None,
        event_sink: Optional[events.EventSink] = None,
    ):
        self.options = options or RegistryOptions()
        self.session_options = session_options or SessionOptions()
        self.store = result_store or ResultStore()
        self._driver_factory = driver_factory
        self._events = event_sink or events.EventSink()

        self._sessions: Dict[str, SessionHandle] = {}
        self._heartbeats: Dict[str, float] = {}
        self._terminating: set = set()
        self._lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(self.options.concurrency)
        self._watchdog_task: Optional[asyncio.Task] = None
        self.stalls: List[StallDetected] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the watchdog (idempotent)."""
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())
            logger.debug(f"[WATCHDOG] started (interval={self.options.watchdog_interval_s}s, "
                         f"stall after {self.options.stall_after_s}s)")

    async def close(self) -> List[CrawlResult]:
        """Stop every session, then the watchdog."""
        results = await self.stop_all()
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            await asyncio.wait({self._watchdog_task})
            self._watchdog_task = None
        return results

    async def __aenter__(self) -> "CrawlRegistry":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, domain: str) -> bool:
        return get_normalized_domain(domain) in self._sessions

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def start_session(
        self,
        domain: str,
        options: Optional[SessionOptions] = None,
        profile: Optional[SiteProfile] = None,
    ) -> SessionHandle:
        """Register and launch a session; raises SessionExistsError on duplicates."""
        key = get_normalized_domain(domain)
        async with self._lock:
            if key in self._sessions:
                raise SessionExistsError(key)
            session = CrawlSession(
                key,
                driver_factory=self._driver_factory,
                options=options or self.session_options,
                profile=profile,
                event_sink=self._events,
                result_store=self.store,
                on_heartbeat=self._beat,
            )
            task = asyncio.create_task(self._run_session(session), name=f"crawl:{key}")
            handle = SessionHandle(key, session, task)
            self._sessions[key] = handle
            self._heartbeats[key] = time.monotonic()
            self.store.track(session)
        logger.info(f"[REGISTRY] {key}: session registered ({len(self._sessions)} active)")
        self.start()
        return handle

    async def _run_session(self, session: CrawlSession) -> CrawlResult:
        try:
            try:
                await self._slots.acquire()
            except asyncio.CancelledError:
                # Torn down while waiting for a slot: finish as Stopped
                session.request_stop("Force terminated")
                return await session.run()
            try:
                return await session.run()
            finally:
                self._slots.release()
        finally:
            await asyncio.shield(self._deregister(session))

    async def _deregister(self, session: CrawlSession) -> None:
        async with self._lock:
            handle = self._sessions.get(session.domain)
            if handle is not None and handle.session is session:
                del self._sessions[session.domain]
                self._heartbeats.pop(session.domain, None)
                self._terminating.discard(session.domain)
            self.store.untrack(session)
        logger.info(f"[REGISTRY] {session.domain}: deregistered ({session.status.value})")

    def get(self, domain: str) -> Optional[SessionHandle]:
        return self._sessions.get(get_normalized_domain(domain))

    def status(self) -> Dict[str, Any]:
        """Snapshot of every registered session."""
        now = time.monotonic()
        sessions = {}
        for domain, handle in list(self._sessions.items()):
            snap = handle.session.snapshot()
            beat = self._heartbeats.get(domain)
            snap['heartbeatAgeSeconds'] = round(now - beat, 2) if beat is not None else None
            sessions[domain] = snap
        return {
            'activeSessions': len(sessions),
            'concurrency': self.options.concurrency,
            'sessions': sessions,
        }

    def get_live(self, domain: str) -> Optional[Dict[str, Any]]:
        return self.store.get_live(domain)

    def get_final(self, domain: str) -> Optional[CrawlResult]:
        return self.store.get_final(domain)

    # ------------------------------------------------------------------
    # Heartbeats / watchdog
    # ------------------------------------------------------------------

    def _beat(self, domain: str) -> None:
        if domain in self._sessions:
            self._heartbeats[domain] = time.monotonic()

    async def _watchdog_loop(self) -> None:
        interval = self.options.watchdog_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_heartbeats()
            except Exception as e:
                logger.error(f"[WATCHDOG] check failed: {e}", exc_info=True)

    async def check_heartbeats(self) -> List[StallDetected]:
        """One watchdog pass: terminate every Running session whose heartbeat is too old."""
        now = time.monotonic()
        stalled = []
        async with self._lock:
            for domain, handle in self._sessions.items():
                if handle.session.status is not SessionStatus.RUNNING:
                    continue
                if domain in self._terminating:
                    continue
                gap = now - self._heartbeats.get(domain, now)
                if gap > self.options.stall_after_s:
                    stalled.append((handle, StallDetected(domain, gap)))

        for handle, stall in stalled:
            logger.warning(f"[WATCHDOG] STALL {stall}; force-terminating")
            self.stalls.append(stall)
        await asyncio.gather(*(
            self._terminate(handle, f"Stalled: no heartbeat for {stall.gap_s:.1f}s")
            for handle, stall in stalled
        ))
        return [stall for _, stall in stalled]

    async def _terminate(self, handle: SessionHandle, reason: str) -> None:
        """Graceful stop within ``stop_grace_s``, then driver kill + task cancel."""
        domain, session, task = handle.domain, handle.session, handle.task
        if domain in self._terminating:
            await asyncio.wait({task})
            return
        self._terminating.add(domain)
        session.request_stop(reason)
        done, _ = await asyncio.wait({task}, timeout=self.options.stop_grace_s)
        if task in done:
            return

        logger.warning(f"[REGISTRY] {domain}: still running after {self.options.stop_grace_s}s grace, "
                       f"tearing down driver")
        await session.force_terminate()
        if not session.status.is_terminal:
            task.cancel()
        await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    def stop_session(self, domain: str, reason: str = "Stop requested") -> bool:
        """Request a stop; returns immediately. False if no such session."""
        handle = self.get(domain)
        if handle is None:
            return False
        self._events.emit(events.CRAWL_STOPPING, {'domain': handle.domain, 'reason': reason})
        handle.session.request_stop(reason)
        return True

    async def stop_all(self, timeout_s: Optional[float] = None) -> List[CrawlResult]:
        """
        Stop every registered session and return their persisted results.

        Sessions get ``timeout_s`` (default ``stop_all_timeout_s``) to reach a
        terminal state on their own; the rest are force-terminated.
        """
        timeout_s = self.options.stop_all_timeout_s if timeout_s is None else timeout_s
        async with self._lock:
            handles = list(self._sessions.values())
        if not handles:
            return []

        logger.info(f"[REGISTRY] Stopping {len(handles)} session(s)")
        for handle in handles:
            self._events.emit(events.CRAWL_STOPPING, {'domain': handle.domain, 'reason': "Stop all"})
            handle.session.request_stop("Stop all")

        tasks = {h.task for h in handles}
        _, pending = await asyncio.wait(tasks, timeout=timeout_s)
        if pending:
            stuck = [h for h in handles if h.task in pending]
            logger.warning(f"[REGISTRY] {len(stuck)} session(s) did not stop within {timeout_s}s: "
                           f"{', '.join(h.domain for h in stuck)}")
            await asyncio.gather(*(self._terminate(h, "Stop all (forced)") for h in stuck))

        return [h.session.result for h in handles if h.session.result is not None]
