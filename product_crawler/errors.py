"""
Crawler Errors
==============
Exception taxonomy shared by the session loop, the drivers and the registry.

- ``NavigationError``   — one page failed (timeout, network); recovered locally
- ``DriverFatalError``  — the browser itself is unusable; aborts the session
- ``ClassificationError`` — malformed URL; callers treat the URL as Excluded
- ``SessionExistsError`` — a session is already registered for the domain
- ``StallDetected``     — the watchdog saw a heartbeat gap
"""


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class NavigationError(CrawlerError):
    """A single page could not be loaded or evaluated."""

    def __init__(self, url: str, reason: str = ""):
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}" if reason else url)


class DriverFatalError(CrawlerError):
    """The page driver (browser process) can no longer be used."""


class ClassificationError(CrawlerError):
    """A URL could not be parsed for classification."""


class SessionExistsError(CrawlerError):
    """A crawl session for this domain is already registered."""

    def __init__(self, domain: str):
        self.domain = domain
        super().__init__(f"A crawl session for {domain} is already running")


class StallDetected(CrawlerError):
    """Heartbeat gap observed by the registry watchdog."""

    def __init__(self, domain: str, gap_s: float):
        self.domain = domain
        self.gap_s = gap_s
        super().__init__(f"{domain}: no heartbeat for {gap_s:.1f}s")
