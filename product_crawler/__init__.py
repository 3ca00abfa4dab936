"""
Product Crawler Package
Discovers product-page URLs on e-commerce sites by walking their internal links.

CLI Usage:
    python -m product_crawler <domain> [<domain> ...] [options]

    Options:
        --all           Crawl every built-in shop profile
        --pages         Maximum pages per domain (default: 500)
        --indefinite    Stop only when no new products turn up
        --timeout       Navigation timeout in ms (default: 30000)
        --concurrency   Domains crawled in parallel (default: 2)
        --output-dir    Result directory (default: crawled-data)
        --static        requests + BeautifulSoup instead of Playwright
"""

from .classifier import UrlClass, classify, get_normalized_domain, get_starting_points, is_same_domain, normalize
from .driver import PageDriver, PlaywrightDriver, StaticDriver, make_driver_factory
from .errors import (
    ClassificationError,
    CrawlerError,
    DriverFatalError,
    NavigationError,
    SessionExistsError,
    StallDetected,
)
from .events import CallbackEventSink, EventSink, FanOutEventSink, LoggingEventSink
from .frontier import CrawlTask, Frontier, Priority
from .registry import CrawlRegistry, RegistryOptions, SessionHandle
from .result_store import CrawlResult, CrawlStats, ResultStore
from .run_config import CrawlerRunConfig
from .session import CancelToken, CrawlSession, SessionOptions, SessionStatus
from .site_profiles import SiteProfile, get_profile, supported_domains

__all__ = [
    # Classification
    'UrlClass',
    'classify',
    'normalize',
    'is_same_domain',
    'get_normalized_domain',
    'get_starting_points',
    'SiteProfile',
    'get_profile',
    'supported_domains',
    # Frontier
    'CrawlTask',
    'Frontier',
    'Priority',
    # Sessions
    'CrawlSession',
    'SessionOptions',
    'SessionStatus',
    'CancelToken',
    'CrawlRegistry',
    'RegistryOptions',
    'SessionHandle',
    # Results
    'CrawlResult',
    'CrawlStats',
    'ResultStore',
    # Drivers
    'PageDriver',
    'PlaywrightDriver',
    'StaticDriver',
    'make_driver_factory',
    # Events
    'EventSink',
    'LoggingEventSink',
    'CallbackEventSink',
    'FanOutEventSink',
    # Config / errors
    'CrawlerRunConfig',
    'CrawlerError',
    'NavigationError',
    'DriverFatalError',
    'ClassificationError',
    'SessionExistsError',
    'StallDetected',
]

__version__ = '1.0.0'
