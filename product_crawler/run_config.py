"""
Unified Run Configuration
=========================
Single source of truth for crawler defaults and runtime limits.

The CLI, environment (``PRODUCT_CRAWLER_*``) and programmatic callers all
populate a ``CrawlerRunConfig``; ``SessionOptions`` and ``RegistryOptions``
are built *from* it via converter methods.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "PRODUCT_CRAWLER_"


# ---------------------------------------------------------------------------
# Canonical defaults
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "max_pages": 500,
    "indefinite_crawling": False,
    "max_no_new_product_pages": 20,
    "max_duration_s": None,
    "max_depth": None,
    "navigation_timeout_ms": 30000,
    "action_timeout_ms": 15000,
    "cancel_timeout_ms": 5000,       # shortened per-call timeout once a stop is requested
    "cancel_grace_s": 1.0,
    "max_scroll_attempts": 10,
    "max_load_more_clicks": 10,
    "frontier_capacity": 1000,
    "visit_products": False,
    "heartbeat_interval_s": 2.5,
    # Registry
    "concurrency": 2,
    "watchdog_interval_s": 5.0,
    "stop_grace_s": 0.5,
    "stop_all_timeout_s": 10.0,
    # Driver / output
    "headless": True,
    "static": False,
    "output_dir": "crawled-data",
}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env suffix → (field, parser)
_ENV_FIELDS = {
    "OUTPUT_DIR": ("output_dir", str),
    "CONCURRENCY": ("concurrency", int),
    "MAX_PAGES": ("max_pages", int),
    "NAV_TIMEOUT_MS": ("navigation_timeout_ms", int),
    "HEADLESS": ("headless", _env_bool),
}


@dataclass
class CrawlerRunConfig:
    """
    Unified configuration consumed by the registry, sessions and drivers.

    Populate via:
      - ``CrawlerRunConfig()``                  → all defaults
      - ``CrawlerRunConfig(max_pages=50)``       → override one value
      - ``CrawlerRunConfig.from_env()``          → defaults + PRODUCT_CRAWLER_* env
      - ``CrawlerRunConfig.from_cli_args(ns)``   → env + argparse Namespace
    """

    domains: List[str] = field(default_factory=list)

    # ---- Crawl limits ----
    max_pages: Optional[int] = _DEFAULTS["max_pages"]
    indefinite_crawling: bool = _DEFAULTS["indefinite_crawling"]
    max_no_new_product_pages: int = _DEFAULTS["max_no_new_product_pages"]
    max_duration_s: Optional[float] = _DEFAULTS["max_duration_s"]
    max_depth: Optional[int] = _DEFAULTS["max_depth"]

    # ---- Timeouts ----
    navigation_timeout_ms: int = _DEFAULTS["navigation_timeout_ms"]
    action_timeout_ms: int = _DEFAULTS["action_timeout_ms"]
    cancel_timeout_ms: int = _DEFAULTS["cancel_timeout_ms"]
    cancel_grace_s: float = _DEFAULTS["cancel_grace_s"]

    # ---- Page interaction ----
    max_scroll_attempts: int = _DEFAULTS["max_scroll_attempts"]
    max_load_more_clicks: int = _DEFAULTS["max_load_more_clicks"]
    frontier_capacity: int = _DEFAULTS["frontier_capacity"]
    visit_products: bool = _DEFAULTS["visit_products"]
    heartbeat_interval_s: float = _DEFAULTS["heartbeat_interval_s"]

    # ---- Registry ----
    concurrency: int = _DEFAULTS["concurrency"]
    watchdog_interval_s: float = _DEFAULTS["watchdog_interval_s"]
    stop_grace_s: float = _DEFAULTS["stop_grace_s"]
    stop_all_timeout_s: float = _DEFAULTS["stop_all_timeout_s"]

    # ---- Driver / output ----
    headless: bool = _DEFAULTS["headless"]
    static: bool = _DEFAULTS["static"]
    output_dir: str = _DEFAULTS["output_dir"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlerRunConfig":
        """Defaults overridden by ``PRODUCT_CRAWLER_*`` variables."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for suffix, (name, parse) in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is None or raw == "":
                continue
            try:
                overrides[name] = parse(raw)
            except ValueError:
                logger.warning(f"Ignoring {ENV_PREFIX}{suffix}={raw!r}: not a valid {name}")
        return cls(**overrides)

    @classmethod
    def from_cli_args(cls, args, environ: Optional[Mapping[str, str]] = None) -> "CrawlerRunConfig":
        """Build config from an argparse Namespace (``__main__.py``).

        Flags left unset (None) fall back to the environment, then defaults.
        """
        cfg = cls.from_env(environ)
        cfg.domains = list(getattr(args, "domains", None) or [])

        for arg_name, name in (
            ("pages", "max_pages"),
            ("no_new_limit", "max_no_new_product_pages"),
            ("timeout", "navigation_timeout_ms"),
            ("max_duration", "max_duration_s"),
            ("depth", "max_depth"),
            ("concurrency", "concurrency"),
            ("output_dir", "output_dir"),
        ):
            value = getattr(args, arg_name, None)
            if value is not None:
                setattr(cfg, name, value)

        if getattr(args, "indefinite", False):
            cfg.indefinite_crawling = True
        if getattr(args, "visit_products", False):
            cfg.visit_products = True
        if getattr(args, "static", False):
            cfg.static = True
        if getattr(args, "headed", False):
            cfg.headless = False
        return cfg

    # -----------------------------------------------------------------------
    # Converters
    # -----------------------------------------------------------------------
    def to_session_options(self):
        """Return ``SessionOptions`` populated from this run config."""
        # Import here to avoid circular dependency
        from .session import SessionOptions
        return SessionOptions(
            max_pages=self.max_pages,
            indefinite_crawling=self.indefinite_crawling,
            max_no_new_product_pages=self.max_no_new_product_pages,
            max_duration_s=self.max_duration_s,
            max_depth=self.max_depth,
            navigation_timeout_ms=self.navigation_timeout_ms,
            action_timeout_ms=self.action_timeout_ms,
            scroll_timeout_ms=max(self.navigation_timeout_ms, self.action_timeout_ms),
            cancel_timeout_ms=self.cancel_timeout_ms,
            cancel_grace_s=self.cancel_grace_s,
            max_scroll_attempts=self.max_scroll_attempts,
            max_load_more_clicks=self.max_load_more_clicks,
            visit_products=self.visit_products,
            frontier_capacity=self.frontier_capacity,
            heartbeat_interval_s=self.heartbeat_interval_s,
        )

    def to_registry_options(self):
        """Return ``RegistryOptions`` populated from this run config."""
        from .registry import RegistryOptions
        return RegistryOptions(
            concurrency=self.concurrency,
            watchdog_interval_s=self.watchdog_interval_s,
            stop_grace_s=self.stop_grace_s,
            stop_all_timeout_s=self.stop_all_timeout_s,
        )

    def driver_factory(self):
        from .driver import make_driver_factory
        return make_driver_factory(static=self.static, headless=self.headless)

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("PRODUCT CRAWL CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Domains:          {', '.join(self.domains) or '-'}")
        if self.indefinite_crawling:
            logger.info(f"  Max Pages:        unbounded (stop after {self.max_no_new_product_pages} "
                        f"pages without new products)")
        else:
            logger.info(f"  Max Pages:        {self.max_pages if self.max_pages is not None else 'unbounded'}")
        if self.max_duration_s:
            logger.info(f"  Time Budget:      {self.max_duration_s:.0f}s per domain")
        if self.max_depth is not None:
            logger.info(f"  Max Depth:        {self.max_depth}")
        logger.info(f"  Nav Timeout:      {self.navigation_timeout_ms} ms")
        logger.info(f"  Concurrency:      {self.concurrency} domains")
        logger.info(f"  Driver:           {'static (requests)' if self.static else 'playwright'}"
                    f"{'' if self.static or self.headless else ' (headed)'}")
        logger.info(f"  Output Dir:       {self.output_dir}")
        logger.info("=" * 60)
