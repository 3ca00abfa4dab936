"""
Site Profiles
=============
Per-domain crawl data: product/category URL patterns, starting URLs,
load-more selectors and hosts to keep out of scope.

A ``SiteProfile`` is selected once per crawl session via ``get_profile`` and
then consumed as plain data by the classifier and the session loop.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .classifier import get_normalized_domain, get_starting_points

logger = logging.getLogger(__name__)

DEFAULT_LOAD_MORE_SELECTORS: List[str] = [
    '.load-more', '.view-more', '.show-more', '.more-products',
    '[class*="loadMore"]', '[class*="LoadMore"]',
    'button:has-text("Load More")', 'button:has-text("Show More")',
]

DEFAULT_LINK_SELECTORS: List[str] = ['a[href]']


@dataclass
class SiteProfile:
    """Crawl configuration for one shop."""
    name: str
    domain: str = ""
    starting_urls: List[str] = field(default_factory=list)
    product_patterns: List[str] = field(default_factory=list)
    category_patterns: List[str] = field(default_factory=list)
    # Minimum digits of a bare path segment that marks a product (0 = off)
    product_id_digits: int = 0
    excluded_hosts: Tuple[str, ...] = ()
    link_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_LINK_SELECTORS))
    load_more_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_LOAD_MORE_SELECTORS))
    navigation_timeout_ms: Optional[int] = None

    product_regexes: Tuple[re.Pattern, ...] = field(init=False, repr=False, default=())
    category_regexes: Tuple[re.Pattern, ...] = field(init=False, repr=False, default=())

    def __post_init__(self):
        self.product_regexes = tuple(self._compile(self.product_patterns))
        self.category_regexes = tuple(self._compile(self.category_patterns))
        self.excluded_hosts = tuple(h.lower() for h in self.excluded_hosts)

    def _compile(self, patterns: List[str]) -> List[re.Pattern]:
        compiled = []
        for pat in patterns:
            try:
                compiled.append(re.compile(pat, re.IGNORECASE))
            except re.error as e:
                logger.warning(f"[PROFILE] {self.name}: invalid pattern {pat!r}: {e}")
        return compiled

    def seeds(self, domain: str = "") -> List[str]:
        """Starting URLs, falling back to the domain's home page."""
        if self.starting_urls:
            return list(self.starting_urls)
        return get_starting_points(domain or self.domain)

    def for_domain(self, domain: str) -> "SiteProfile":
        """Copy of this profile bound to *domain*."""
        return SiteProfile(
            name=self.name,
            domain=domain,
            starting_urls=list(self.starting_urls),
            product_patterns=list(self.product_patterns),
            category_patterns=list(self.category_patterns),
            product_id_digits=self.product_id_digits,
            excluded_hosts=self.excluded_hosts,
            link_selectors=list(self.link_selectors),
            load_more_selectors=list(self.load_more_selectors),
            navigation_timeout_ms=self.navigation_timeout_ms,
        )


# ---------------------------------------------------------------------------
# Built-in catalogue
# ---------------------------------------------------------------------------

BUILTIN_PROFILES: Dict[str, SiteProfile] = {
    'westside.com': SiteProfile(
        name='westside',
        domain='westside.com',
        product_patterns=[
            r'/products/[\w-]+$',
            r'/collections/[\w-]+/products/[\w-]+$',
        ],
        link_selectors=[
            'a[href]', '.product-card a[href]', '.grid-view-item a[href]',
            '[data-product-id] a[href]',
        ],
        load_more_selectors=['.more-products', '.collection-load-more'],
    ),
    'virgio.com': SiteProfile(
        name='virgio',
        domain='virgio.com',
        product_patterns=[
            r'/product-detail/',
            r'/product/[\w-]+$',
        ],
        link_selectors=['a[href]', '.product-card a[href]', '.product-tile a[href]'],
        load_more_selectors=['.load-more-button', '[data-testid="load-more"]'],
    ),
    'nykaafashion.com': SiteProfile(
        name='nykaafashion',
        domain='nykaafashion.com',
        starting_urls=[
            'https://www.nykaafashion.com/',
            'https://www.nykaafashion.com/women/c/6557',
            'https://www.nykaafashion.com/men/c/6823',
            'https://www.nykaafashion.com/kids/c/6266',
            'https://www.nykaafashion.com/best-sellers/c/10056',
            'https://www.nykaafashion.com/new-arrivals/c/14240',
            'https://www.nykaafashion.com/ethnic-wear/c/10046',
        ],
        product_patterns=[
            r'/[^/]+/p/\d{5,}$',
            r'/p/\d{7,8}$',
            r'/brands/[^/]+/p/\d+',
            r'/shopping/[^/]+/p/\d+',
        ],
        category_patterns=[
            r'/c/\d+',
            r'/(women|men|kids)/c/',
            r'/brands/',
        ],
        link_selectors=['a[href]', '.plp-prod-list a[href]', 'a[href*="/p/"]'],
        load_more_selectors=['.css-1q7tqyw', '.load-more-button', 'button[data-at*="load_more"]'],
    ),
    'tatacliq.com': SiteProfile(
        name='tatacliq',
        domain='tatacliq.com',
        product_patterns=[r'/p-mp'],
        excluded_hosts=('luxury.tatacliq.com',),
        link_selectors=[
            'a[href]', '.ProductModule__base a', '.product-list a',
            '.product-grid a', 'a[href*="/p-mp"]',
        ],
        load_more_selectors=['.Button-sc-1antbdu-0', '.view-more-button', 'button:has-text("Show More Products")'],
    ),
}

DEFAULT_PROFILE = SiteProfile(name='default')


def get_profile(domain: str) -> SiteProfile:
    """Select the profile for *domain* (exact host or a subdomain of a known shop)."""
    host = get_normalized_domain(domain)
    for key, profile in BUILTIN_PROFILES.items():
        if host == key or host.endswith(f".{key}"):
            return profile.for_domain(host)
    return DEFAULT_PROFILE.for_domain(host)


def supported_domains() -> List[str]:
    return list(BUILTIN_PROFILES)
