"""
URL Classifier
==============
Pure functions that decide what a discovered link is.

- ``normalize(url)``                 — canonical form used for de-duplication
- ``classify(url, profile)``         — PRODUCT / CATEGORY / EXCLUDED / GENERIC
- ``is_same_domain(url, base, ...)`` — host equality or subdomain match
- ``get_normalized_domain(url)``     — bare host (no scheme, no ``www.``)
- ``get_starting_points(domain)``    — default seed URL(s) for a domain

Rules are evaluated in a fixed order and the first match wins:

1. profile product rules (regexes + optional numeric-ID segment)
2. profile category rules
3. generic exclusions (assets, cart/auth/search paths, non-http schemes)
4. generic product regexes
5. numeric-ID heuristic (5+ digit segment, not on listing paths)
6. generic category regexes
7. GENERIC

Nothing here raises: a URL that cannot be parsed is EXCLUDED by ``classify``
and returned unchanged by ``normalize``.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ClassificationError

logger = logging.getLogger(__name__)


class UrlClass(str, Enum):
    PRODUCT = "product"
    CATEGORY = "category"
    EXCLUDED = "excluded"
    GENERIC = "generic"


# ---------------------------------------------------------------------------
# Pattern catalogue
# ---------------------------------------------------------------------------

# Query parameters that never change the page a URL points to
TRACKING_PARAMS = frozenset({
    'ref', 'source', 'fbclid', 'gclid', 'dclid', 'msclkid',
    'mc_cid', 'mc_eid', '_ga', '_gid', 'igshid', 'spm',
})
TRACKING_PREFIXES = ('utm_',)

# Matched against the path
PRODUCT_PATTERNS: List[re.Pattern] = [
    re.compile(r'/products?/', re.IGNORECASE),
    re.compile(r'/p/', re.IGNORECASE),
    re.compile(r'/item/', re.IGNORECASE),
    re.compile(r'/p-mp', re.IGNORECASE),
    re.compile(r'/pdp/', re.IGNORECASE),
]

CATEGORY_PATTERNS: List[re.Pattern] = [
    re.compile(r'/collections/', re.IGNORECASE),
    re.compile(r'/c-', re.IGNORECASE),
    re.compile(r'/c/', re.IGNORECASE),
    re.compile(r'/category/', re.IGNORECASE),
    re.compile(r'/(men|women|kids)(/|$)', re.IGNORECASE),
]

# Matched against the whole URL
EXCLUDE_PATTERNS: List[re.Pattern] = [
    re.compile(r'\.(jpe?g|png|gif|css|js|ico|svg|webp|pdf|woff2?|ttf|mp4|zip)($|\?)', re.IGNORECASE),
    re.compile(r'/(cart|checkout|login|register|account|track|help|search)\b', re.IGNORECASE),
    re.compile(r'/(api|graphql|rest|cdn|static)\b', re.IGNORECASE),
    re.compile(r'^(mailto|tel|javascript|data):', re.IGNORECASE),
]

# Paths that list many products and often carry numeric IDs of their own
_LISTING_PATH_RE = re.compile(r'/(c|category|categories|collections?|search|brands?|shop)(/|$)', re.IGNORECASE)
_NUMERIC_SEGMENT_RE = re.compile(r'^\d{5,}$')
_REPEATED_SLASH_RE = re.compile(r'/{2,}')


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def normalize(url: str) -> str:
    """
    Return the canonical form of *url*.

    Drops the fragment and tracking query parameters, lower-cases scheme and
    host, collapses repeated slashes and strips a trailing slash.  The
    operation is idempotent.  Unparseable input is returned unchanged.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url.strip())
        # Accessing .port validates the netloc
        parts.port
    except ValueError:
        return url

    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        kept = [(k, v) for k, v in pairs if not _is_tracking_param(k)]
        if len(kept) != len(pairs):
            query = urlencode(kept)

    path = _REPEATED_SLASH_RE.sub('/', parts.path)
    path = path.rstrip('/')

    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        path,
        query,
        '',
    ))


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _split(url: str):
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError as e:
        raise ClassificationError(f"Malformed URL {url!r}: {e}") from e
    return parts


def _has_numeric_segment(path: str, min_digits: int = 5) -> bool:
    for segment in path.split('/'):
        if len(segment) >= min_digits and segment.isdigit():
            return True
    return False


def _classify(url: str, profile) -> UrlClass:
    parts = _split(url)
    path = parts.path or '/'

    if profile is not None:
        if any(rx.search(path) for rx in profile.product_regexes):
            return UrlClass.PRODUCT
        if profile.product_id_digits and _has_numeric_segment(path, profile.product_id_digits):
            return UrlClass.PRODUCT
        if any(rx.search(path) for rx in profile.category_regexes):
            return UrlClass.CATEGORY

    if parts.scheme and parts.scheme.lower() not in ('http', 'https'):
        return UrlClass.EXCLUDED
    if any(rx.search(url) for rx in EXCLUDE_PATTERNS):
        return UrlClass.EXCLUDED

    if any(rx.search(path) for rx in PRODUCT_PATTERNS):
        return UrlClass.PRODUCT

    if not _LISTING_PATH_RE.search(path):
        if any(_NUMERIC_SEGMENT_RE.match(seg) for seg in path.split('/')):
            return UrlClass.PRODUCT

    if any(rx.search(path) for rx in CATEGORY_PATTERNS):
        return UrlClass.CATEGORY

    return UrlClass.GENERIC


def classify(url: str, profile=None) -> UrlClass:
    """Classify *url* using *profile* rules first, then the generic rules."""
    try:
        return _classify(url, profile)
    except ClassificationError as e:
        logger.debug(f"[CLASSIFY] {e} — treating as excluded")
        return UrlClass.EXCLUDED


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------

def _host(url: str) -> Optional[str]:
    if '://' not in url:
        url = f"https://{url}"
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    if host.startswith('www.'):
        host = host[4:]
    return host


def is_same_domain(url: str, base: str, profile=None) -> bool:
    """
    True if *url* is on *base*'s host or one of its subdomains.

    Hosts listed in ``profile.excluded_hosts`` are rejected even when they
    are subdomains of *base*.
    """
    url_host = _host(url) if '://' in url else None
    base_host = _host(base)
    if not url_host or not base_host:
        return False
    if profile is not None and url_host in profile.excluded_hosts:
        return False
    return url_host == base_host or url_host.endswith(f".{base_host}")


def get_normalized_domain(url: str) -> str:
    """``https://www.Shop.com/x`` → ``shop.com``."""
    if not url:
        return ''
    host = _host(url.strip())
    if host:
        return host
    return re.sub(r'^https?://(www\.)?', '', url).split('/')[0]


def get_starting_points(domain: str) -> List[str]:
    """Default seed URL for a bare domain, adding ``https://`` and ``www.``."""
    if not domain.startswith(('http://', 'https://')):
        domain = f"https://{domain}"
    try:
        parts = urlsplit(domain)
        host = parts.hostname
    except ValueError:
        host = None
    if not host:
        return [domain]
    path = parts.path or '/'
    if not host.startswith(('www.', 'luxury.', 'shop.')):
        return [f"https://www.{host}{path}"]
    return [f"https://{host}{path}"]
