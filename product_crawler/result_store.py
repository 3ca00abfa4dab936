"""
Result Store
============
Durable, write-once storage of crawl results plus live progress lookup.

Each ``persist`` call creates a new JSON file keyed by domain and timestamp
(``<domain>-<epoch_ms>[-<n>].json``); files are opened in exclusive-create
mode so an existing record is never overwritten.

Record schema::

    {
      "domain": "shop.example.com",
      "products": ["https://..."],
      "totalLinks": 2,
      "stats": {"pagesVisited": 3, "productsFound": 2, "startTime": "...",
                "endTime": "...", "durationSeconds": 4.2, "crawlCompleted": false},
      "status": "stopped",
      "stopReason": "Stop requested",
      "failedUrls": [],
      "timestamp": "2026-01-01T12:00:00.000+00:00"
    }
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .classifier import get_normalized_domain

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec='milliseconds') if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class CrawlStats:
    """Per-session counters; frozen once the session reaches a terminal state."""
    pages_visited: int = 0
    products_found: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    completed: bool = False

    def to_dict(self) -> dict:
        return {
            'pagesVisited': self.pages_visited,
            'productsFound': self.products_found,
            'startTime': _iso(self.start_time),
            'endTime': _iso(self.end_time),
            'durationSeconds': round(self.duration_seconds, 3),
            'crawlCompleted': self.completed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlStats":
        return cls(
            pages_visited=data.get('pagesVisited', 0),
            products_found=data.get('productsFound', 0),
            start_time=_parse_iso(data.get('startTime')),
            end_time=_parse_iso(data.get('endTime')),
            duration_seconds=data.get('durationSeconds', 0.0),
            completed=data.get('crawlCompleted', False),
        )


@dataclass(frozen=True)
class CrawlResult:
    """Immutable snapshot of a finished (or stopped/failed) session."""
    domain: str
    products: List[str]
    stats: CrawlStats
    timestamp: datetime = field(default_factory=utcnow)
    status: str = ""
    stop_reason: str = ""
    failed_urls: List[str] = field(default_factory=list)

    @property
    def total_links(self) -> int:
        return len(self.products)

    def to_dict(self) -> dict:
        return {
            'domain': self.domain,
            'products': list(self.products),
            'totalLinks': self.total_links,
            'stats': self.stats.to_dict(),
            'status': self.status,
            'stopReason': self.stop_reason,
            'failedUrls': list(self.failed_urls),
            'timestamp': _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrawlResult":
        return cls(
            domain=data['domain'],
            products=list(data.get('products', [])),
            stats=CrawlStats.from_dict(data.get('stats', {})),
            timestamp=_parse_iso(data.get('timestamp')) or utcnow(),
            status=data.get('status', ''),
            stop_reason=data.get('stopReason', ''),
            failed_urls=list(data.get('failedUrls', [])),
        )


def _safe_name(domain: str) -> str:
    return re.sub(r'\W+', '_', get_normalized_domain(domain)).strip('_')


class ResultStore:
    """
    JSON-file result store.

    Args:
        output_dir: Directory for result files (created on first write)
    """

    def __init__(self, output_dir: str = "crawled-data"):
        self.output_dir = Path(output_dir)
        self._lock = threading.Lock()
        self._live: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self, result: CrawlResult) -> Path:
        """Write *result* as a new record and return its path."""
        base = f"{_safe_name(result.domain)}-{int(result.timestamp.timestamp() * 1000)}"
        payload = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
        with self._lock:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            seq = 0
            while True:
                name = f"{base}.json" if seq == 0 else f"{base}-{seq}.json"
                path = self.output_dir / name
                try:
                    with open(path, 'x', encoding='utf-8') as f:
                        f.write(payload)
                    break
                except FileExistsError:
                    seq += 1
        logger.info(f"[STORE] Saved {result.total_links} products for {result.domain} → {path}")
        return path

    def _record_key(self, path: Path, prefix: str):
        m = re.match(rf'^{re.escape(prefix)}-(\d+)(?:-(\d+))?\.json$', path.name)
        if not m:
            return None
        return int(m.group(1)), int(m.group(2) or 0)

    def list_results(self, domain: Optional[str] = None) -> List[Path]:
        """Result files, oldest first; all domains when *domain* is None."""
        if not self.output_dir.is_dir():
            return []
        if domain is None:
            return sorted(self.output_dir.glob('*.json'), key=lambda p: p.stat().st_mtime)
        prefix = _safe_name(domain)
        keyed = []
        for path in self.output_dir.glob(f'{prefix}-*.json'):
            key = self._record_key(path, prefix)
            if key is not None:
                keyed.append((key, path))
        return [path for _, path in sorted(keyed)]

    def load(self, path: Path) -> CrawlResult:
        with open(path, 'r', encoding='utf-8') as f:
            return CrawlResult.from_dict(json.load(f))

    def get_final(self, domain: str) -> Optional[CrawlResult]:
        """Most recently persisted record for *domain*, or None."""
        paths = self.list_results(domain)
        if not paths:
            return None
        return self.load(paths[-1])

    # ------------------------------------------------------------------
    # Live progress
    # ------------------------------------------------------------------

    def track(self, session) -> None:
        self._live[session.domain] = session

    def untrack(self, session) -> None:
        if self._live.get(session.domain) is session:
            del self._live[session.domain]

    def get_live(self, domain: str) -> Optional[Dict[str, Any]]:
        """In-memory products/stats of an active session, or None."""
        session = self._live.get(get_normalized_domain(domain))
        if session is None:
            return None
        return session.snapshot()
