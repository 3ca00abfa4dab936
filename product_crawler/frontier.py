"""
Crawl Frontier
==============
Prioritized, de-duplicated queue of pages still to visit for one session.

Three FIFO tiers are drained in priority order (PRODUCT, CATEGORY, GENERIC),
so breadth-first order holds within a tier.  Membership is tracked in a hash
index keyed by normalized URL, and pushes are rejected for URLs already in the
session's visited set; a URL is never both queued and visited.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Deque, Dict, Iterator, Optional, Set

from .classifier import UrlClass, normalize

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


class Priority(IntEnum):
    """Lower value is popped first."""
    PRODUCT = 0
    CATEGORY = 1
    GENERIC = 2

    @classmethod
    def for_class(cls, url_class: UrlClass) -> "Priority":
        if url_class is UrlClass.PRODUCT:
            return cls.PRODUCT
        if url_class is UrlClass.CATEGORY:
            return cls.CATEGORY
        return cls.GENERIC


@dataclass(frozen=True)
class CrawlTask:
    url: str
    priority: Priority = Priority.GENERIC
    depth: int = 0


class Frontier:
    """
    Priority work queue owned by a single crawl session.

    Args:
        visited:    The session's visited set (shared by reference, read-only here)
        capacity:   Maximum queued tasks; overflow trims the lowest tier first
        normalizer: URL canonicalization used for the index
    """

    def __init__(
        self,
        visited: Optional[Set[str]] = None,
        capacity: int = DEFAULT_CAPACITY,
        normalizer: Callable[[str], str] = normalize,
    ):
        self.visited: Set[str] = visited if visited is not None else set()
        self.capacity = capacity
        self._normalize = normalizer
        self._tiers: Dict[Priority, Deque[CrawlTask]] = {p: deque() for p in Priority}
        self._index: Dict[str, CrawlTask] = {}
        self.trimmed = 0

    def __len__(self) -> int:
        return len(self._index)

    def __bool__(self) -> bool:
        return bool(self._index)

    def __contains__(self, url: str) -> bool:
        return self._normalize(url) in self._index

    def __iter__(self) -> Iterator[CrawlTask]:
        """Tasks in pop order."""
        for priority in Priority:
            yield from self._tiers[priority]

    def push(self, task: CrawlTask) -> bool:
        """Queue *task* unless its URL is visited or already queued."""
        key = self._normalize(task.url)
        if key in self.visited or key in self._index:
            return False
        if key != task.url:
            task = CrawlTask(key, task.priority, task.depth)
        self._tiers[task.priority].append(task)
        self._index[key] = task
        if len(self._index) > self.capacity:
            self._trim()
        return key in self._index

    def pop(self) -> Optional[CrawlTask]:
        """Next task from the highest non-empty tier, or None."""
        for priority in Priority:
            tier = self._tiers[priority]
            if tier:
                task = tier.popleft()
                del self._index[task.url]
                return task
        return None

    def discard(self, url: str) -> bool:
        """Drop *url* if queued (e.g. it was reached through a redirect)."""
        key = self._normalize(url)
        task = self._index.pop(key, None)
        if task is None:
            return False
        self._tiers[task.priority].remove(task)
        return True

    def size_by_priority(self) -> Dict[str, int]:
        return {p.name.lower(): len(self._tiers[p]) for p in Priority}

    def _trim(self) -> None:
        # Product tasks are never dropped, so the queue may exceed capacity
        # when it holds nothing else.
        for priority in (Priority.GENERIC, Priority.CATEGORY):
            tier = self._tiers[priority]
            while tier and len(self._index) > self.capacity:
                dropped = tier.pop()
                del self._index[dropped.url]
                self.trimmed += 1
            if len(self._index) <= self.capacity:
                return
        logger.debug(f"[FRONTIER] {len(self._index)} tasks queued, only products left above capacity")
