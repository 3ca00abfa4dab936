"""
Event Sinks
===========
Sessions and the registry report progress through ``emit(event_type, payload)``.
The presentation layer (socket, UI, CLI printer) plugs in its own sink.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

CRAWL_START = "crawl_start"
PROGRESS_UPDATE = "progress_update"
PRODUCT_FOUND = "product_found"
CRAWL_STOPPING = "crawl_stopping"
CRAWL_COMPLETE = "crawl_complete"
CRAWL_STOPPED = "crawl_stopped"
CRAWL_FAILED = "crawl_failed"

TERMINAL_EVENTS = frozenset({CRAWL_COMPLETE, CRAWL_STOPPED, CRAWL_FAILED})


class EventSink:
    """Base sink: drops every event."""

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingEventSink(EventSink):
    """Logs events; progress updates and product hits at DEBUG."""

    _QUIET = frozenset({PROGRESS_UPDATE, PRODUCT_FOUND})

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        domain = payload.get('domain', '?')
        if event_type in self._QUIET:
            logger.debug(f"[EVENT] {event_type} {domain} {payload}")
        else:
            logger.info(f"[EVENT] {event_type} {domain}")


class CallbackEventSink(EventSink):
    """Forward events to ``callback(event_type, payload)``.

    A failing callback is logged and never breaks the crawl.
    """

    def __init__(self, callback: Callable[[str, Dict[str, Any]], None]):
        self._callback = callback

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            self._callback(event_type, payload)
        except Exception as e:
            logger.debug(f"[EVENT] callback failed for {event_type}: {e}")


class FanOutEventSink(EventSink):
    def __init__(self, sinks: Iterable[Optional[EventSink]]):
        self._sinks = [s for s in sinks if s is not None]

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        for sink in self._sinks:
            sink.emit(event_type, payload)
